from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

class GroupSettings(BaseModel):
    only_admins_can_message: bool = False
    only_admins_can_edit_info: bool = True
    disappearing_messages: bool = False

class GroupSettingsUpdate(BaseModel):
    only_admins_can_message: Optional[bool] = None
    only_admins_can_edit_info: Optional[bool] = None
    disappearing_messages: Optional[bool] = None

class CreateDirectChat(BaseModel):
    participant_id: int

class DirectChatResponse(BaseModel):
    chat_id: int

class ParticipantRequest(BaseModel):
    participant_id: int

class ParticipantResponse(BaseModel):
    id: int
    name: str
    avatar: Optional[str] = None
    is_admin: bool
    status: Optional[str] = None

class LastMessagePreview(BaseModel):
    id: int
    content: str
    sender_id: int
    sender_name: str
    timestamp: datetime

class ChatSummary(BaseModel):
    id: int
    name: str
    avatar: Optional[str] = None
    is_group: bool
    unread_count: int
    last_message: Optional[LastMessagePreview] = None
    participants: List[ParticipantResponse]
    updated_at: datetime

class ChatDetail(BaseModel):
    id: int
    name: str
    avatar: Optional[str] = None
    is_group: bool
    description: Optional[str] = None
    settings: Optional[GroupSettings] = None
    participants: List[ParticipantResponse]

class GroupResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    avatar: Optional[str] = None
    settings: GroupSettings
    participants: List[ParticipantResponse] = Field(default_factory=list)
    created_at: Optional[datetime] = None

class MarkReadRequest(BaseModel):
    up_to_message_id: Optional[int] = None

class MarkReadResponse(BaseModel):
    marked: int
    unread_count: int
