from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from messenger.models.message import MessageStatus
from messenger.schemas.chat import ChatDetail

class AttachmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=100)
    size: int = Field(0, ge=0)
    url: str = Field(..., min_length=1, max_length=500)

class AttachmentResponse(AttachmentCreate):
    id: int

    class Config:
        from_attributes = True

class MessageResponse(BaseModel):
    id: int
    chat_id: int
    seq: int
    content: str
    sender_id: int
    sender_name: str
    timestamp: datetime
    status: MessageStatus
    is_system_message: bool = False
    read_by: List[int] = []
    attachments: List[AttachmentResponse] = []
    client_message_id: Optional[str] = None

class ChatWithMessages(BaseModel):
    chat: ChatDetail
    messages: List[MessageResponse]

class ReadReceiptResponse(BaseModel):
    user_id: int
    name: str
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

class WebSocketMessageData(BaseModel):
    action: str
    data: dict = {}

class SendMessageWebSocket(BaseModel):
    chat_id: int
    content: str = ""
    attachments: List[AttachmentCreate] = []
    client_message_id: Optional[str] = None

class ChatChannelRequest(BaseModel):
    chat_id: int

class MessageReceived(BaseModel):
    chat_id: int
    message_ids: List[int]

class MarkMessagesRead(BaseModel):
    chat_id: int
    up_to_message_id: Optional[int] = None

class TypingIndicator(BaseModel):
    chat_id: int
    is_typing: bool
