from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from datetime import datetime

class UserBase(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=100)

class UserCreate(UserBase):
    password: str = Field(..., min_length=6)

class UserLogin(BaseModel):
    username: str
    password: str

class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    status: Optional[str] = Field(None, max_length=200)
    about: Optional[str] = Field(None, max_length=500)
    avatar: Optional[str] = None

class UserSettingsUpdate(BaseModel):
    message_notifications: Optional[bool] = None
    group_notifications: Optional[bool] = None
    call_notifications: Optional[bool] = None
    sound_enabled: Optional[bool] = None

class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    name: str
    avatar: Optional[str] = None
    status: Optional[str] = None
    about: Optional[str] = None
    settings: dict = {}
    created_at: datetime

    class Config:
        from_attributes = True

class ContactResponse(BaseModel):
    id: int
    name: str
    email: str
    avatar: Optional[str] = None
    status: Optional[str] = None

    class Config:
        from_attributes = True

class Token(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
