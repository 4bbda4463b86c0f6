from sqlalchemy import Column, String, Boolean, JSON
from sqlalchemy.orm import relationship
from .base import BaseModel

class User(BaseModel):
    __tablename__ = "users"

    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(100), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Профиль
    name = Column(String(100), nullable=False)
    avatar = Column(String(500), nullable=True)
    status = Column(String(200), nullable=True)
    about = Column(String(500), nullable=True)
    settings = Column(JSON, nullable=False, default=dict)

    sent_messages = relationship("Message", foreign_keys="Message.sender_id", back_populates="sender")
    chat_memberships = relationship("ChatMember", back_populates="user")
    created_chats = relationship("Chat", foreign_keys="Chat.creator_id", back_populates="creator")
