from sqlalchemy import Column, String, Enum, Integer, ForeignKey, DateTime, JSON, Text
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum
from .base import BaseModel, utcnow

class ChatType(PyEnum):
    DIRECT = "direct"
    GROUP = "group"

class Chat(BaseModel):
    __tablename__ = "chats"

    name = Column(String(100), nullable=True)  # Только для групп
    description = Column(Text, nullable=True)
    avatar = Column(String(500), nullable=True)
    chat_type = Column(Enum(ChatType), nullable=False, default=ChatType.DIRECT)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    settings = Column(JSON, nullable=True)

    # "<меньший id>:<больший id>" - одна личная переписка на пару пользователей
    direct_key = Column(String(50), unique=True, nullable=True)

    # Время последнего сообщения или изменения состава
    last_activity_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Связи
    creator = relationship("User", foreign_keys=[creator_id], back_populates="created_chats")
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)
    members = relationship("ChatMember", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def is_group(self) -> bool:
        return self.chat_type == ChatType.GROUP
