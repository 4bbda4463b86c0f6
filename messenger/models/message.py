from sqlalchemy import Column, Integer, ForeignKey, Text, DateTime, Boolean, String, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum
from .base import BaseModel, utcnow

class MessageStatus(PyEnum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

class Message(BaseModel):
    __tablename__ = "messages"

    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Порядковый номер внутри чата, строго возрастает
    seq = Column(Integer, nullable=False)
    content = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    status = Column(Enum(MessageStatus), nullable=False, default=MessageStatus.SENT)
    is_system_message = Column(Boolean, default=False, nullable=False)

    # Уникальный идентификатор для предотвращения дублирования
    client_message_id = Column(String(100), nullable=True, index=True)

    # Связи
    chat = relationship("Chat", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id], back_populates="sent_messages")
    attachments = relationship(
        "Attachment",
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Attachment.position",
    )
    receipts = relationship("MessageReceipt", back_populates="message", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("chat_id", "seq", name="unique_chat_seq"),
    )

    @property
    def read_by(self) -> list:
        return sorted(r.user_id for r in self.receipts if r.read_at is not None)
