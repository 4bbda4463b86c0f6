from sqlalchemy import Column, Integer, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import BaseModel

class MessageReceipt(BaseModel):
    __tablename__ = "message_receipts"

    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Оба поля только заполняются, но никогда не сбрасываются
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    # Связи
    message = relationship("Message", back_populates="receipts")
    user = relationship("User")

    # Уникальное ограничение: одна квитанция на пользователя и сообщение
    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', name='unique_message_user_receipt'),
    )
