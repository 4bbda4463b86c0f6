from sqlalchemy import Column, Integer, ForeignKey, String
from sqlalchemy.orm import relationship
from .base import BaseModel

class Attachment(BaseModel):
    __tablename__ = "attachments"

    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False)
    size = Column(Integer, nullable=False, default=0)
    url = Column(String(500), nullable=False)

    message = relationship("Message", back_populates="attachments")
