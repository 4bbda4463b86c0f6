from .base import Base
from .user import User
from .chat import Chat, ChatType
from .chat_member import ChatMember
from .message import Message, MessageStatus
from .attachment import Attachment
from .message_receipt import MessageReceipt

__all__ = [
    "Base",
    "User",
    "Chat",
    "ChatType",
    "ChatMember",
    "Message",
    "MessageStatus",
    "Attachment",
    "MessageReceipt"
]
