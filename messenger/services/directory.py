from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from messenger.exceptions import AuthorizationError, NotFoundError
from messenger.models.chat import Chat
from messenger.models.message import Message
from messenger.repositories.chat_repository import ChatRepository
from messenger.repositories.message_repository import MessageRepository
from messenger.schemas.chat import (
    ChatDetail,
    ChatSummary,
    GroupResponse,
    LastMessagePreview,
    ParticipantResponse,
)
from messenger.services.ledger import find_member, group_settings


def format_participants(chat: Chat) -> List[ParticipantResponse]:
    return [
        ParticipantResponse(
            id=member.user_id,
            name=member.user.name,
            avatar=member.user.avatar,
            is_admin=member.is_admin,
            status=member.user.status,
        )
        for member in sorted(chat.members, key=lambda m: m.id)
    ]


def display_identity(chat: Chat, user_id: int) -> Tuple[str, Optional[str]]:
    """Название и аватар чата глазами пользователя"""
    if chat.is_group:
        return chat.name or "Unknown", chat.avatar

    others = [member.user for member in chat.members if member.user_id != user_id]
    if not others:
        return "Unknown", None
    return others[0].name, others[0].avatar


def format_last_message(message: Optional[Message]) -> Optional[LastMessagePreview]:
    if message is None:
        return None
    return LastMessagePreview(
        id=message.id,
        content=message.content,
        sender_id=message.sender_id,
        sender_name=message.sender.name if message.sender else "Unknown",
        timestamp=message.timestamp,
    )


def format_group(chat: Chat) -> GroupResponse:
    return GroupResponse(
        id=chat.id,
        name=chat.name,
        description=chat.description,
        avatar=chat.avatar,
        settings=group_settings(chat),
        participants=format_participants(chat),
        created_at=chat.created_at,
    )


class ChatDirectory:
    """Список чатов пользователя с последним сообщением и счётчиком непрочитанных.

    Сводка собирается из журнала при каждом запросе, поэтому не может
    отстать от последнего добавленного сообщения.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.chats = ChatRepository(db)
        self.messages = MessageRepository(db)

    async def list_chats(self, user_id: int) -> List[ChatSummary]:
        chats = await self.chats.get_user_chats(user_id)
        unread = await self.messages.count_unread_by_chat(user_id)
        last_messages = await self.messages.get_last_messages(chat.id for chat in chats)

        result = []
        for chat in chats:
            name, avatar = display_identity(chat, user_id)
            result.append(ChatSummary(
                id=chat.id,
                name=name,
                avatar=avatar,
                is_group=chat.is_group,
                unread_count=unread.get(chat.id, 0),
                last_message=format_last_message(last_messages.get(chat.id)),
                participants=format_participants(chat),
                updated_at=chat.last_activity_at,
            ))
        return result

    async def get_chat(self, chat_id: int, user_id: int) -> ChatDetail:
        chat = await self.chats.get_by_id(chat_id)
        if not chat:
            raise NotFoundError("Chat not found", error_code="CHAT_NOT_FOUND", details={"chat_id": chat_id})
        if not find_member(chat, user_id):
            raise AuthorizationError("You are not a participant of this chat", error_code="NOT_A_MEMBER")

        name, avatar = display_identity(chat, user_id)
        return ChatDetail(
            id=chat.id,
            name=name,
            avatar=avatar,
            is_group=chat.is_group,
            description=chat.description,
            settings=group_settings(chat) if chat.is_group else None,
            participants=format_participants(chat),
        )
