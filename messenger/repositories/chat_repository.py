from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, func, delete
from sqlalchemy.orm import selectinload

from messenger.models.base import utcnow
from messenger.models.chat import Chat, ChatType
from messenger.models.chat_member import ChatMember
from messenger.models.message import Message
from messenger.models.attachment import Attachment
from messenger.models.message_receipt import MessageReceipt

def direct_chat_key(user_id1: int, user_id2: int) -> str:
    low, high = sorted((user_id1, user_id2))
    return f"{low}:{high}"

class ChatRepository:
    """Хранилище чатов и участников.

    Методы не фиксируют транзакцию: commit выполняет сервис, который
    держит блокировку чата.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_direct_chat(self, user_id1: int, user_id2: int) -> Chat:
        """Создание личного чата; оба участника равноправны"""
        chat = Chat(
            chat_type=ChatType.DIRECT,
            creator_id=user_id1,
            direct_key=direct_chat_key(user_id1, user_id2),
            last_activity_at=utcnow(),
        )
        self.db.add(chat)
        await self.db.flush()  # Получаем ID чата

        self.db.add(ChatMember(chat_id=chat.id, user_id=user_id1, is_admin=False))
        self.db.add(ChatMember(chat_id=chat.id, user_id=user_id2, is_admin=False))
        await self.db.flush()
        return chat

    async def create_group_chat(
        self,
        creator_id: int,
        name: str,
        member_ids: List[int],
        description: Optional[str] = None,
        avatar: Optional[str] = None,
        settings: Optional[dict] = None,
    ) -> Chat:
        """Создание группы; создатель - единственный администратор"""
        chat = Chat(
            name=name,
            description=description,
            avatar=avatar,
            settings=settings,
            chat_type=ChatType.GROUP,
            creator_id=creator_id,
            last_activity_at=utcnow(),
        )
        self.db.add(chat)
        await self.db.flush()

        self.db.add(ChatMember(chat_id=chat.id, user_id=creator_id, is_admin=True))
        for member_id in member_ids:
            if member_id != creator_id:  # Избегаем дублирования создателя
                self.db.add(ChatMember(chat_id=chat.id, user_id=member_id, is_admin=False))

        await self.db.flush()
        return chat

    async def get_by_id(self, chat_id: int) -> Optional[Chat]:
        """Получение чата по ID вместе с участниками"""
        result = await self.db.execute(
            select(Chat).options(
                selectinload(Chat.members).selectinload(ChatMember.user)
            ).where(Chat.id == chat_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_direct_key(self, key: str) -> Optional[Chat]:
        result = await self.db.execute(select(Chat).where(Chat.direct_key == key))
        return result.scalar_one_or_none()

    async def get_user_chats(self, user_id: int) -> List[Chat]:
        """Чаты пользователя, самые активные первыми"""
        result = await self.db.execute(
            select(Chat).join(ChatMember).options(
                selectinload(Chat.members).selectinload(ChatMember.user)
            ).where(ChatMember.user_id == user_id)
            .order_by(Chat.last_activity_at.desc(), Chat.id.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_member(self, chat_id: int, user_id: int) -> Optional[ChatMember]:
        result = await self.db.execute(
            select(ChatMember).where(
                and_(ChatMember.chat_id == chat_id, ChatMember.user_id == user_id)
            )
        )
        return result.scalar_one_or_none()

    async def is_member(self, chat_id: int, user_id: int) -> bool:
        return await self.get_member(chat_id, user_id) is not None

    async def add_member(self, chat_id: int, user_id: int, is_admin: bool = False) -> ChatMember:
        member = ChatMember(chat_id=chat_id, user_id=user_id, is_admin=is_admin)
        self.db.add(member)
        await self.db.flush()
        return member

    async def remove_member(self, member: ChatMember) -> None:
        await self.db.delete(member)
        await self.db.flush()

    async def count_admins(self, chat_id: int) -> int:
        result = await self.db.execute(
            select(func.count(ChatMember.id)).where(
                and_(ChatMember.chat_id == chat_id, ChatMember.is_admin.is_(True))
            )
        )
        return result.scalar() or 0

    def touch(self, chat: Chat) -> None:
        """Отмечает активность в чате для сортировки списка чатов"""
        chat.last_activity_at = utcnow()

    async def delete(self, chat_id: int) -> None:
        """Удаление чата со всеми сообщениями, квитанциями и участниками"""
        message_ids = select(Message.id).where(Message.chat_id == chat_id)
        await self.db.execute(delete(MessageReceipt).where(MessageReceipt.message_id.in_(message_ids)))
        await self.db.execute(delete(Attachment).where(Attachment.message_id.in_(message_ids)))
        await self.db.execute(delete(Message).where(Message.chat_id == chat_id))
        await self.db.execute(delete(ChatMember).where(ChatMember.chat_id == chat_id))
        await self.db.execute(delete(Chat).where(Chat.id == chat_id))
