from datetime import datetime
from typing import Optional, List, Dict, Iterable
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, func, exists
from sqlalchemy.orm import selectinload

from messenger.models.message import Message, MessageStatus
from messenger.models.attachment import Attachment
from messenger.models.message_receipt import MessageReceipt
from messenger.models.chat_member import ChatMember
from messenger.schemas.message import AttachmentCreate

def _with_details(stmt):
    return stmt.options(
        selectinload(Message.sender),
        selectinload(Message.attachments),
        selectinload(Message.receipts),
    )

def _unread_by(user_id: int):
    """Условие: сообщение от другого участника, не прочитанное user_id"""
    read_receipt = exists().where(
        and_(
            MessageReceipt.message_id == Message.id,
            MessageReceipt.user_id == user_id,
            MessageReceipt.read_at.is_not(None),
        )
    )
    return and_(Message.sender_id != user_id, ~read_receipt)

class MessageRepository:
    """Журнал сообщений. Commit выполняет вызывающий сервис."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def next_seq(self, chat_id: int) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(Message.seq), 0)).where(Message.chat_id == chat_id)
        )
        return (result.scalar() or 0) + 1

    async def create(
        self,
        chat_id: int,
        sender_id: int,
        content: str,
        seq: int,
        created_at: datetime,
        attachments: Iterable[AttachmentCreate] = (),
        is_system_message: bool = False,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """Добавление сообщения; отправитель сразу попадает в read_by"""
        message = Message(
            chat_id=chat_id,
            sender_id=sender_id,
            seq=seq,
            content=content,
            timestamp=created_at,
            status=MessageStatus.SENT,
            is_system_message=is_system_message,
            client_message_id=client_message_id,
        )
        self.db.add(message)
        await self.db.flush()

        for position, attachment in enumerate(attachments):
            self.db.add(Attachment(
                message_id=message.id,
                position=position,
                name=attachment.name,
                mime_type=attachment.mime_type,
                size=attachment.size,
                url=attachment.url,
            ))
        self.db.add(MessageReceipt(
            message_id=message.id,
            user_id=sender_id,
            delivered_at=created_at,
            read_at=created_at,
        ))
        await self.db.flush()
        return await self.get_by_id(message.id)

    async def get_by_id(self, message_id: int) -> Optional[Message]:
        """Получение сообщения по ID"""
        result = await self.db.execute(
            _with_details(select(Message))
            .where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_client_id(self, client_message_id: str, sender_id: int, chat_id: int) -> Optional[Message]:
        """Поиск сообщения по client_message_id для предотвращения дублирования"""
        result = await self.db.execute(
            _with_details(select(Message)).where(
                and_(
                    Message.client_message_id == client_message_id,
                    Message.sender_id == sender_id,
                    Message.chat_id == chat_id
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_chat_messages(
        self,
        chat_id: int,
        limit: int = 50,
        offset: int = 0,
        descending: bool = False,
    ) -> List[Message]:
        """Сообщения чата с пагинацией, по умолчанию от старых к новым"""
        order = Message.seq.desc() if descending else Message.seq.asc()
        result = await self.db.execute(
            _with_details(select(Message))
            .where(Message.chat_id == chat_id)
            .order_by(order)
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_by_ids(self, chat_id: int, message_ids: Iterable[int]) -> List[Message]:
        ids = set(message_ids)
        if not ids:
            return []
        result = await self.db.execute(
            _with_details(select(Message))
            .where(and_(Message.chat_id == chat_id, Message.id.in_(ids)))
            .order_by(Message.seq.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_unread_messages(self, chat_id: int, user_id: int, max_seq: Optional[int] = None) -> List[Message]:
        """Непрочитанные пользователем сообщения чата (не считая своих)"""
        conditions = [Message.chat_id == chat_id, _unread_by(user_id)]
        if max_seq is not None:
            conditions.append(Message.seq <= max_seq)

        result = await self.db.execute(
            _with_details(select(Message))
            .where(and_(*conditions))
            .order_by(Message.seq.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_unsettled_messages(self, chat_id: int) -> List[Message]:
        """Сообщения чата, ещё не прочитанные всеми получателями"""
        result = await self.db.execute(
            _with_details(select(Message))
            .where(and_(
                Message.chat_id == chat_id,
                Message.status.not_in([MessageStatus.READ, MessageStatus.FAILED]),
            ))
            .order_by(Message.seq.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_unread(self, chat_id: int, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Message.id)).where(
                and_(Message.chat_id == chat_id, _unread_by(user_id))
            )
        )
        return result.scalar() or 0

    async def count_unread_by_chat(self, user_id: int) -> Dict[int, int]:
        """Количество непрочитанных по всем чатам пользователя"""
        result = await self.db.execute(
            select(Message.chat_id, func.count(Message.id))
            .join(ChatMember, and_(ChatMember.chat_id == Message.chat_id, ChatMember.user_id == user_id))
            .where(_unread_by(user_id))
            .group_by(Message.chat_id)
        )
        return {chat_id: count for chat_id, count in result.all()}

    async def get_last_messages(self, chat_ids: Iterable[int]) -> Dict[int, Message]:
        """Последнее сообщение каждого из чатов"""
        ids = set(chat_ids)
        if not ids:
            return {}
        last_seq = (
            select(Message.chat_id, func.max(Message.seq).label("seq"))
            .where(Message.chat_id.in_(ids))
            .group_by(Message.chat_id)
            .subquery()
        )
        result = await self.db.execute(
            select(Message).options(selectinload(Message.sender))
            .join(last_seq, and_(Message.chat_id == last_seq.c.chat_id, Message.seq == last_seq.c.seq))
        )
        return {message.chat_id: message for message in result.scalars().all()}

    async def get_message_read_receipts(self, message_id: int) -> List[MessageReceipt]:
        """Получение квитанций о доставке и прочтении сообщения"""
        result = await self.db.execute(
            select(MessageReceipt).options(
                selectinload(MessageReceipt.user)
            ).where(MessageReceipt.message_id == message_id)
            .order_by(MessageReceipt.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
