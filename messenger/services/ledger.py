"""
Журнал сообщений: добавление, чтение, отметки о доставке и прочтении.

Все изменения чата выполняются под его блокировкой и в одной транзакции,
события в реальном времени публикуются только после commit.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.config import settings
from messenger.exceptions import (
    AuthorizationError,
    MessageSendFailed,
    NotFoundError,
    ValidationError,
)
from messenger.models.base import utcnow
from messenger.models.chat import Chat
from messenger.models.chat_member import ChatMember
from messenger.models.message import Message
from messenger.models.message_receipt import MessageReceipt
from messenger.repositories.chat_repository import ChatRepository
from messenger.repositories.message_repository import MessageRepository
from messenger.schemas.chat import GroupSettings
from messenger.schemas.message import AttachmentCreate, AttachmentResponse, MessageResponse, ReadReceiptResponse
from messenger.services.delivery import StatusChange, derive_status
from messenger.services.locks import ChatLockRegistry, chat_locks

logger = logging.getLogger(__name__)


@dataclass
class ReadResult:
    marked: int
    unread_count: int
    changes: List[StatusChange] = field(default_factory=list)


def format_message(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        chat_id=message.chat_id,
        seq=message.seq,
        content=message.content,
        sender_id=message.sender_id,
        sender_name=message.sender.name if message.sender else "Unknown",
        timestamp=message.timestamp,
        status=message.status,
        is_system_message=message.is_system_message,
        read_by=message.read_by,
        attachments=[AttachmentResponse.model_validate(a) for a in message.attachments],
        client_message_id=message.client_message_id,
    )


def group_settings(chat: Chat) -> GroupSettings:
    return GroupSettings(**(chat.settings or {}))


def find_member(chat: Chat, user_id: int) -> Optional[ChatMember]:
    for member in chat.members:
        if member.user_id == user_id:
            return member
    return None


class MessageLedger:
    def __init__(self, db: AsyncSession, publisher=None, locks: Optional[ChatLockRegistry] = None):
        self.db = db
        self.publisher = publisher
        self.locks = locks or chat_locks
        self.chats = ChatRepository(db)
        self.messages = MessageRepository(db)

    async def _load_membership(self, chat_id: int, user_id: int) -> Tuple[Chat, ChatMember]:
        chat = await self.chats.get_by_id(chat_id)
        if not chat:
            raise NotFoundError("Chat not found", error_code="CHAT_NOT_FOUND", details={"chat_id": chat_id})

        member = find_member(chat, user_id)
        if not member:
            raise AuthorizationError("You are not a participant of this chat", error_code="NOT_A_MEMBER")
        return chat, member

    def _check_sender(self, chat: Chat, member: ChatMember) -> None:
        if chat.is_group and group_settings(chat).only_admins_can_message and not member.is_admin:
            raise AuthorizationError("Only admins can send messages to this group", error_code="ADMINS_ONLY")

    async def check_can_send(self, chat_id: int, sender_id: int) -> None:
        """Проверка прав до сохранения вложений; append_message повторяет её под блокировкой"""
        chat, member = await self._load_membership(chat_id, sender_id)
        self._check_sender(chat, member)

    def _publish(self, method: str, *args, **kwargs):
        # Ошибки доставки в реальном времени не должны влиять на запрос
        if self.publisher is None:
            return
        try:
            getattr(self.publisher, method)(*args, **kwargs)
        except Exception:
            logger.exception("Real-time publish %s failed", method)

    async def append_message(
        self,
        chat_id: int,
        sender_id: int,
        content: str,
        attachments: Iterable[AttachmentCreate] = (),
        client_message_id: Optional[str] = None,
        origin_session_id: Optional[str] = None,
    ) -> Message:
        content = content or ""
        attachments = list(attachments)

        async with self.locks.hold(chat_id):
            chat, member = await self._load_membership(chat_id, sender_id)
            self._check_sender(chat, member)

            if not content.strip() and not attachments:
                raise ValidationError("Message must have content or attachments", error_code="EMPTY_MESSAGE")

            if client_message_id:
                existing = await self.messages.get_by_client_id(client_message_id, sender_id, chat_id)
                if existing:
                    logger.debug("Duplicate client message %s in chat %s", client_message_id, chat_id)
                    return existing

            try:
                message = await self._append(chat, sender_id, content, attachments, client_message_id=client_message_id)
                await self.db.commit()
            except SQLAlchemyError as exc:
                await self.db.rollback()
                logger.exception("Failed to append message to chat %s", chat_id)
                raise MessageSendFailed(
                    "Message could not be sent",
                    details={"status": "failed", "client_message_id": client_message_id},
                ) from exc

        logger.info("Message %s appended to chat %s by user %s", message.id, chat_id, sender_id)
        self._publish(
            "broadcast_new_message",
            chat_id,
            format_message(message).model_dump(mode="json"),
            exclude_session_id=origin_session_id,
        )
        return message

    async def _append(
        self,
        chat: Chat,
        sender_id: int,
        content: str,
        attachments: List[AttachmentCreate],
        is_system_message: bool = False,
        client_message_id: Optional[str] = None,
    ) -> Message:
        seq = await self.messages.next_seq(chat.id)
        now = utcnow()
        message = await self.messages.create(
            chat_id=chat.id,
            sender_id=sender_id,
            content=content,
            seq=seq,
            created_at=now,
            attachments=attachments,
            is_system_message=is_system_message,
            client_message_id=client_message_id,
        )
        chat.last_activity_at = now
        return message

    async def append_system_message(self, chat: Chat, actor_id: int, content: str) -> Message:
        """Системное сообщение об изменении группы.

        Вызывается внутри уже захваченной блокировки чата, commit и
        публикацию выполняет вызывающий код.
        """
        return await self._append(chat, actor_id, content, [], is_system_message=True)

    async def list_messages(
        self,
        chat_id: int,
        requester_id: int,
        limit: Optional[int] = None,
        offset: int = 0,
        order: str = "asc",
    ) -> List[Message]:
        if order not in ("asc", "desc"):
            raise ValidationError("order must be 'asc' or 'desc'")
        limit = min(limit or settings.MESSAGE_PAGE_SIZE, settings.MAX_MESSAGE_PAGE_SIZE)

        await self._load_membership(chat_id, requester_id)
        return await self.messages.get_chat_messages(chat_id, limit=limit, offset=max(offset, 0), descending=order == "desc")

    async def mark_read(self, chat_id: int, reader_id: int, up_to_message_id: Optional[int] = None) -> ReadResult:
        """Добавляет читателя в read_by всех чужих сообщений до указанного включительно."""
        async with self.locks.hold(chat_id):
            chat, _ = await self._load_membership(chat_id, reader_id)

            max_seq = None
            if up_to_message_id is not None:
                anchor = await self.messages.get_by_id(up_to_message_id)
                if not anchor or anchor.chat_id != chat_id:
                    raise NotFoundError("Message not found", error_code="MESSAGE_NOT_FOUND")
                max_seq = anchor.seq

            unread = await self.messages.get_unread_messages(chat_id, reader_id, max_seq)
            now = utcnow()
            for message in unread:
                receipt = self._receipt_for(message, reader_id)
                receipt.read_at = now
                if receipt.delivered_at is None:
                    receipt.delivered_at = now

            changes = self._advance_statuses(chat, unread)
            await self.db.flush()
            unread_count = await self.messages.count_unread(chat_id, reader_id)
            await self.db.commit()

        if unread:
            logger.debug("User %s read %d messages in chat %s", reader_id, len(unread), chat_id)
        self._publish("broadcast_status_changes", chat_id, changes)
        return ReadResult(marked=len(unread), unread_count=unread_count, changes=changes)

    async def mark_delivered(self, chat_id: int, user_id: int, message_ids: Iterable[int]) -> List[StatusChange]:
        """Подтверждение от сессии получателя, что сообщения до неё дошли."""
        async with self.locks.hold(chat_id):
            chat, _ = await self._load_membership(chat_id, user_id)

            acknowledged = []
            now = utcnow()
            for message in await self.messages.get_by_ids(chat_id, message_ids):
                if message.sender_id == user_id:
                    continue
                receipt = self._receipt_for(message, user_id)
                if receipt.delivered_at is None:
                    receipt.delivered_at = now
                    acknowledged.append(message)

            changes = self._advance_statuses(chat, acknowledged)
            await self.db.commit()

        self._publish("broadcast_status_changes", chat_id, changes)
        return changes

    def _receipt_for(self, message: Message, user_id: int) -> MessageReceipt:
        for receipt in message.receipts:
            if receipt.user_id == user_id:
                return receipt
        receipt = MessageReceipt(user_id=user_id)
        message.receipts.append(receipt)
        return receipt

    def _advance_statuses(self, chat: Chat, messages: Iterable[Message]) -> List[StatusChange]:
        member_ids = [member.user_id for member in chat.members]
        changes = []
        for message in messages:
            status = derive_status(message.status, message.sender_id, member_ids, message.receipts)
            if status != message.status:
                message.status = status
                changes.append(StatusChange(message.id, chat.id, status))
        return changes

    async def settle_statuses(self, chat: Chat) -> List[StatusChange]:
        """Пересчёт статусов по текущему составу чата, например после удаления участника.

        Вызывается под блокировкой чата; commit и публикацию выполняет
        вызывающий код.
        """
        messages = await self.messages.get_unsettled_messages(chat.id)
        return self._advance_statuses(chat, messages)

    async def unread_count(self, chat_id: int, user_id: int) -> int:
        await self._load_membership(chat_id, user_id)
        return await self.messages.count_unread(chat_id, user_id)

    async def get_read_receipts(self, chat_id: int, message_id: int, requester_id: int) -> List[ReadReceiptResponse]:
        await self._load_membership(chat_id, requester_id)
        message = await self.messages.get_by_id(message_id)
        if not message or message.chat_id != chat_id:
            raise NotFoundError("Message not found", error_code="MESSAGE_NOT_FOUND")

        receipts = await self.messages.get_message_read_receipts(message_id)
        return [
            ReadReceiptResponse(
                user_id=receipt.user_id,
                name=receipt.user.name,
                delivered_at=receipt.delivered_at,
                read_at=receipt.read_at,
            )
            for receipt in receipts
            if receipt.user_id != message.sender_id
        ]
