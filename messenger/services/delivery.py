"""
Машина состояний доставки сообщения.

    sending -> sent -> delivered -> read
    sending | sent -> failed

Статус только продвигается вперёд. ``failed`` достижим лишь из ``sending``
и ``sent`` и является конечным.

В группах статус отражает всех получателей сразу: сообщение ``delivered``,
когда его получили все участники кроме отправителя, и ``read``, когда все
они есть в read_by. Сообщение без получателей остаётся ``sent``.

Количество непрочитанных не хранится, а каждый раз считается заново:
сообщения от других участников, которых нет у пользователя в read_by.
"""

from dataclasses import dataclass
from typing import Iterable

from messenger.exceptions import ValidationError
from messenger.models.message import MessageStatus

STATUS_RANK = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

FAILABLE = frozenset({MessageStatus.SENDING, MessageStatus.SENT})


@dataclass(frozen=True)
class StatusChange:
    message_id: int
    chat_id: int
    status: MessageStatus

    def to_event(self) -> dict:
        return {
            "message_id": self.message_id,
            "chat_id": self.chat_id,
            "status": self.status.value,
        }


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    if target == MessageStatus.FAILED:
        return current in FAILABLE
    if current == MessageStatus.FAILED:
        return False
    return STATUS_RANK[target] > STATUS_RANK[current]


def advance(current: MessageStatus, target: MessageStatus) -> MessageStatus:
    """Новый статус сообщения; переход назад молча игнорируется."""
    if current == target:
        return current
    if target == MessageStatus.FAILED or current == MessageStatus.FAILED:
        if not can_transition(current, target):
            raise ValidationError(
                f"Cannot move message from {current.value} to {target.value}",
                error_code="INVALID_STATUS_TRANSITION",
            )
        return target
    if STATUS_RANK[target] < STATUS_RANK[current]:
        return current
    return target


def derive_status(current: MessageStatus, sender_id: int, member_ids: Iterable[int], receipts) -> MessageStatus:
    recipients = set(member_ids) - {sender_id}
    if not recipients or current == MessageStatus.FAILED:
        return current

    read = {r.user_id for r in receipts if r.read_at is not None}
    delivered = read | {r.user_id for r in receipts if r.delivered_at is not None}

    if recipients <= read:
        return advance(current, MessageStatus.READ)
    if recipients <= delivered:
        return advance(current, MessageStatus.DELIVERED)
    return current


def is_unread(message, user_id: int) -> bool:
    return message.sender_id != user_id and user_id not in message.read_by


def unread_count(messages: Iterable, user_id: int) -> int:
    return sum(1 for message in messages if is_unread(message, user_id))
