import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from messenger.config import settings
from messenger.exceptions import ChatBusyError

logger = logging.getLogger(__name__)


class ChatLockRegistry:
    """Одна блокировка на чат: все изменения журнала и состава чата
    выполняются последовательно, разные чаты не мешают друг другу.

    Блокировка живёт, пока её держат или ждут; после последнего
    пользователя запись удаляется, так что реестр не растёт от запросов
    к несуществующим или удалённым чатам."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = settings.CHAT_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    def _checkout(self, chat_id: int) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        self._users[chat_id] = self._users.get(chat_id, 0) + 1
        return lock

    def _checkin(self, chat_id: int) -> None:
        remaining = self._users[chat_id] - 1
        if remaining:
            self._users[chat_id] = remaining
        else:
            del self._users[chat_id]
            del self._locks[chat_id]

    @asynccontextmanager
    async def hold(self, chat_id: int):
        lock = self._checkout(chat_id)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("Chat %s lock not acquired within %.1fs", chat_id, self.timeout)
                raise ChatBusyError(
                    "Chat is busy, try again",
                    details={"chat_id": chat_id},
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(chat_id)


chat_locks = ChatLockRegistry()
