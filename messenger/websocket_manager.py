import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from fastapi import WebSocket

from messenger.config import settings
from messenger.database import get_redis
from messenger.models.user import User

logger = logging.getLogger(__name__)

PRESENCE_KEY = "presence:online"

# Исходящие события
NEW_MESSAGE = "new-message"
MESSAGE_SENT = "message-sent"
MESSAGE_STATUS_UPDATE = "message-status-update"
USER_TYPING = "user-typing"
MEMBERSHIP_CHANGED = "membership-changed"
USER_ONLINE = "user-online"
USER_OFFLINE = "user-offline"


def make_event(event_type: str, data: dict) -> dict:
    return {"type": event_type, "data": data}


@dataclass(eq=False)
class ClientSession:
    """Одно WebSocket-подключение. Все события идут через очередь сессии,
    которую вычитывает единственная задача-писатель, поэтому порядок
    публикации в канале чата сохраняется."""

    websocket: WebSocket
    user_id: int
    name: str
    id: str = field(default_factory=lambda: uuid4().hex)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    chats: Set[int] = field(default_factory=set)
    writer: Optional[asyncio.Task] = None


class ConnectionManager:
    def __init__(self, redis_factory: Callable = get_redis, typing_timeout: Optional[float] = None):
        self.sessions: Dict[str, ClientSession] = {}
        self.user_sessions: Dict[int, Set[str]] = {}
        # chat_id -> {session_id: session}, порядок подписки сохраняется
        self.channels: Dict[int, Dict[str, ClientSession]] = {}
        # chat_id -> {user_id: таймер сброса индикатора}
        self.typing_users: Dict[int, Dict[int, asyncio.TimerHandle]] = {}
        self.typing_timeout = settings.TYPING_TIMEOUT_SECONDS if typing_timeout is None else typing_timeout
        self.redis_client = None
        self._redis_factory = redis_factory

    async def connect(self, websocket: WebSocket, user: User) -> ClientSession:
        await websocket.accept()

        session = ClientSession(websocket=websocket, user_id=user.id, name=user.name)
        session.writer = asyncio.create_task(self._write_events(session))
        self.sessions[session.id] = session

        first_session = user.id not in self.user_sessions
        self.user_sessions.setdefault(user.id, set()).add(session.id)

        if first_session:
            await self._set_presence(user.id, True)
            self.broadcast(USER_ONLINE, {"user_id": user.id}, exclude_user=user.id)
        return session

    async def disconnect(self, session: ClientSession):
        if self.sessions.pop(session.id, None) is None:
            return

        for chat_id in list(session.chats):
            self.unsubscribe(chat_id, session)

        user_sessions = self.user_sessions.get(session.user_id, set())
        user_sessions.discard(session.id)
        if not user_sessions:
            self.user_sessions.pop(session.user_id, None)
            for chat_id in list(self.typing_users):
                if session.user_id in self.typing_users[chat_id]:
                    self.set_typing(chat_id, session.user_id, session.name, False)
            await self._set_presence(session.user_id, False)
            self.broadcast(USER_OFFLINE, {"user_id": session.user_id})

        if session.writer is not None:
            session.writer.cancel()

    async def _write_events(self, session: ClientSession):
        while True:
            event = await session.queue.get()
            try:
                await session.websocket.send_json(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Dropping event %s for session %s", event.get("type"), session.id, exc_info=True)
            finally:
                session.queue.task_done()

    def _enqueue(self, session: ClientSession, event: dict):
        session.queue.put_nowait(event)

    # Каналы чатов

    def subscribe(self, chat_id: int, session: ClientSession):
        self.channels.setdefault(chat_id, {})[session.id] = session
        session.chats.add(chat_id)

    def unsubscribe(self, chat_id: int, session: ClientSession):
        channel = self.channels.get(chat_id)
        if channel is not None:
            channel.pop(session.id, None)
            if not channel:
                del self.channels[chat_id]
        session.chats.discard(chat_id)

    def unsubscribe_user(self, chat_id: int, user_id: int):
        for session_id in list(self.user_sessions.get(user_id, ())):
            self.unsubscribe(chat_id, self.sessions[session_id])

    def close_channel(self, chat_id: int):
        for session in list(self.channels.get(chat_id, {}).values()):
            self.unsubscribe(chat_id, session)
        for handle in self.typing_users.pop(chat_id, {}).values():
            handle.cancel()

    def subscribers(self, chat_id: int) -> List[ClientSession]:
        return list(self.channels.get(chat_id, {}).values())

    def publish(self, chat_id: int, event_type: str, data: dict, exclude_session_id: Optional[str] = None) -> int:
        """Ставит событие в очереди всех подписчиков канала, не дожидаясь отправки"""
        event = make_event(event_type, data)
        delivered = 0
        for session in self.subscribers(chat_id):
            if session.id == exclude_session_id:
                continue
            self._enqueue(session, event)
            delivered += 1
        return delivered

    def send_to_session(self, session: ClientSession, event_type: str, data: dict):
        self._enqueue(session, make_event(event_type, data))

    def send_to_users(self, user_ids: Iterable[int], event_type: str, data: dict):
        event = make_event(event_type, data)
        for user_id in set(user_ids):
            for session_id in list(self.user_sessions.get(user_id, ())):
                self._enqueue(self.sessions[session_id], event)

    def broadcast(self, event_type: str, data: dict, exclude_user: Optional[int] = None):
        event = make_event(event_type, data)
        for session in list(self.sessions.values()):
            if session.user_id != exclude_user:
                self._enqueue(session, event)

    def broadcast_new_message(self, chat_id: int, message_data: dict, exclude_session_id: Optional[str] = None):
        self.publish(chat_id, NEW_MESSAGE, message_data, exclude_session_id)

    def broadcast_status_changes(self, chat_id: int, changes: Iterable):
        for change in changes:
            self.publish(chat_id, MESSAGE_STATUS_UPDATE, change.to_event())

    def broadcast_membership_change(self, chat_id: int, action: str, user_ids: Iterable[int] = (), **extra):
        data = {"chat_id": chat_id, "action": action, **extra}
        self.publish(chat_id, MEMBERSHIP_CHANGED, data)
        # Затронутые пользователи узнают об изменении, даже если чат у них не открыт
        notify = [user_id for user_id in user_ids if not self._is_subscribed(chat_id, user_id)]
        self.send_to_users(notify, MEMBERSHIP_CHANGED, data)

    def _is_subscribed(self, chat_id: int, user_id: int) -> bool:
        return any(s.user_id == user_id for s in self.subscribers(chat_id))

    # Индикатор набора текста

    def set_typing(self, chat_id: int, user_id: int, name: str, is_typing: bool):
        chat_typing = self.typing_users.setdefault(chat_id, {})
        previous = chat_typing.pop(user_id, None)
        if previous is not None:
            previous.cancel()

        if is_typing:
            loop = asyncio.get_running_loop()
            chat_typing[user_id] = loop.call_later(
                self.typing_timeout, self._expire_typing, chat_id, user_id, name
            )
        if not chat_typing:
            self.typing_users.pop(chat_id, None)

        self._publish_typing(chat_id, user_id, name, is_typing)

    def _expire_typing(self, chat_id: int, user_id: int, name: str):
        chat_typing = self.typing_users.get(chat_id)
        if not chat_typing or chat_typing.pop(user_id, None) is None:
            return
        if not chat_typing:
            self.typing_users.pop(chat_id, None)
        self._publish_typing(chat_id, user_id, name, False)

    def _publish_typing(self, chat_id: int, user_id: int, name: str, is_typing: bool):
        data = {"chat_id": chat_id, "user_id": user_id, "name": name, "is_typing": is_typing}
        event = make_event(USER_TYPING, data)
        for session in self.subscribers(chat_id):
            if session.user_id != user_id:
                self._enqueue(session, event)

    def typing_in(self, chat_id: int) -> List[int]:
        return sorted(self.typing_users.get(chat_id, {}))

    # Присутствие

    async def _redis(self):
        if self.redis_client is None:
            self.redis_client = await self._redis_factory()
        return self.redis_client

    async def _set_presence(self, user_id: int, online: bool):
        try:
            client = await self._redis()
            if online:
                await client.sadd(PRESENCE_KEY, user_id)
            else:
                await client.srem(PRESENCE_KEY, user_id)
        except Exception:
            logger.exception("Failed to update presence for user %s", user_id)

    async def get_online_users(self) -> List[int]:
        client = await self._redis()
        members = await client.smembers(PRESENCE_KEY)
        return sorted(int(member) for member in members)

    def get_connected_users(self) -> List[int]:
        return sorted(self.user_sessions)

    def is_user_online(self, user_id: int) -> bool:
        return user_id in self.user_sessions

manager = ConnectionManager()
