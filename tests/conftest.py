import asyncio
from typing import List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from messenger.auth import create_access_token
from messenger.database import create_tables, get_db
from messenger.dependencies import (
    get_chat_locks,
    get_connection_manager,
    get_session_factory,
    get_storage,
)
from messenger.main import app
from messenger.repositories.user_repository import UserRepository
from messenger.schemas.user import UserCreate
from messenger.services.ledger import MessageLedger
from messenger.services.locks import ChatLockRegistry
from messenger.services.membership import MembershipService
from messenger.storage import LocalMediaStorage
from messenger.websocket_manager import ConnectionManager


class FakeRedis:
    """Множества в памяти вместо Redis для учёта присутствия"""

    def __init__(self):
        self.sets = {}

    async def sadd(self, key, *values):
        members = self.sets.setdefault(key, set())
        before = len(members)
        members.update(str(v) for v in values)
        return len(members) - before

    async def srem(self, key, *values):
        members = self.sets.setdefault(key, set())
        before = len(members)
        members.difference_update(str(v) for v in values)
        return before - len(members)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))


class FakeWebSocket:
    def __init__(self):
        self.accepted = False
        self.sent: List[dict] = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        self.sent.append(data)

    def events(self, event_type: Optional[str] = None) -> List[dict]:
        return [e for e in self.sent if event_type is None or e["type"] == event_type]


async def flush(*sessions):
    """Ждёт, пока писатели сессий отправят все события из очередей"""
    await asyncio.gather(*(session.queue.join() for session in sessions))


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks():
    return ChatLockRegistry(timeout=2.0)


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
async def connections(redis):
    async def redis_factory():
        return redis

    manager = ConnectionManager(redis_factory=redis_factory, typing_timeout=0.05)
    yield manager

    for session in list(manager.sessions.values()):
        await manager.disconnect(session)
    for chat_id in list(manager.typing_users):
        manager.close_channel(chat_id)


@pytest.fixture
def connect(connections):
    """Подключает пользователя через фейковый WebSocket"""

    async def factory(user, *chat_ids):
        websocket = FakeWebSocket()
        session = await connections.connect(websocket, user)
        for chat_id in chat_ids:
            connections.subscribe(chat_id, session)
        return session, websocket

    return factory


@pytest.fixture
def media(tmp_path):
    return LocalMediaStorage(root=str(tmp_path / "media"), base_url="/media")


@pytest.fixture
def ledger(db, connections, locks):
    return MessageLedger(db, publisher=connections, locks=locks)


@pytest.fixture
def membership(db, connections, locks):
    return MembershipService(db, publisher=connections, locks=locks)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def factory(name: Optional[str] = None, password: str = "password123"):
        counter["n"] += 1
        username = (name or f"user{counter['n']}").lower()
        return await UserRepository(db).create(UserCreate(
            username=username,
            email=f"{username}@example.com",
            name=name or f"User {counter['n']}",
            password=password,
        ))

    return factory


@pytest.fixture
async def alice(make_user):
    return await make_user("Alice")


@pytest.fixture
async def bob(make_user):
    return await make_user("Bob")


@pytest.fixture
async def carol(make_user):
    return await make_user("Carol")


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.username})}"}


@pytest.fixture
async def client(session_factory, connections, locks, media):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_connection_manager] = lambda: connections
    app.dependency_overrides[get_chat_locks] = lambda: locks
    app.dependency_overrides[get_storage] = lambda: media

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
