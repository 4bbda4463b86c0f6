from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.database import AsyncSessionLocal, get_db
from messenger.services.directory import ChatDirectory
from messenger.services.ledger import MessageLedger
from messenger.services.locks import ChatLockRegistry, chat_locks
from messenger.services.membership import MembershipService
from messenger.storage import LocalMediaStorage, storage
from messenger.websocket_manager import ConnectionManager, manager

# Отдельные зависимости, чтобы в тестах их можно было подменить
def get_session_factory():
    return AsyncSessionLocal

def get_connection_manager() -> ConnectionManager:
    return manager

def get_chat_locks() -> ChatLockRegistry:
    return chat_locks

def get_storage() -> LocalMediaStorage:
    return storage

def get_ledger(
    db: AsyncSession = Depends(get_db),
    connections: ConnectionManager = Depends(get_connection_manager),
    locks: ChatLockRegistry = Depends(get_chat_locks),
) -> MessageLedger:
    return MessageLedger(db, publisher=connections, locks=locks)

def get_membership(
    db: AsyncSession = Depends(get_db),
    connections: ConnectionManager = Depends(get_connection_manager),
    locks: ChatLockRegistry = Depends(get_chat_locks),
) -> MembershipService:
    return MembershipService(db, publisher=connections, locks=locks)

def get_directory(db: AsyncSession = Depends(get_db)) -> ChatDirectory:
    return ChatDirectory(db)
