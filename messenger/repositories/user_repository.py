from typing import Optional, List, Iterable
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from messenger.models.user import User
from messenger.schemas.user import UserCreate, UserUpdate, UserSettingsUpdate
from messenger.auth import get_password_hash

DEFAULT_USER_SETTINGS = {
    "message_notifications": True,
    "group_notifications": True,
    "call_notifications": True,
    "sound_enabled": True,
}

class UserRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, user_data: UserCreate) -> User:
        db_user = User(
            username=user_data.username,
            email=user_data.email,
            name=user_data.name,
            hashed_password=get_password_hash(user_data.password),
            settings=dict(DEFAULT_USER_SETTINGS),
        )
        self.db.add(db_user)
        await self.db.commit()
        await self.db.refresh(db_user)
        return db_user

    async def get_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_many(self, user_ids: Iterable[int]) -> List[User]:
        ids = set(user_ids)
        if not ids:
            return []
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return list(result.scalars().all())

    async def get_by_username(self, username: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def update(self, user_id: int, user_data: UserUpdate) -> Optional[User]:
        db_user = await self.get_by_id(user_id)
        if not db_user:
            return None

        for field, value in user_data.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(db_user, field, value)

        await self.db.commit()
        await self.db.refresh(db_user)
        return db_user

    async def update_settings(self, user_id: int, settings_data: UserSettingsUpdate) -> Optional[User]:
        db_user = await self.get_by_id(user_id)
        if not db_user:
            return None

        # JSON-колонку нужно переприсвоить, иначе изменение не отследится
        merged = {**DEFAULT_USER_SETTINGS, **(db_user.settings or {})}
        merged.update(settings_data.model_dump(exclude_none=True))
        db_user.settings = merged

        await self.db.commit()
        await self.db.refresh(db_user)
        return db_user

    async def get_contacts(self, user_id: int) -> List[User]:
        result = await self.db.execute(
            select(User).where(User.id != user_id, User.is_active.is_(True)).order_by(User.name)
        )
        return list(result.scalars().all())

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()
