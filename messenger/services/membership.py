"""
Состав чатов: личные переписки, группы, участники и администраторы.

Каждое изменение состава группы записывается в журнал системным сообщением
в той же транзакции.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from messenger.models.chat import Chat
from messenger.models.chat_member import ChatMember
from messenger.repositories.chat_repository import ChatRepository, direct_chat_key
from messenger.repositories.user_repository import UserRepository
from messenger.schemas.chat import GroupSettings, GroupSettingsUpdate
from messenger.services.ledger import MessageLedger, find_member, format_message, group_settings
from messenger.services.locks import ChatLockRegistry, chat_locks

logger = logging.getLogger(__name__)


class MembershipService:
    def __init__(self, db: AsyncSession, publisher=None, locks: Optional[ChatLockRegistry] = None):
        self.db = db
        self.publisher = publisher
        self.locks = locks or chat_locks
        self.chats = ChatRepository(db)
        self.users = UserRepository(db)
        self.ledger = MessageLedger(db, publisher=publisher, locks=self.locks)

    def _publish(self, method: str, *args, **kwargs):
        # Вызывается после commit: ошибки рассылки только логируются
        if self.publisher is None:
            return
        try:
            getattr(self.publisher, method)(*args, **kwargs)
        except Exception:
            logger.exception("Real-time %s failed", method)

    def _publish_membership(self, chat_id: int, action: str, user_ids: Iterable[int] = (), **extra):
        self._publish("broadcast_membership_change", chat_id, action, user_ids, **extra)

    def _publish_new_message(self, message):
        self._publish("broadcast_new_message", message.chat_id, format_message(message).model_dump(mode="json"))

    async def create_direct_chat(self, user_id: int, participant_id: int) -> int:
        """Возвращает ID личного чата, создавая его только при отсутствии"""
        if user_id == participant_id:
            raise ValidationError("Cannot create a chat with yourself", error_code="SAME_USER")

        if not await self.users.get_by_id(participant_id):
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND", details={"user_id": participant_id})

        key = direct_chat_key(user_id, participant_id)
        existing = await self.chats.get_by_direct_key(key)
        if existing:
            logger.debug("Found existing direct chat %s for users %s", existing.id, key)
            return existing.id

        try:
            chat = await self.chats.create_direct_chat(user_id, participant_id)
            await self.db.commit()
        except IntegrityError:
            # Параллельный запрос успел создать чат первым
            await self.db.rollback()
            existing = await self.chats.get_by_direct_key(key)
            if existing:
                return existing.id
            raise ConflictError("Direct chat could not be created", error_code="DIRECT_CHAT_CONFLICT")

        logger.info("Created direct chat %s between users %s", chat.id, key)
        self._publish_membership(chat.id, "created", [user_id, participant_id])
        return chat.id

    async def create_group_chat(
        self,
        creator_id: int,
        name: str,
        member_ids: Iterable[int],
        description: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Chat:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Group name is required", error_code="NAME_REQUIRED")

        unique_ids: List[int] = []
        for member_id in member_ids:
            if member_id != creator_id and member_id not in unique_ids:
                unique_ids.append(member_id)
        if not unique_ids:
            raise ValidationError("At least one participant is required", error_code="PARTICIPANTS_REQUIRED")

        users = {user.id: user for user in await self.users.get_many([creator_id, *unique_ids])}
        missing = [member_id for member_id in unique_ids if member_id not in users]
        if missing:
            raise NotFoundError("Some participants do not exist", error_code="USER_NOT_FOUND", details={"user_ids": missing})

        chat = await self.chats.create_group_chat(
            creator_id,
            name,
            unique_ids,
            description=description,
            avatar=avatar,
            settings=GroupSettings().model_dump(),
        )
        async with self.locks.hold(chat.id):
            creator = users[creator_id]
            message = await self.ledger.append_system_message(chat, creator_id, f'Group "{name}" created by {creator.name}')
            await self.db.commit()

        logger.info("Group %s created by user %s with %d participants", chat.id, creator_id, len(unique_ids) + 1)
        self._publish_membership(chat.id, "created", unique_ids)
        self._publish_new_message(message)
        return await self.chats.get_by_id(chat.id)

    async def _load_group_for_admin(self, chat_id: int, actor_id: int) -> Chat:
        chat = await self.chats.get_by_id(chat_id)
        if not chat:
            raise NotFoundError("Group not found", error_code="GROUP_NOT_FOUND", details={"chat_id": chat_id})
        if not chat.is_group:
            raise AuthorizationError("Direct chat membership cannot be changed", error_code="NOT_A_GROUP")

        actor = find_member(chat, actor_id)
        if not actor or not actor.is_admin:
            raise AuthorizationError("Only group admins can do this", error_code="ADMIN_REQUIRED")
        return chat

    async def add_member(self, chat_id: int, actor_id: int, target_id: int) -> ChatMember:
        async with self.locks.hold(chat_id):
            chat = await self._load_group_for_admin(chat_id, actor_id)

            target = await self.users.get_by_id(target_id)
            if not target:
                raise NotFoundError("User not found", error_code="USER_NOT_FOUND", details={"user_id": target_id})
            if find_member(chat, target_id):
                raise ConflictError("User is already a participant", error_code="ALREADY_MEMBER")

            member = await self.chats.add_member(chat_id, target_id)
            message = await self.ledger.append_system_message(chat, actor_id, f"{target.name} was added to the group")
            await self.db.commit()

        logger.info("User %s added to group %s by %s", target_id, chat_id, actor_id)
        self._publish_membership(chat_id, "added", [target_id], user_id=target_id)
        self._publish_new_message(message)
        return member

    async def remove_member(self, chat_id: int, actor_id: int, target_id: int) -> None:
        async with self.locks.hold(chat_id):
            chat = await self._load_group_for_admin(chat_id, actor_id)

            member = find_member(chat, target_id)
            if not member:
                raise NotFoundError("User is not a participant", error_code="NOT_A_MEMBER", details={"user_id": target_id})
            if member.is_admin and await self.chats.count_admins(chat_id) <= 1:
                raise ValidationError("Group must keep at least one admin", error_code="LAST_ADMIN")

            target_name = member.user.name
            await self.chats.remove_member(member)
            chat = await self.chats.get_by_id(chat_id)
            message = await self.ledger.append_system_message(chat, actor_id, f"{target_name} was removed from the group")
            # Ушедший участник больше не задерживает статусы "доставлено" и "прочитано"
            changes = await self.ledger.settle_statuses(chat)
            await self.db.commit()

        logger.info("User %s removed from group %s by %s", target_id, chat_id, actor_id)
        self._publish("unsubscribe_user", chat_id, target_id)
        self._publish_membership(chat_id, "removed", [target_id], user_id=target_id)
        self._publish_new_message(message)
        self._publish("broadcast_status_changes", chat_id, changes)

    async def promote_admin(self, chat_id: int, actor_id: int, target_id: int) -> ChatMember:
        async with self.locks.hold(chat_id):
            chat = await self._load_group_for_admin(chat_id, actor_id)

            member = find_member(chat, target_id)
            if not member:
                raise NotFoundError("User is not a participant", error_code="NOT_A_MEMBER", details={"user_id": target_id})
            if member.is_admin:
                return member

            member.is_admin = True
            self.chats.touch(chat)
            await self.db.commit()

        logger.info("User %s promoted to admin of group %s by %s", target_id, chat_id, actor_id)
        self._publish_membership(chat_id, "promoted", [target_id], user_id=target_id)
        return member

    async def get_group(self, chat_id: int, requester_id: int) -> Chat:
        chat = await self.chats.get_by_id(chat_id)
        if not chat or not chat.is_group:
            raise NotFoundError("Group not found", error_code="GROUP_NOT_FOUND", details={"chat_id": chat_id})
        if not find_member(chat, requester_id):
            raise AuthorizationError("You are not a participant of this group", error_code="NOT_A_MEMBER")
        return chat

    async def update_group(
        self,
        chat_id: int,
        actor_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        settings: Optional[GroupSettingsUpdate] = None,
        avatar: Optional[str] = None,
    ) -> Chat:
        """Изменение названия, описания, аватара и настроек группы.

        Информацию могут менять все участники, если это разрешено
        настройками; сами настройки меняют только администраторы.
        """
        async with self.locks.hold(chat_id):
            chat = await self.get_group(chat_id, actor_id)
            member = find_member(chat, actor_id)
            current = group_settings(chat)

            changes = settings.model_dump(exclude_none=True) if settings else {}
            if changes and not member.is_admin:
                raise AuthorizationError("Only group admins can change settings", error_code="ADMIN_REQUIRED")

            edits_info = any(value is not None for value in (name, description, avatar))
            if edits_info and current.only_admins_can_edit_info and not member.is_admin:
                raise AuthorizationError("Only group admins can edit group info", error_code="ADMIN_REQUIRED")

            if name is not None:
                if not name.strip():
                    raise ValidationError("Group name cannot be empty", error_code="NAME_REQUIRED")
                chat.name = name.strip()
            if description is not None:
                chat.description = description
            if avatar is not None:
                chat.avatar = avatar
            if changes:
                chat.settings = {**current.model_dump(), **changes}

            self.chats.touch(chat)
            await self.db.commit()

        logger.info("Group %s updated by user %s", chat_id, actor_id)
        self._publish_membership(chat_id, "updated")
        return await self.chats.get_by_id(chat_id)

    async def delete_group(self, chat_id: int, actor_id: int) -> None:
        async with self.locks.hold(chat_id):
            chat = await self.chats.get_by_id(chat_id)
            if not chat or not chat.is_group:
                raise NotFoundError("Group not found", error_code="GROUP_NOT_FOUND", details={"chat_id": chat_id})
            actor = find_member(chat, actor_id)
            if not actor or not actor.is_admin:
                raise AuthorizationError("Only group admins can delete the group", error_code="ADMIN_REQUIRED")

            member_ids = [member.user_id for member in chat.members]
            await self.chats.delete(chat_id)
            await self.db.commit()

        logger.info("Group %s deleted by user %s", chat_id, actor_id)
        self._publish_membership(chat_id, "deleted", member_ids)
        self._publish("close_channel", chat_id)
