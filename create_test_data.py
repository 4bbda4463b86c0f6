#!/usr/bin/env python3

import asyncio
import logging
import sys

from messenger.database import AsyncSessionLocal, create_tables
from messenger.repositories.user_repository import UserRepository
from messenger.schemas.user import UserCreate
from messenger.services.ledger import MessageLedger
from messenger.services.membership import MembershipService

logger = logging.getLogger("create_test_data")

USERS = [
    {"username": "alice", "email": "alice@example.com", "name": "Alice"},
    {"username": "bob", "email": "bob@example.com", "name": "Bob"},
    {"username": "charlie", "email": "charlie@example.com", "name": "Charlie"},
    {"username": "diana", "email": "diana@example.com", "name": "Diana"},
    {"username": "eve", "email": "eve@example.com", "name": "Eve"},
]

PASSWORD = "password123"

async def create_test_users():
    async with AsyncSessionLocal() as db:
        user_repo = UserRepository(db)

        users = []
        for user_data in USERS:
            user = await user_repo.get_by_username(user_data["username"])
            if user:
                print(f"User {user.username} exists (ID: {user.id})")
            else:
                user = await user_repo.create(UserCreate(password=PASSWORD, **user_data))
                print(f"Created user: {user.username} (ID: {user.id})")
            users.append(user)

        return users

async def create_test_chats(users):
    async with AsyncSessionLocal() as db:
        membership = MembershipService(db)
        alice, bob, charlie, diana, _ = users

        direct_id = await membership.create_direct_chat(alice.id, bob.id)
        print(f"Direct chat between {alice.username} and {bob.username} (ID: {direct_id})")

        group = await membership.create_group_chat(alice.id, "Test Group", [bob.id, charlie.id, diana.id])
        print(f"Created group '{group.name}' (ID: {group.id})")

        direct2_id = await membership.create_direct_chat(charlie.id, diana.id)
        print(f"Direct chat between {charlie.username} and {diana.username} (ID: {direct2_id})")

        return [direct_id, group.id, direct2_id]

async def create_test_messages(users, chat_ids):
    alice, bob, charlie, diana, _ = users
    direct_id, group_id, direct2_id = chat_ids

    conversation = [
        (direct_id, alice, "Hey Bob! How's it going?"),
        (direct_id, bob, "Hi Alice! All good, thanks!"),
        (direct_id, alice, "Great! Ready to work on the project?"),
        (group_id, alice, "Welcome to our test group!"),
        (group_id, bob, "Thanks for the invitation!"),
        (group_id, charlie, "Hey everyone! Glad to be here"),
        (group_id, diana, "Let's discuss the work plan"),
        (direct2_id, charlie, "Diana, can we discuss project details?"),
        (direct2_id, diana, "Sure! I have a few ideas"),
    ]

    count = 0
    async with AsyncSessionLocal() as db:
        ledger = MessageLedger(db)
        for chat_id, sender, content in conversation:
            message = await ledger.append_message(chat_id, sender.id, content)
            print(f"#{message.seq} from {sender.username} in chat {chat_id}: '{content[:30]}'")
            count += 1

        # Боб открыл личный чат и прочитал всё
        await ledger.mark_read(direct_id, bob.id)

    return count

async def main():
    logging.basicConfig(level=logging.INFO)
    print("Creating test data for Messenger...\n")

    try:
        await create_tables()
        users = await create_test_users()
        chat_ids = await create_test_chats(users)
        count = await create_test_messages(users, chat_ids)
    except Exception:
        logger.exception("Error creating test data")
        sys.exit(1)

    print(f"\nCreated {len(users)} users, {len(chat_ids)} chats, {count} messages")
    print(f"All users share the password: {PASSWORD}")
    print("API docs: http://localhost:8000/docs")

if __name__ == "__main__":
    asyncio.run(main())
