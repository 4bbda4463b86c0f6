"""
Tests for MessageLedger: ordering, read tracking, delivery acknowledgements
and real-time publication of ledger changes.
"""

import asyncio

import pytest
from sqlalchemy.exc import SQLAlchemyError

from messenger.exceptions import (
    AuthorizationError,
    ChatBusyError,
    MessageSendFailed,
    NotFoundError,
    ValidationError,
)
from messenger.models.message import MessageStatus
from messenger.schemas.chat import GroupSettingsUpdate
from messenger.schemas.message import AttachmentCreate
from messenger.services.ledger import MessageLedger
from messenger.services.locks import ChatLockRegistry

from .conftest import flush


@pytest.fixture
async def direct_chat(membership, alice, bob):
    return await membership.create_direct_chat(alice.id, bob.id)


@pytest.fixture
async def group(membership, alice, bob, carol):
    return await membership.create_group_chat(alice.id, "Team", [bob.id, carol.id])


class TestAppendMessage:
    async def test_first_message_in_direct_chat(self, ledger, direct_chat, alice, bob):
        message = await ledger.append_message(direct_chat, alice.id, "hi")

        assert message.seq == 1
        assert message.content == "hi"
        assert message.status == MessageStatus.SENT
        assert message.read_by == [alice.id]
        assert await ledger.unread_count(direct_chat, bob.id) == 1
        assert await ledger.unread_count(direct_chat, alice.id) == 0

    async def test_sequence_increments(self, ledger, direct_chat, alice, bob):
        first = await ledger.append_message(direct_chat, alice.id, "one")
        second = await ledger.append_message(direct_chat, bob.id, "two")
        third = await ledger.append_message(direct_chat, alice.id, "three")

        assert [first.seq, second.seq, third.seq] == [1, 2, 3]

    async def test_concurrent_sends_keep_unique_order(self, ledger, direct_chat, alice, bob):
        """
        Concurrent appends to one chat are serialized by the chat lock.

        Every message gets its own seq and listing returns creation order.
        """
        senders = [alice.id, bob.id] * 10
        results = await asyncio.gather(*(
            ledger.append_message(direct_chat, sender_id, f"msg {i}")
            for i, sender_id in enumerate(senders)
        ))

        seqs = sorted(message.seq for message in results)
        assert seqs == list(range(1, 21))

        listed = await ledger.list_messages(direct_chat, alice.id, limit=50)
        assert [m.seq for m in listed] == list(range(1, 21))

    async def test_attachments_without_content(self, ledger, direct_chat, alice):
        attachment = AttachmentCreate(name="photo.png", mime_type="image/png", size=1024, url="/media/files/photo.png")
        message = await ledger.append_message(direct_chat, alice.id, "", [attachment])

        assert message.content == ""
        assert len(message.attachments) == 1
        assert message.attachments[0].name == "photo.png"

    async def test_empty_message_rejected(self, ledger, direct_chat, alice):
        with pytest.raises(ValidationError) as exc_info:
            await ledger.append_message(direct_chat, alice.id, "   ")
        assert exc_info.value.error_code == "EMPTY_MESSAGE"

    async def test_non_member_cannot_send(self, ledger, direct_chat, carol):
        with pytest.raises(AuthorizationError):
            await ledger.append_message(direct_chat, carol.id, "hello")

    async def test_unknown_chat(self, ledger, alice):
        with pytest.raises(NotFoundError) as exc_info:
            await ledger.append_message(9999, alice.id, "hello")
        assert exc_info.value.error_code == "CHAT_NOT_FOUND"

    async def test_client_message_id_deduplicates(self, ledger, direct_chat, alice, bob):
        first = await ledger.append_message(direct_chat, alice.id, "hi", client_message_id="c-1")
        again = await ledger.append_message(direct_chat, alice.id, "hi", client_message_id="c-1")

        assert again.id == first.id
        assert await ledger.unread_count(direct_chat, bob.id) == 1

    async def test_only_admins_can_message(self, ledger, membership, group, alice, bob):
        await membership.update_group(
            group.id, alice.id, settings=GroupSettingsUpdate(only_admins_can_message=True)
        )

        with pytest.raises(AuthorizationError) as exc_info:
            await ledger.append_message(group.id, bob.id, "can I talk?")
        assert exc_info.value.error_code == "ADMINS_ONLY"

        message = await ledger.append_message(group.id, alice.id, "admins only here")
        assert message.content == "admins only here"

    async def test_storage_failure_reports_failed(self, ledger, direct_chat, alice, bob, monkeypatch):
        alice_id, bob_id = alice.id, bob.id

        async def broken_create(**kwargs):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(ledger.messages, "create", broken_create)

        with pytest.raises(MessageSendFailed) as exc_info:
            await ledger.append_message(direct_chat, alice_id, "lost", client_message_id="c-9")
        assert exc_info.value.details == {"status": "failed", "client_message_id": "c-9"}

        monkeypatch.undo()
        assert await ledger.list_messages(direct_chat, bob_id) == []

    async def test_busy_chat_raises(self, db, connections, direct_chat, alice):
        locks = ChatLockRegistry(timeout=0.01)
        ledger = MessageLedger(db, publisher=connections, locks=locks)

        async with locks.hold(direct_chat):
            with pytest.raises(ChatBusyError):
                await ledger.append_message(direct_chat, alice.id, "blocked")


class TestListMessages:
    async def test_pagination_and_order(self, ledger, direct_chat, alice):
        for i in range(5):
            await ledger.append_message(direct_chat, alice.id, f"m{i}")

        page = await ledger.list_messages(direct_chat, alice.id, limit=2, offset=1)
        assert [m.content for m in page] == ["m1", "m2"]

        newest = await ledger.list_messages(direct_chat, alice.id, limit=2, order="desc")
        assert [m.content for m in newest] == ["m4", "m3"]

    async def test_invalid_order(self, ledger, direct_chat, alice):
        with pytest.raises(ValidationError):
            await ledger.list_messages(direct_chat, alice.id, order="sideways")

    async def test_non_member_cannot_read_history(self, ledger, direct_chat, carol):
        with pytest.raises(AuthorizationError):
            await ledger.list_messages(direct_chat, carol.id)


class TestMarkRead:
    async def test_opening_chat_reads_everything(self, ledger, direct_chat, alice, bob):
        message = await ledger.append_message(direct_chat, alice.id, "hi")

        result = await ledger.mark_read(direct_chat, bob.id)

        assert result.marked == 1
        assert result.unread_count == 0
        assert [c.status for c in result.changes] == [MessageStatus.READ]

        [stored] = await ledger.list_messages(direct_chat, alice.id)
        assert stored.id == message.id
        assert stored.status == MessageStatus.READ
        assert stored.read_by == sorted([alice.id, bob.id])

    async def test_read_up_to_message(self, ledger, direct_chat, alice, bob):
        messages = [await ledger.append_message(direct_chat, alice.id, f"m{i}") for i in range(3)]

        result = await ledger.mark_read(direct_chat, bob.id, messages[1].id)

        assert result.marked == 2
        assert result.unread_count == 1

    async def test_read_by_is_monotonic(self, ledger, direct_chat, alice, bob):
        await ledger.append_message(direct_chat, alice.id, "hi")
        await ledger.mark_read(direct_chat, bob.id)

        again = await ledger.mark_read(direct_chat, bob.id)

        assert again.marked == 0
        assert again.changes == []
        [stored] = await ledger.list_messages(direct_chat, bob.id)
        assert bob.id in stored.read_by

    async def test_own_messages_not_marked(self, ledger, direct_chat, alice):
        await ledger.append_message(direct_chat, alice.id, "note to self")

        result = await ledger.mark_read(direct_chat, alice.id)

        assert result.marked == 0
        assert result.unread_count == 0

    async def test_anchor_from_another_chat(self, ledger, membership, direct_chat, alice, bob, carol):
        other_chat = await membership.create_direct_chat(alice.id, carol.id)
        foreign = await ledger.append_message(other_chat, alice.id, "elsewhere")

        with pytest.raises(NotFoundError) as exc_info:
            await ledger.mark_read(direct_chat, bob.id, foreign.id)
        assert exc_info.value.error_code == "MESSAGE_NOT_FOUND"

    async def test_read_receipts_exclude_sender(self, ledger, direct_chat, alice, bob):
        message = await ledger.append_message(direct_chat, alice.id, "hi")
        await ledger.mark_read(direct_chat, bob.id)

        receipts = await ledger.get_read_receipts(direct_chat, message.id, alice.id)

        assert [r.user_id for r in receipts] == [bob.id]
        assert receipts[0].read_at is not None
        assert receipts[0].delivered_at is not None


class TestGroupDelivery:
    """A group message is delivered or read only once every other member is."""

    async def test_status_waits_for_all_members(self, ledger, group, alice, bob, carol):
        message = await ledger.append_message(group.id, alice.id, "hello team")

        await ledger.mark_read(group.id, bob.id)
        [stored] = await ledger.list_messages(group.id, alice.id, limit=1, order="desc")
        assert stored.status == MessageStatus.SENT

        changes = await ledger.mark_delivered(group.id, carol.id, [message.id])
        assert [(c.message_id, c.status) for c in changes] == [(message.id, MessageStatus.DELIVERED)]

        result = await ledger.mark_read(group.id, carol.id)
        assert (message.id, MessageStatus.READ) in [(c.message_id, c.status) for c in result.changes]

    async def test_repeated_acknowledgement_is_noop(self, ledger, direct_chat, alice, bob):
        message = await ledger.append_message(direct_chat, alice.id, "hi")

        first = await ledger.mark_delivered(direct_chat, bob.id, [message.id])
        second = await ledger.mark_delivered(direct_chat, bob.id, [message.id])

        assert [c.status for c in first] == [MessageStatus.DELIVERED]
        assert second == []

    async def test_sender_acknowledgement_ignored(self, ledger, direct_chat, alice):
        message = await ledger.append_message(direct_chat, alice.id, "hi")

        assert await ledger.mark_delivered(direct_chat, alice.id, [message.id]) == []


class TestPublishing:
    async def test_new_message_reaches_other_sessions(self, ledger, connect, direct_chat, alice, bob):
        alice_session, alice_ws = await connect(alice, direct_chat)
        bob_session, bob_ws = await connect(bob, direct_chat)

        message = await ledger.append_message(
            direct_chat, alice.id, "hi", origin_session_id=alice_session.id
        )
        await flush(alice_session, bob_session)

        [event] = bob_ws.events("new-message")
        assert event["data"]["id"] == message.id
        assert event["data"]["seq"] == 1
        assert alice_ws.events("new-message") == []

    async def test_status_updates_published(self, ledger, connect, direct_chat, alice, bob):
        alice_session, alice_ws = await connect(alice, direct_chat)
        message = await ledger.append_message(direct_chat, alice.id, "hi")

        await ledger.mark_read(direct_chat, bob.id)
        await flush(alice_session)

        [update] = alice_ws.events("message-status-update")
        assert update["data"] == {"message_id": message.id, "chat_id": direct_chat, "status": "read"}

    async def test_publish_order_matches_seq(self, ledger, connect, direct_chat, alice, bob):
        bob_session, bob_ws = await connect(bob, direct_chat)

        await asyncio.gather(*(
            ledger.append_message(direct_chat, alice.id, f"m{i}") for i in range(10)
        ))
        await flush(bob_session)

        seqs = [e["data"]["seq"] for e in bob_ws.events("new-message")]
        assert seqs == list(range(1, 11))
