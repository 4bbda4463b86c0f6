"""
Tests for ConnectionManager: channels, ordering, typing indicators and presence.
"""

import asyncio

from messenger.websocket_manager import PRESENCE_KEY

from .conftest import flush


class TestChannels:
    async def test_publish_reaches_subscribers_in_order(self, connections, connect, alice, bob):
        bob_session, bob_ws = await connect(bob, 1)

        for i in range(5):
            connections.publish(1, "new-message", {"seq": i + 1})
        await flush(bob_session)

        assert [e["data"]["seq"] for e in bob_ws.events("new-message")] == [1, 2, 3, 4, 5]

    async def test_publish_excludes_origin_session(self, connections, connect, alice):
        first, first_ws = await connect(alice, 1)
        second, second_ws = await connect(alice, 1)

        delivered = connections.publish(1, "new-message", {"seq": 1}, exclude_session_id=first.id)
        await flush(first, second)

        assert delivered == 1
        assert first_ws.events("new-message") == []
        assert len(second_ws.events("new-message")) == 1

    async def test_other_channels_isolated(self, connections, connect, alice, bob):
        bob_session, bob_ws = await connect(bob, 2)

        assert connections.publish(1, "new-message", {"seq": 1}) == 0
        await flush(bob_session)

        assert bob_ws.events("new-message") == []

    async def test_unsubscribe_and_disconnect(self, connections, connect, alice):
        session, _ = await connect(alice, 1, 2)

        connections.unsubscribe(1, session)
        assert connections.subscribers(1) == []
        assert connections.subscribers(2) == [session]

        await connections.disconnect(session)
        assert connections.subscribers(2) == []
        assert not connections.is_user_online(alice.id)

    async def test_failed_send_does_not_stop_writer(self, connections, connect, bob):
        session, websocket = await connect(bob, 1)
        calls = {"n": 0}
        real_send = websocket.send_json

        async def flaky_send(data):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("socket hiccup")
            await real_send(data)

        websocket.send_json = flaky_send
        connections.publish(1, "new-message", {"seq": 1})
        connections.publish(1, "new-message", {"seq": 2})
        await flush(session)

        assert [e["data"]["seq"] for e in websocket.events("new-message")] == [2]


class TestTyping:
    async def test_typing_expires(self, connections, connect, alice, bob):
        bob_session, bob_ws = await connect(bob, 1)

        connections.set_typing(1, alice.id, alice.name, True)
        assert connections.typing_in(1) == [alice.id]

        await asyncio.sleep(0.15)
        await flush(bob_session)

        events = [e["data"]["is_typing"] for e in bob_ws.events("user-typing")]
        assert events == [True, False]
        assert connections.typing_in(1) == []

    async def test_refresh_restarts_timer(self, connections, connect, alice, bob):
        connections.typing_timeout = 0.3
        bob_session, bob_ws = await connect(bob, 1)

        connections.set_typing(1, alice.id, alice.name, True)
        await asyncio.sleep(0.1)
        connections.set_typing(1, alice.id, alice.name, True)
        await asyncio.sleep(0.25)

        assert connections.typing_in(1) == [alice.id]

        await asyncio.sleep(0.3)
        await flush(bob_session)
        events = [e["data"]["is_typing"] for e in bob_ws.events("user-typing")]
        assert events == [True, True, False]

    async def test_explicit_stop(self, connections, connect, alice, bob):
        bob_session, bob_ws = await connect(bob, 1)

        connections.set_typing(1, alice.id, alice.name, True)
        connections.set_typing(1, alice.id, alice.name, False)
        await asyncio.sleep(0.1)
        await flush(bob_session)

        events = [e["data"]["is_typing"] for e in bob_ws.events("user-typing")]
        assert events == [True, False]

    async def test_typist_does_not_see_own_indicator(self, connections, connect, alice):
        session, websocket = await connect(alice, 1)

        connections.set_typing(1, alice.id, alice.name, False)
        await flush(session)

        assert websocket.events("user-typing") == []


class TestPresence:
    async def test_online_offline(self, connections, connect, redis, alice, bob):
        bob_session, bob_ws = await connect(bob)
        alice_session, _ = await connect(alice)

        assert await connections.get_online_users() == sorted([alice.id, bob.id])
        assert redis.sets[PRESENCE_KEY] == {str(alice.id), str(bob.id)}

        await connections.disconnect(alice_session)
        await flush(bob_session)

        assert await connections.get_online_users() == [bob.id]
        assert [e["type"] for e in bob_ws.events() if e["type"].startswith("user-o")] == ["user-online", "user-offline"]

    async def test_second_session_keeps_user_online(self, connections, connect, alice):
        first, _ = await connect(alice)
        second, _ = await connect(alice)

        await connections.disconnect(first)

        assert connections.is_user_online(alice.id)
        assert connections.get_connected_users() == [alice.id]

        await connections.disconnect(second)
        assert connections.get_connected_users() == []
