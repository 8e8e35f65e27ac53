"""Unit tests for ConnectionSession lifecycle, commands and outbound queue."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from clawchat.core.exceptions import AuthenticationError, NoCredentialError
from clawchat.core.security import create_session_token
from clawchat.realtime.identity import Credential
from clawchat.realtime.rooms import RoomId, RoomKind
from clawchat.realtime.session import ConnectionSession, SessionState
from clawchat.realtime.tasks import drain_detached
from clawchat.schemas.realtime import MessageDeletedEvent

from conftest import make_transport, sent_frames, sent_types


def failure_count(reason: str) -> float:
    return REGISTRY.get_sample_value("clawchat_delivery_failures_total", {"reason": reason}) or 0.0


async def open_manual(hub, user_id: str, transport, **kwargs) -> ConnectionSession:
    session = ConnectionSession(transport, hub, **kwargs)
    await session.authenticate(Credential(token=create_session_token(user_id, user_id)))
    await session.open()
    return session


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_open_sends_snapshot_and_announces_to_others(self, connect, gateway):
        alice = await connect("alice")
        bob = await connect("bob")

        alice_frames = await sent_frames(alice)
        bob_frames = await sent_frames(bob)

        assert [f["type"] for f in alice_frames] == ["online_users", "user_online"]
        assert alice_frames[0]["payload"] == {"userIds": ["alice"]}
        assert alice_frames[1]["payload"] == {"userId": "bob", "username": "bob"}

        # user_online is never echoed to the connection that caused it
        assert [f["type"] for f in bob_frames] == ["online_users"]
        assert bob_frames[0]["payload"] == {"userIds": ["alice", "bob"]}

        await drain_detached()
        assert gateway.last_seen_calls == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_two_tabs_single_offline(self, connect, hub):
        """Closing one of two tabs keeps the user online; the second close emits one offline."""
        tab1 = await connect("alice")
        tab2 = await connect("alice")
        bob = await connect("bob")

        await tab1.close()
        assert hub.presence.is_online("alice")
        assert "user_offline" not in await sent_types(bob)

        await tab2.close()
        assert not hub.presence.is_online("alice")
        offline = [f for f in await sent_frames(bob) if f["type"] == "user_offline"]
        assert len(offline) == 1
        assert offline[0]["payload"] == {"userId": "alice"}

    @pytest.mark.asyncio
    async def test_second_tab_does_not_announce_online(self, connect):
        bob = await connect("bob")
        await connect("alice")
        await connect("alice")

        online = [f for f in await sent_frames(bob) if f["type"] == "user_online"]
        assert len(online) == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, connect, hub, gateway):
        alice = await connect("alice")

        await alice.close()
        await alice.close("again")
        await drain_detached()

        assert alice.state is SessionState.CLOSED
        assert hub.router.connection_count == 0
        assert gateway.last_seen_calls == ["alice", "alice"]

    @pytest.mark.asyncio
    async def test_failed_authentication_never_registers(self, hub):
        session = ConnectionSession(make_transport(), hub)

        with pytest.raises(NoCredentialError):
            await session.authenticate(Credential())

        assert session.state is SessionState.CONNECTING
        assert hub.router.connection_count == 0
        assert hub.presence.list_online_user_ids() == set()
        with pytest.raises(AuthenticationError):
            await session.open()

    @pytest.mark.asyncio
    async def test_last_seen_failure_is_not_fatal(self, connect, gateway):
        gateway.fail_last_seen = True

        alice = await connect("alice")
        await drain_detached()

        assert alice.state is SessionState.AUTHENTICATED
        assert await sent_types(alice) == ["online_users"]

    @pytest.mark.asyncio
    async def test_reaper_closes_stale_sessions(self, connect, hub):
        alice = await connect("alice")
        bob = await connect("bob")
        alice.last_ping = datetime.now(timezone.utc) - timedelta(seconds=120)

        assert await hub.reap_stale_sessions(max_idle_seconds=60) == 1

        assert alice.state is SessionState.CLOSED
        alice.transport.close.assert_awaited_once_with(code=1001, reason="ping timeout")
        assert "user_offline" in await sent_types(bob)
        assert hub.presence.list_online_user_ids() == {"bob"}

    @pytest.mark.asyncio
    async def test_commands_keep_session_alive_without_ping(self, connect, hub):
        """A client that only joins and types is still alive."""
        alice = await connect("alice")
        bob = await connect("bob")
        alice.last_ping = datetime.now(timezone.utc) - timedelta(seconds=61)

        await alice.handle_command({"type": "join_channel", "payload": {"channelId": "c1"}})
        await alice.handle_command({"type": "typing", "payload": {"channelId": "c1"}})

        assert await hub.reap_stale_sessions(max_idle_seconds=60) == 0
        assert alice.state is SessionState.AUTHENTICATED
        assert "user_offline" not in await sent_types(bob)


class TestRooms:
    @pytest.mark.asyncio
    async def test_join_command_is_idempotent(self, connect, hub):
        alice = await connect("alice")
        bob = await connect("bob")

        await alice.handle_command({"type": "join_channel", "payload": {"channelId": "c1"}})
        await alice.handle_command({"type": "join_channel", "payload": {"channelId": "c1"}})
        assert hub.router.members(RoomId.channel("c1")) == {alice.connection_id}

        await hub.broadcaster.message_deleted("m1", "c1")

        assert (await sent_types(alice)).count("message_deleted") == 1
        assert "message_deleted" not in await sent_types(bob)

    @pytest.mark.asyncio
    async def test_leave_commands(self, connect, hub):
        alice = await connect("alice")
        await alice.handle_command({"type": "join_thread", "payload": {"threadId": "t1"}})
        await alice.handle_command({"type": "leave_thread", "payload": {"threadId": "t1"}})
        await alice.handle_command({"type": "leave_channel", "payload": {"channelId": "never-joined"}})

        assert alice.joined_rooms == set()
        assert "error" not in await sent_types(alice)

    @pytest.mark.asyncio
    async def test_no_delivery_after_close(self, connect, hub):
        alice = await connect("alice")
        await alice.join_room(RoomId.channel("c1"))
        await alice.close()
        sent_before = alice.transport.send_json.await_count

        await hub.broadcaster.message_deleted("m1", "c1")
        await asyncio.sleep(0)

        assert alice.transport.send_json.await_count == sent_before
        assert hub.router.members(RoomId.channel("c1")) == frozenset()

    @pytest.mark.asyncio
    async def test_join_racing_close(self, connect, hub):
        alice = await connect("alice")
        room = RoomId.channel("c1")

        await asyncio.gather(alice.join_room(room), alice.close())

        assert hub.router.members(room) == frozenset()
        assert await alice.join_room(room) is False

    @pytest.mark.asyncio
    async def test_typing_not_echoed_to_sender(self, connect):
        alice = await connect("alice")
        bob = await connect("bob")
        for session in (alice, bob):
            await session.handle_command({"type": "join_channel", "payload": {"channelId": "c1"}})

        await alice.handle_command({"type": "typing", "payload": {"channelId": "c1"}})

        assert "user_typing" not in await sent_types(alice)
        typing = [f for f in await sent_frames(bob) if f["type"] == "user_typing"]
        assert typing[0]["payload"] == {
            "user": {"id": "alice", "username": "alice"},
            "channelId": "c1",
            "threadId": None,
        }

    @pytest.mark.asyncio
    async def test_authorizer_can_refuse(self, connect, hub):
        class ChannelsOnly:
            async def can_join(self, identity, room):
                return room.kind is RoomKind.CHANNEL

        hub.authorizer = ChannelsOnly()
        alice = await connect("alice")

        await alice.handle_command({"type": "join_thread", "payload": {"threadId": "t1"}, "request_id": "r7"})

        error = (await sent_frames(alice))[-1]
        assert error["type"] == "error"
        assert error["payload"]["code"] == "ROOM_ACCESS_DENIED"
        assert error["request_id"] == "r7"
        assert alice.joined_rooms == set()


class TestCommands:
    @pytest.mark.asyncio
    async def test_ping_answers_pong(self, connect):
        alice = await connect("alice")
        alice.last_ping = datetime.now(timezone.utc) - timedelta(seconds=30)
        before = alice.last_ping

        await alice.handle_command({"type": "ping", "request_id": "r1"})

        pong = (await sent_frames(alice))[-1]
        assert pong["type"] == "pong"
        assert pong["request_id"] == "r1"
        assert alice.last_ping > before

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        [
            {"type": "dance"},
            {"type": "join_channel", "payload": {}},
            {"type": "typing", "payload": {"threadId": "t1"}},
            {"payload": {"channelId": "c1"}},
            "join_channel",
        ],
    )
    async def test_malformed_command_errors_to_sender_only(self, connect, raw):
        alice = await connect("alice")
        bob = await connect("bob")

        await alice.handle_command(raw)

        error = (await sent_frames(alice))[-1]
        assert error["type"] == "error"
        assert error["payload"]["code"] == "INVALID_COMMAND"
        assert "error" not in await sent_types(bob)


class TestOutboundQueue:
    @pytest.mark.asyncio
    async def test_full_queue_drops_only_for_slow_recipient(self, connect, hub):
        fast = await connect("fast")

        release = asyncio.Event()

        async def slow_send(frame, mode="text"):
            await release.wait()

        transport = make_transport()
        transport.send_json.side_effect = slow_send
        slow = await open_manual(hub, "slow", transport, queue_size=1, send_timeout=30)

        room = RoomId.channel("c1")
        await fast.join_room(room)
        await slow.join_room(room)
        while slow.pending_frames:
            await asyncio.sleep(0)

        failures_before = failure_count("queue_full")
        first = await hub.router.broadcast(room, MessageDeletedEvent(message_id="m1", channel_id="c1"))
        second = await hub.router.broadcast(room, MessageDeletedEvent(message_id="m2", channel_id="c1"))

        assert first == 2
        assert second == 1
        assert failure_count("queue_full") == failures_before + 1
        deleted = [f["payload"]["messageId"] for f in await sent_frames(fast) if f["type"] == "message_deleted"]
        assert deleted == ["m1", "m2"]

        release.set()
        await slow.close()

    @pytest.mark.asyncio
    async def test_send_timeout_closes_connection(self, hub):
        async def hang(frame, mode="text"):
            await asyncio.Event().wait()

        transport = make_transport()
        transport.send_json.side_effect = hang
        session = await open_manual(hub, "stuck", transport, send_timeout=0.01)

        for _ in range(200):
            if session.state is SessionState.CLOSED:
                break
            await asyncio.sleep(0.01)
        await drain_detached()

        assert session.state is SessionState.CLOSED
        transport.close.assert_awaited_once_with(code=1001, reason="send_timeout")
        assert not hub.presence.is_online("stuck")

    @pytest.mark.asyncio
    async def test_frames_arrive_in_queue_order(self, connect, hub):
        alice = await connect("alice")
        await alice.join_room(RoomId.channel("c1"))

        for i in range(20):
            await hub.broadcaster.message_deleted(f"m{i}", "c1")

        ids = [f["payload"]["messageId"] for f in await sent_frames(alice) if f["type"] == "message_deleted"]
        assert ids == [f"m{i}" for i in range(20)]
