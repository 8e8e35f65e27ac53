"""Unit tests for PresenceTracker and the sharded locks behind it."""

import asyncio
import random

import pytest

from clawchat.realtime.locks import ShardedLock
from clawchat.realtime.presence import PresenceTracker


@pytest.fixture
def presence():
    return PresenceTracker(shards=8)


class TestShardedLock:
    def test_same_key_same_lock(self):
        locks = ShardedLock(16)
        assert locks.for_key("user-1") is locks.for_key("user-1")

    def test_shard_index_in_range(self):
        locks = ShardedLock(4)
        for i in range(50):
            assert 0 <= locks.shard_index(f"key-{i}") < 4

    def test_rejects_zero_shards(self):
        with pytest.raises(ValueError):
            ShardedLock(0)


class TestPresenceTracker:
    @pytest.mark.asyncio
    async def test_first_connection_comes_online(self, presence):
        """First connection for a user reports the 0 -> 1 transition."""
        assert await presence.register_connection("u1", "c1") is True
        assert presence.is_online("u1")
        assert presence.list_online_user_ids() == {"u1"}

    @pytest.mark.asyncio
    async def test_second_connection_is_not_a_transition(self, presence):
        await presence.register_connection("u1", "c1")
        assert await presence.register_connection("u1", "c2") is False
        assert presence.connection_count("u1") == 2

    @pytest.mark.asyncio
    async def test_entry_deleted_on_last_disconnect(self, presence):
        await presence.register_connection("u1", "c1")
        await presence.register_connection("u1", "c2")

        assert await presence.deregister_connection("u1", "c1") is False
        assert presence.is_online("u1")

        assert await presence.deregister_connection("u1", "c2") is True
        assert not presence.is_online("u1")
        assert "u1" not in presence._connections
        assert presence.connection_count("u1") == 0

    @pytest.mark.asyncio
    async def test_unknown_deregister_is_ignored(self, presence):
        calls = []

        async def on_last():
            calls.append("offline")

        assert await presence.deregister_connection("ghost", "c1", on_last=on_last) is False
        await presence.register_connection("u1", "c1")
        assert await presence.deregister_connection("u1", "other", on_last=on_last) is False
        assert calls == []
        assert presence.is_online("u1")

    @pytest.mark.asyncio
    async def test_callbacks_fire_only_on_transitions(self, presence):
        events = []

        async def on_first():
            events.append("online")

        async def on_last():
            events.append("offline")

        await presence.register_connection("u1", "c1", on_first=on_first)
        await presence.register_connection("u1", "c2", on_first=on_first)
        await presence.register_connection("u1", "c3", on_first=on_first)
        await presence.deregister_connection("u1", "c2", on_last=on_last)
        await presence.deregister_connection("u1", "c1", on_last=on_last)
        assert events == ["online"]

        await presence.deregister_connection("u1", "c3", on_last=on_last)
        assert events == ["online", "offline"]

    @pytest.mark.asyncio
    async def test_random_device_sequences(self, presence):
        """Online iff at least one connection is open; one event per edge."""
        rng = random.Random(1234)
        events = []

        async def on_first():
            events.append("online")

        async def on_last():
            events.append("offline")

        open_connections: set[str] = set()
        expected_online = 0
        expected_offline = 0

        for step in range(300):
            if open_connections and rng.random() < 0.5:
                conn = rng.choice(sorted(open_connections))
                open_connections.discard(conn)
                await presence.deregister_connection("u1", conn, on_last=on_last)
                if not open_connections:
                    expected_offline += 1
            else:
                conn = f"c{step}"
                if not open_connections:
                    expected_online += 1
                open_connections.add(conn)
                await presence.register_connection("u1", conn, on_first=on_first)

            assert presence.is_online("u1") == bool(open_connections)
            assert ("u1" in presence.list_online_user_ids()) == bool(open_connections)

        assert events.count("online") == expected_online
        assert events.count("offline") == expected_offline

    @pytest.mark.asyncio
    async def test_concurrent_tabs_never_reorder_transitions(self, presence):
        """Transition callbacks hold the user's lock, so events strictly alternate."""
        events = []

        async def on_first():
            await asyncio.sleep(0)
            events.append("online")

        async def on_last():
            await asyncio.sleep(0)
            events.append("offline")

        ops = []
        for round_ in range(20):
            ops.append(presence.register_connection("u1", f"a{round_}", on_first=on_first))
            ops.append(presence.register_connection("u1", f"b{round_}", on_first=on_first))
            ops.append(presence.deregister_connection("u1", f"a{round_}", on_last=on_last))
            ops.append(presence.deregister_connection("u1", f"b{round_}", on_last=on_last))
        await asyncio.gather(*ops)

        assert not presence.is_online("u1")
        assert events == ["online", "offline"] * 20

    @pytest.mark.asyncio
    async def test_users_are_independent(self, presence):
        await presence.register_connection("u1", "c1")
        await presence.register_connection("u2", "c2")
        await presence.deregister_connection("u1", "c1")
        assert presence.list_online_user_ids() == {"u2"}
        assert presence.user_count == 1
