"""Unit tests for the SQL persistence gateway and detached side effects."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from clawchat.core.exceptions import PersistenceSideEffectError
from clawchat.realtime.gateway import PersistenceGateway, SQLPersistenceGateway
from clawchat.realtime.tasks import drain_detached, pending_detached, spawn_detached
from clawchat.schemas.realtime import Role

from conftest import FakeGateway


def mock_session_factory():
    """async_sessionmaker stand-in; returns (factory, session)."""
    session = MagicMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory, session


def compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


class TestProtocol:
    def test_implementations_satisfy_protocol(self):
        factory, _ = mock_session_factory()
        assert isinstance(SQLPersistenceGateway(factory), PersistenceGateway)
        assert isinstance(FakeGateway(), PersistenceGateway)


class TestSQLPersistenceGateway:
    @pytest.mark.asyncio
    async def test_touch_last_seen(self):
        factory, session = mock_session_factory()

        await SQLPersistenceGateway(factory).touch_last_seen("u1")

        sql = compiled(session.execute.await_args.args[0])
        assert sql.startswith("UPDATE users SET last_seen=now()")
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_touch_last_seen_wraps_database_errors(self):
        factory, session = mock_session_factory()
        session.execute.side_effect = OperationalError("UPDATE", {}, ConnectionError("gone"))

        with pytest.raises(PersistenceSideEffectError) as exc_info:
            await SQLPersistenceGateway(factory).touch_last_seen("u1")

        assert exc_info.value.details["operation"] == "touch_last_seen"
        assert isinstance(exc_info.value.original_error, OperationalError)

    @pytest.mark.asyncio
    async def test_find_bot_identities(self):
        factory, session = mock_session_factory()
        result = MagicMock()
        result.all.return_value = [
            SimpleNamespace(id="b1", username="openclaw", role="bot", api_key="$2b$hash1"),
            SimpleNamespace(id="b2", username="helper", role="nonsense", api_key="$2b$hash2"),
        ]
        session.execute.return_value = result

        bots = await SQLPersistenceGateway(factory).find_bot_identities_with_key_hashes()

        assert [b.identity.username for b in bots] == ["openclaw", "helper"]
        assert all(b.identity.is_bot for b in bots)
        assert bots[1].identity.role is Role.BOT
        assert bots[0].key_hash == "$2b$hash1"
        sql = compiled(session.execute.await_args.args[0])
        assert "users.is_bot IS true" in sql
        assert "users.api_key IS NOT NULL" in sql

    @pytest.mark.asyncio
    async def test_find_bot_identities_wraps_os_errors(self):
        factory, session = mock_session_factory()
        session.execute.side_effect = OSError("connection refused")

        with pytest.raises(PersistenceSideEffectError):
            await SQLPersistenceGateway(factory).find_bot_identities_with_key_hashes()

    @pytest.mark.asyncio
    async def test_record_thread_reply_upserts(self):
        factory, session = mock_session_factory()

        await SQLPersistenceGateway(factory).record_thread_reply("c1", "m1", "u1")

        sql = compiled(session.execute.await_args.args[0])
        assert sql.startswith("INSERT INTO threads")
        assert "ON CONFLICT (root_message_id) DO UPDATE" in sql
        assert "threads.reply_count +" in sql
        assert "array_append(threads.participants" in sql
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_thread_reply_wraps_database_errors(self):
        factory, session = mock_session_factory()
        session.execute.side_effect = OperationalError("INSERT", {}, ConnectionError("gone"))

        with pytest.raises(PersistenceSideEffectError) as exc_info:
            await SQLPersistenceGateway(factory).record_thread_reply("c1", "m1", "u1")

        assert exc_info.value.details["operation"] == "record_thread_reply"
        session.commit.assert_not_awaited()


class TestDetachedTasks:
    @pytest.mark.asyncio
    async def test_failure_is_contained(self):
        async def boom():
            raise PersistenceSideEffectError("touch_last_seen")

        task = spawn_detached(boom(), name="boom")
        await drain_detached()

        assert task.done()
        assert isinstance(task.exception(), PersistenceSideEffectError)
        assert pending_detached() == 0

    @pytest.mark.asyncio
    async def test_caller_does_not_wait(self):
        release = asyncio.Event()

        async def slow():
            await release.wait()

        task = spawn_detached(slow())
        assert not task.done()
        assert pending_detached() >= 1

        release.set()
        await drain_detached()
        assert task.done()
