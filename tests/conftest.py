"""
Pytest configuration and fixtures for ClawChat tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient

from clawchat.core.exceptions import DeliveryError, PersistenceSideEffectError
from clawchat.core.security import create_session_token, hash_api_key
from clawchat.main import create_app
from clawchat.realtime.broadcaster import BotMentionDetector
from clawchat.realtime.gateway import BotCredential
from clawchat.realtime.hub import RealtimeHub, get_realtime_hub
from clawchat.realtime.identity import Credential
from clawchat.realtime.rooms import RoomId
from clawchat.realtime.session import ConnectionSession
from clawchat.realtime.tasks import drain_detached
from clawchat.schemas.realtime import Identity, Role

BOT_API_KEY = "claw_test-bot-key"
DEFAULT_HANDLES = ["openclaw", "bot", "claw", "niels"]
WS_URL = "/api/v1/realtime/ws"


class FakeGateway:
    """In-memory PersistenceGateway."""

    def __init__(self, bots: Optional[list[BotCredential]] = None) -> None:
        self.bots = list(bots or [])
        self.last_seen_calls: list[str] = []
        self.thread_replies: list[tuple[str, str, str]] = []
        self.fail_last_seen = False
        self.fail_bot_lookup = False

    async def touch_last_seen(self, user_id: str) -> None:
        self.last_seen_calls.append(user_id)
        if self.fail_last_seen:
            raise PersistenceSideEffectError("touch_last_seen")

    async def find_bot_identities_with_key_hashes(self) -> list[BotCredential]:
        if self.fail_bot_lookup:
            raise PersistenceSideEffectError("find_bot_identities", original_error=ConnectionError("db down"))
        return list(self.bots)

    async def record_thread_reply(self, channel_id: str, root_message_id: str, author_id: str) -> None:
        self.thread_replies.append((channel_id, root_message_id, author_id))


class FakeSubscriber:
    """Router subscriber that collects frames instead of writing to a socket."""

    def __init__(self, connection_id: str, user_id: str = "u1", fail: Optional[str] = None) -> None:
        self.connection_id = connection_id
        self.identity = Identity(id=user_id, username=user_id)
        self.joined_rooms: set[RoomId] = set()
        self.last_ping = datetime.now(timezone.utc)
        self.frames: list[dict[str, Any]] = []
        self.fail = fail

    def enqueue(self, frame: dict[str, Any]) -> None:
        if self.fail:
            raise DeliveryError(self.connection_id, self.fail)
        self.frames.append(frame)

    async def close(self, reason: str, code: Optional[int] = None) -> None:
        self.closed_with = (reason, code)


def make_transport() -> MagicMock:
    """Mock WebSocket with the methods a session writes to."""
    ws = MagicMock()
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock()
    ws.close = AsyncMock()
    return ws


async def sent_frames(session: ConnectionSession) -> list[dict[str, Any]]:
    """Every frame written to the session's transport so far."""
    await session.wait_flushed()
    return [c.args[0] for c in session.transport.send_json.await_args_list]


async def sent_types(session: ConnectionSession) -> list[str]:
    return [frame["type"] for frame in await sent_frames(session)]


@pytest.fixture(scope="session")
def bot_key_hash() -> str:
    """bcrypt hash of BOT_API_KEY, computed once."""
    return hash_api_key(BOT_API_KEY)


@pytest.fixture
def bot_identity() -> Identity:
    return Identity(id="bot-1", username="openclaw", role=Role.BOT, is_bot=True)


@pytest.fixture
def gateway(bot_identity, bot_key_hash) -> FakeGateway:
    return FakeGateway(bots=[BotCredential(identity=bot_identity, key_hash=bot_key_hash)])


@pytest.fixture
def hub(gateway) -> RealtimeHub:
    return RealtimeHub.create(gateway, mention_detector=BotMentionDetector(DEFAULT_HANDLES))


@pytest_asyncio.fixture
async def connect(hub) -> AsyncGenerator[Callable[..., Awaitable[ConnectionSession]], None]:
    """Factory that authenticates and opens a session for a user."""
    sessions: list[ConnectionSession] = []

    async def _connect(
        user_id: str = "user-1",
        username: Optional[str] = None,
        **session_kwargs: Any,
    ) -> ConnectionSession:
        session = ConnectionSession(make_transport(), hub, **session_kwargs)
        token = create_session_token(user_id, username or user_id)
        await session.authenticate(Credential(token=token))
        await session.open()
        sessions.append(session)
        return session

    yield _connect

    for session in sessions:
        await session.close("test teardown")
    await drain_detached()


# =============================================================================
# API fixtures
# =============================================================================


@asynccontextmanager
async def _no_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    yield


@pytest.fixture
def app(hub) -> FastAPI:
    """Application without its lifespan (no database), bound to the in-memory hub."""
    application = create_app()
    application.router.lifespan_context = _no_lifespan
    application.dependency_overrides[get_realtime_hub] = lambda: hub
    return application


@pytest.fixture
def client(app):
    """One TestClient, so every socket shares the same event loop."""
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(drain_detached)


@pytest.fixture
def token_for() -> Callable[..., str]:
    def _token_for(user_id: str, username: Optional[str] = None, **claims: Any) -> str:
        return create_session_token(user_id, username or user_id, **claims)

    return _token_for
