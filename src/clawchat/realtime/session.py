"""
Per-connection session lifecycle.

A session moves ``CONNECTING -> AUTHENTICATED -> CLOSED``. Once open it owns
an outbound queue drained by a single writer task, so broadcasts never wait
on a slow peer and frames reach the peer in the order they were queued.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol
from uuid import uuid4

from pydantic import ValidationError

from clawchat.core.config import settings
from clawchat.core.exceptions import (
    AuthenticationError,
    ClawChatException,
    DeliveryError,
    InvalidCommandError,
    RoomAccessDeniedError,
)
from clawchat.core.logging import connection_logger
from clawchat.metrics import delivery_failures_counter, websocket_connections_gauge
from clawchat.realtime.identity import Credential
from clawchat.realtime.rooms import RoomId
from clawchat.realtime.tasks import spawn_detached
from clawchat.schemas.realtime import (
    ChannelTarget,
    ClientMessage,
    CommandType,
    ErrorEvent,
    Identity,
    OnlineUsersEvent,
    PongEvent,
    ThreadTarget,
    TypingPayload,
)

if TYPE_CHECKING:
    from clawchat.realtime.hub import RealtimeHub

# Close codes
CLOSE_AUTH_FAILED = 4001
CLOSE_GOING_AWAY = 1001


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Transport(Protocol):
    """The slice of ``starlette.websockets.WebSocket`` a session writes to."""

    async def send_json(self, data: Any, mode: str = "text") -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ConnectionSession:
    """One live client connection."""

    def __init__(
        self,
        transport: Transport,
        hub: "RealtimeHub",
        connection_id: Optional[str] = None,
        *,
        queue_size: Optional[int] = None,
        send_timeout: Optional[float] = None,
    ) -> None:
        self.connection_id = connection_id or str(uuid4())
        self.transport = transport
        self.identity: Optional[Identity] = None
        self.state = SessionState.CONNECTING
        self.joined_rooms: set[RoomId] = set()
        self.connected_at = _utc_now()
        self.last_ping = self.connected_at

        self._hub = hub
        self._send_timeout = send_timeout if send_timeout is not None else settings.ws_send_timeout_seconds
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.ws_outbound_queue_size
        )
        self._writer: Optional[asyncio.Task[None]] = None
        self._log = connection_logger(__name__, self.connection_id)

    def __repr__(self) -> str:
        user = self.identity.id if self.identity else None
        return f"<ConnectionSession {self.connection_id} user={user} state={self.state.value}>"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def authenticate(self, credential: Credential) -> Identity:
        """
        Verify the connect-time credential.

        Raises:
            AuthenticationError: The connection must be rejected
        """
        identity = await self._hub.verifier.authenticate(credential)
        self.identity = identity
        self._log = connection_logger(__name__, self.connection_id, identity.id)
        return identity

    async def open(self) -> None:
        """Enter AUTHENTICATED: become addressable, announce presence, send the snapshot."""
        if self.identity is None:
            raise AuthenticationError("Session opened before authentication")
        if self.state is not SessionState.CONNECTING:
            return

        identity = self.identity
        self.state = SessionState.AUTHENTICATED
        self.connected_at = self.last_ping = _utc_now()
        self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer:{self.connection_id}")

        self._hub.router.register(self)
        websocket_connections_gauge.inc()

        await self._hub.presence.register_connection(
            identity.id,
            self.connection_id,
            on_first=self._announce_online,
        )
        await self._hub.router.broadcast_to_connection(
            self.connection_id,
            OnlineUsersEvent(user_ids=sorted(self._hub.presence.list_online_user_ids())),
        )
        spawn_detached(self._hub.gateway.touch_last_seen(identity.id), name=f"last-seen:{identity.id}")

        self._log.info(
            f"Connected as {identity.username}",
            extra={"username": identity.username, "is_bot": identity.is_bot},
        )

    async def close(self, reason: str = "client disconnected", code: Optional[int] = None) -> None:
        """
        Tear the session down. Safe to call any number of times.

        Args:
            reason: Logged and, when ``code`` is given, sent in the close frame
            code: Also close the transport with this code (forced disconnects)
        """
        if self.state is SessionState.CLOSED:
            return
        was_open = self.state is SessionState.AUTHENTICATED
        self.state = SessionState.CLOSED

        if was_open and self.identity is not None:
            user_id = self.identity.id
            rooms = await self._hub.router.unregister(self.connection_id)
            websocket_connections_gauge.dec()
            await self._hub.presence.deregister_connection(
                user_id,
                self.connection_id,
                on_last=self._announce_offline,
            )
            self._stop_writer()
            spawn_detached(self._hub.gateway.touch_last_seen(user_id), name=f"last-seen:{user_id}")
            self._log.info(f"Disconnected ({reason})", extra={"rooms_left": len(rooms)})

        if code is not None:
            await self._close_transport(code, reason)

    async def _close_transport(self, code: int, reason: str) -> None:
        try:
            await self.transport.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            # Peer already gone
            self._log.debug(f"Transport close failed: {e}")

    async def _announce_online(self) -> None:
        assert self.identity is not None
        await self._hub.broadcaster.user_online(self.identity, exclude_connection=self.connection_id)

    async def _announce_offline(self) -> None:
        assert self.identity is not None
        await self._hub.broadcaster.user_offline(self.identity.id)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def join_room(self, room: RoomId) -> bool:
        """
        Join a room. Joining twice is a no-op.

        Raises:
            RoomAccessDeniedError: If the room authorizer refuses
        """
        if self.state is not SessionState.AUTHENTICATED or self.identity is None:
            return False
        if not await self._hub.authorizer.can_join(self.identity, room):
            raise RoomAccessDeniedError(str(room))
        return await self._hub.router.join(room, self.connection_id)

    async def leave_room(self, room: RoomId) -> bool:
        if self.state is not SessionState.AUTHENTICATED:
            return False
        return await self._hub.router.leave(room, self.connection_id)

    async def typing(self, channel_id: str, thread_id: Optional[str] = None) -> int:
        if self.state is not SessionState.AUTHENTICATED or self.identity is None:
            return 0
        return await self._hub.broadcaster.typing(
            self.identity,
            channel_id,
            thread_id,
            exclude_connection=self.connection_id,
        )

    async def ping(self, request_id: Optional[str] = None) -> None:
        self.last_ping = _utc_now()
        await self._hub.router.broadcast_to_connection(self.connection_id, PongEvent(request_id=request_id))

    async def handle_command(self, raw: Any) -> None:
        """
        Decode and run one inbound frame.

        Malformed frames and refused joins are answered with an ``error``
        event to this connection only. Any inbound frame counts as keepalive.
        """
        self.last_ping = _utc_now()
        request_id = raw.get("request_id") if isinstance(raw, dict) else None
        if not isinstance(request_id, str):
            request_id = None

        try:
            message = ClientMessage.model_validate(raw)
            await self._dispatch(message)
        except ValidationError as e:
            command = raw.get("type") if isinstance(raw, dict) else None
            await self.send_error(
                InvalidCommandError(_describe_validation_error(e), command=str(command) if command else None),
                request_id=request_id,
            )
        except ClawChatException as e:
            await self.send_error(e, request_id=request_id)

    async def _dispatch(self, message: ClientMessage) -> None:
        command = message.type
        payload = message.payload

        if command is CommandType.PING:
            await self.ping(message.request_id)
        elif command is CommandType.JOIN_CHANNEL:
            await self.join_room(RoomId.channel(ChannelTarget.model_validate(payload).channel_id))
        elif command is CommandType.LEAVE_CHANNEL:
            await self.leave_room(RoomId.channel(ChannelTarget.model_validate(payload).channel_id))
        elif command is CommandType.JOIN_THREAD:
            await self.join_room(RoomId.thread(ThreadTarget.model_validate(payload).thread_id))
        elif command is CommandType.LEAVE_THREAD:
            await self.leave_room(RoomId.thread(ThreadTarget.model_validate(payload).thread_id))
        elif command is CommandType.TYPING:
            target = TypingPayload.model_validate(payload)
            await self.typing(target.channel_id, target.thread_id)

    async def send_error(self, error: ClawChatException, request_id: Optional[str] = None) -> None:
        self._log.debug(f"Command rejected: {error.code} {error.message}")
        await self._hub.router.broadcast_to_connection(
            self.connection_id,
            ErrorEvent(
                code=error.code,
                message=error.message,
                details=error.details or None,
                request_id=request_id,
            ),
        )

    # -------------------------------------------------------------------------
    # Outbound queue
    # -------------------------------------------------------------------------

    def enqueue(self, frame: dict[str, Any]) -> None:
        """
        Queue a frame for the writer task without waiting.

        Raises:
            DeliveryError: If the session is closed or its queue is full
        """
        if self.state is not SessionState.AUTHENTICATED or self._writer is None or self._writer.done():
            raise DeliveryError(self.connection_id, "closed")
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull as e:
            raise DeliveryError(self.connection_id, "queue_full") from e

    @property
    def pending_frames(self) -> int:
        return self._outbox.qsize()

    async def wait_flushed(self) -> None:
        """Wait until every queued frame has been written or dropped."""
        await self._outbox.join()

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            failure: Optional[str] = None
            try:
                await asyncio.wait_for(self.transport.send_json(frame), timeout=self._send_timeout)
            except asyncio.TimeoutError:
                failure = "send_timeout"
            except Exception as e:
                self._log.warning(f"Send failed: {e}")
                failure = "send_error"
            finally:
                self._outbox.task_done()

            if failure is not None:
                delivery_failures_counter.labels(reason=failure).inc()
                self._log.warning(f"Closing connection after {failure}")
                self._drop_pending()
                spawn_detached(self.close(failure, code=CLOSE_GOING_AWAY), name=f"close:{self.connection_id}")
                return

    def _stop_writer(self) -> None:
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        self._drop_pending()

    def _drop_pending(self) -> None:
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._outbox.task_done()


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]
