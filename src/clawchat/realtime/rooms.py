"""
Room membership and fan-out.

A room is a channel or a thread. Members are connection IDs; the router maps
them back to live sessions and hands each recipient a pre-serialized frame.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

from clawchat.core.config import settings
from clawchat.core.exceptions import DeliveryError
from clawchat.core.logging import get_logger
from clawchat.metrics import delivery_failures_counter, event_deliveries_counter
from clawchat.realtime.locks import ShardedLock
from clawchat.schemas.realtime import BaseEvent, Identity, WebSocketMessage

logger = get_logger(__name__)


class RoomKind(str, Enum):
    CHANNEL = "channel"
    THREAD = "thread"


@dataclass(frozen=True)
class RoomId:
    """Broadcast target: ``channel:<id>`` or ``thread:<id>``."""

    kind: RoomKind
    id: str

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Room id must be non-empty")

    @classmethod
    def channel(cls, channel_id: str) -> "RoomId":
        return cls(RoomKind.CHANNEL, str(channel_id))

    @classmethod
    def thread(cls, thread_id: str) -> "RoomId":
        return cls(RoomKind.THREAD, str(thread_id))

    @classmethod
    def parse(cls, value: str) -> "RoomId":
        kind, sep, room_id = value.partition(":")
        if not sep:
            raise ValueError(f"Invalid room id: {value!r}")
        return cls(RoomKind(kind), room_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


class Subscriber(Protocol):
    """What the router needs from a connection."""

    connection_id: str
    identity: Optional[Identity]
    joined_rooms: set[RoomId]
    last_ping: datetime

    def enqueue(self, frame: dict[str, Any]) -> None:
        """Queue a frame without blocking; raises ``DeliveryError`` when it cannot."""
        ...

    async def close(self, reason: str, code: Optional[int] = None) -> None: ...


class RoomAuthorizer(Protocol):
    """Decides whether an identity may join a room."""

    async def can_join(self, identity: Identity, room: RoomId) -> bool: ...


class AllowAllRoomAuthorizer:
    """Any authenticated identity may join any room, known or not."""

    async def can_join(self, identity: Identity, room: RoomId) -> bool:
        return True


class RoomRouter:
    """Owns the room -> connection membership map and delivers events to it."""

    def __init__(self, shards: Optional[int] = None) -> None:
        self._sessions: dict[str, Subscriber] = {}
        self._rooms: dict[RoomId, set[str]] = {}
        self._locks = ShardedLock(shards or settings.realtime_lock_shards)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, session: Subscriber) -> None:
        """Make a session addressable for broadcasts."""
        self._sessions[session.connection_id] = session

    async def unregister(self, connection_id: str) -> set[RoomId]:
        """
        Remove a session and clear every room it was in.

        Returns:
            The rooms the connection was removed from
        """
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return set()

        rooms = set(session.joined_rooms)
        for room in rooms:
            async with self._locks.for_key(str(room)):
                self._discard_member(room, connection_id)
        session.joined_rooms.clear()

        if rooms:
            logger.debug(f"Connection {connection_id} removed from {len(rooms)} rooms")
        return rooms

    def sessions(self) -> list[Subscriber]:
        return list(self._sessions.values())

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    async def join(self, room: RoomId, connection_id: str) -> bool:
        """
        Add a connection to a room.

        Returns:
            True if membership changed, False if already a member or unregistered
        """
        async with self._locks.for_key(str(room)):
            session = self._sessions.get(connection_id)
            if session is None:
                return False

            members = self._rooms.setdefault(room, set())
            if connection_id in members:
                return False
            members.add(connection_id)
            session.joined_rooms.add(room)

        logger.debug(f"Connection {connection_id} joined {room}")
        return True

    async def leave(self, room: RoomId, connection_id: str) -> bool:
        """Remove a connection from a room; a no-op when it was not a member."""
        async with self._locks.for_key(str(room)):
            removed = self._discard_member(room, connection_id)
            session = self._sessions.get(connection_id)
            if session is not None:
                session.joined_rooms.discard(room)

        if removed:
            logger.debug(f"Connection {connection_id} left {room}")
        return removed

    def _discard_member(self, room: RoomId, connection_id: str) -> bool:
        members = self._rooms.get(room)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[room]
        return True

    def members(self, room: RoomId) -> frozenset[str]:
        return frozenset(self._rooms.get(room, ()))

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def broadcast(
        self,
        room: RoomId,
        event: BaseEvent,
        exclude_connection: Optional[str] = None,
    ) -> int:
        """
        Deliver an event to every member of a room.

        Returns:
            Number of connections the event was queued for
        """
        targets = [cid for cid in self._rooms.get(room, ()) if cid != exclude_connection]
        if not targets:
            return 0
        return self._deliver(targets, event)

    async def broadcast_all(self, event: BaseEvent, exclude_connection: Optional[str] = None) -> int:
        """Deliver an event to every registered connection."""
        targets = [cid for cid in self._sessions if cid != exclude_connection]
        if not targets:
            return 0
        return self._deliver(targets, event)

    async def broadcast_to_connection(self, connection_id: str, event: BaseEvent) -> bool:
        """Deliver an event to a single connection."""
        if connection_id not in self._sessions:
            return False
        return self._deliver([connection_id], event) == 1

    def _deliver(self, connection_ids: list[str], event: BaseEvent) -> int:
        # Serialized once, shared by every recipient
        frame = WebSocketMessage.from_event(event).to_frame()
        delivered = 0

        for connection_id in connection_ids:
            session = self._sessions.get(connection_id)
            if session is None:
                continue
            try:
                session.enqueue(frame)
            except DeliveryError as e:
                delivery_failures_counter.labels(reason=e.details.get("reason", "unknown")).inc()
                logger.warning(
                    f"Dropped {event.event.value} for {connection_id}: {e.details.get('reason')}",
                    extra={"connection_id": connection_id, "event": event.event.value},
                )
                continue
            delivered += 1

        if delivered:
            event_deliveries_counter.labels(event=event.event.value).inc(delivered)
        return delivered

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def connection_count(self) -> int:
        return len(self._sessions)

    def get_stats(self) -> dict[str, Any]:
        """Get connection and room statistics."""
        user_ids = {s.identity.id for s in self._sessions.values() if s.identity is not None}
        return {
            "total_connections": len(self._sessions),
            "total_users": len(user_ids),
            "total_rooms": len(self._rooms),
            "rooms": {str(room): len(members) for room, members in self._rooms.items()},
        }
