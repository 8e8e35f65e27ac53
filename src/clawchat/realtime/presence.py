"""
Presence tracking for realtime connections.

A user is online while at least one of their connections is open. Entries
are removed, not emptied, when the last connection closes.
"""

from collections.abc import Awaitable, Callable
from typing import Optional

from clawchat.core.config import settings
from clawchat.core.logging import get_logger
from clawchat.metrics import online_users_gauge
from clawchat.realtime.locks import ShardedLock

logger = get_logger(__name__)

TransitionCallback = Callable[[], Awaitable[None]]


class PresenceTracker:
    """Maps user IDs to their open connection IDs.

    Mutations for one user are serialized by a per-user lock shard. The
    transition callbacks (``on_first`` / ``on_last``) run while that lock is
    held, so a user's online and offline notifications leave in the same
    order as the transitions that caused them.
    """

    def __init__(self, shards: Optional[int] = None) -> None:
        self._connections: dict[str, set[str]] = {}
        self._locks = ShardedLock(shards or settings.realtime_lock_shards)

    async def register_connection(
        self,
        user_id: str,
        connection_id: str,
        on_first: Optional[TransitionCallback] = None,
    ) -> bool:
        """
        Add a connection to a user's presence entry.

        Args:
            user_id: Owner of the connection
            connection_id: Connection to add
            on_first: Awaited when this is the user's first open connection

        Returns:
            True if the user went from offline to online
        """
        async with self._locks.for_key(user_id):
            connections = self._connections.get(user_id)
            came_online = connections is None
            if connections is None:
                connections = self._connections[user_id] = set()
            connections.add(connection_id)
            online_users_gauge.set(len(self._connections))

            if came_online:
                logger.info(f"User {user_id} is online")
                if on_first is not None:
                    await on_first()
            return came_online

    async def deregister_connection(
        self,
        user_id: str,
        connection_id: str,
        on_last: Optional[TransitionCallback] = None,
    ) -> bool:
        """
        Remove a connection from a user's presence entry.

        Unknown users and connections are ignored.

        Returns:
            True if the user went from online to offline
        """
        async with self._locks.for_key(user_id):
            connections = self._connections.get(user_id)
            if connections is None or connection_id not in connections:
                return False

            connections.discard(connection_id)
            if connections:
                return False

            del self._connections[user_id]
            online_users_gauge.set(len(self._connections))
            logger.info(f"User {user_id} is offline")
            if on_last is not None:
                await on_last()
            return True

    def list_online_user_ids(self) -> set[str]:
        return set(self._connections)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    @property
    def user_count(self) -> int:
        return len(self._connections)
