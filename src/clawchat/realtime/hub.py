"""Process-wide container for the realtime services."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from clawchat.core.config import settings
from clawchat.core.logging import get_logger
from clawchat.core.session_store import RedisSessionStore
from clawchat.realtime.broadcaster import BotMentionDetector, EventBroadcaster
from clawchat.realtime.gateway import PersistenceGateway, SQLPersistenceGateway
from clawchat.realtime.identity import IdentityVerifier
from clawchat.realtime.presence import PresenceTracker
from clawchat.realtime.rooms import AllowAllRoomAuthorizer, RoomAuthorizer, RoomRouter
from clawchat.realtime.session import CLOSE_GOING_AWAY
from clawchat.realtime.tasks import drain_detached

logger = get_logger(__name__)


@dataclass
class RealtimeHub:
    """Wires the realtime services that sessions share."""

    gateway: PersistenceGateway
    verifier: IdentityVerifier
    presence: PresenceTracker
    router: RoomRouter
    broadcaster: EventBroadcaster
    authorizer: RoomAuthorizer
    session_store: Optional[RedisSessionStore] = None

    @classmethod
    def create(
        cls,
        gateway: PersistenceGateway,
        session_store: Optional[RedisSessionStore] = None,
        authorizer: Optional[RoomAuthorizer] = None,
        mention_detector: Optional[BotMentionDetector] = None,
    ) -> "RealtimeHub":
        router = RoomRouter()
        return cls(
            gateway=gateway,
            verifier=IdentityVerifier(gateway, session_store=session_store),
            presence=PresenceTracker(),
            router=router,
            broadcaster=EventBroadcaster(router, mention_detector=mention_detector, gateway=gateway),
            authorizer=authorizer or AllowAllRoomAuthorizer(),
            session_store=session_store,
        )

    async def reap_stale_sessions(self, max_idle_seconds: Optional[float] = None) -> int:
        """Close sessions that have not pinged recently.

        Returns:
            Number of sessions closed
        """
        max_idle = max_idle_seconds if max_idle_seconds is not None else settings.ws_ping_timeout_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_idle)
        stale = [s for s in self.router.sessions() if s.last_ping < cutoff]

        for session in stale:
            await session.close("ping timeout", code=CLOSE_GOING_AWAY)

        if stale:
            logger.info(f"Closed {len(stale)} stale connections")
        return len(stale)

    async def close_all(self, reason: str = "server shutdown") -> None:
        for session in self.router.sessions():
            await session.close(reason, code=CLOSE_GOING_AWAY)

    async def shutdown(self) -> None:
        """Close every session, then release Redis once pending last-seen writes finish."""
        await self.close_all()
        await drain_detached()
        if self.session_store is not None:
            await self.session_store.close()


_hub: Optional[RealtimeHub] = None


def get_realtime_hub() -> RealtimeHub:
    """Get the global realtime hub, creating it on first use."""
    global _hub
    if _hub is None:
        _hub = RealtimeHub.create(
            SQLPersistenceGateway(),
            session_store=RedisSessionStore() if settings.token_blacklist_enabled else None,
        )
    return _hub
