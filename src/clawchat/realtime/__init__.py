"""Realtime messaging and presence coordination."""

from clawchat.realtime.broadcaster import BotMentionDetector, EventBroadcaster
from clawchat.realtime.gateway import BotCredential, PersistenceGateway, SQLPersistenceGateway
from clawchat.realtime.hub import RealtimeHub, get_realtime_hub
from clawchat.realtime.identity import Credential, IdentityVerifier
from clawchat.realtime.presence import PresenceTracker
from clawchat.realtime.rooms import AllowAllRoomAuthorizer, RoomAuthorizer, RoomId, RoomKind, RoomRouter
from clawchat.realtime.session import ConnectionSession, SessionState
from clawchat.realtime.tasks import spawn_detached

__all__ = [
    "AllowAllRoomAuthorizer",
    "BotCredential",
    "BotMentionDetector",
    "ConnectionSession",
    "Credential",
    "EventBroadcaster",
    "IdentityVerifier",
    "PersistenceGateway",
    "PresenceTracker",
    "RealtimeHub",
    "RoomAuthorizer",
    "RoomId",
    "RoomKind",
    "RoomRouter",
    "SQLPersistenceGateway",
    "SessionState",
    "get_realtime_hub",
    "spawn_detached",
]
