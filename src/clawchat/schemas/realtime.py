"""Realtime event schemas for WebSocket communication.

Outbound events are a closed set of pydantic models discriminated on
``event``. Envelope fields are serialized in camelCase; nested message
projections keep the column names the REST API returns.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _id_to_str(value: Any) -> Any:
    # asyncpg returns UUID objects for uuid columns
    return str(value) if isinstance(value, UUID) else value


# Row identifier, always a string on the wire
EntityId = Annotated[str, BeforeValidator(_id_to_str)]


# =============================================================================
# Event Types
# =============================================================================


class EventType(str, Enum):
    """Server -> client event names."""

    # Control events
    ONLINE_USERS = "online_users"
    PONG = "pong"
    ERROR = "error"

    # Presence events
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    USER_TYPING = "user_typing"

    # Message lifecycle events
    NEW_MESSAGE = "new_message"
    THREAD_REPLY = "thread_reply"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    REACTION_ADDED = "reaction_added"
    REACTION_REMOVED = "reaction_removed"

    # Bot events
    MENTION = "mention"
    BOT_SETTINGS_UPDATED = "bot_settings_updated"


class CommandType(str, Enum):
    """Client -> server command names."""

    JOIN_CHANNEL = "join_channel"
    LEAVE_CHANNEL = "leave_channel"
    JOIN_THREAD = "join_thread"
    LEAVE_THREAD = "leave_thread"
    TYPING = "typing"
    PING = "ping"


class Role(str, Enum):
    """Account roles."""

    USER = "user"
    ADMIN = "admin"
    BOT = "bot"


# =============================================================================
# Identity and Payload Projections
# =============================================================================


class Identity(BaseModel):
    """Verified identity of a connected client, fixed for the connection's lifetime."""

    model_config = ConfigDict(frozen=True)

    id: EntityId = Field(..., description="User ID")
    username: str = Field(..., description="Username")
    role: Role = Field(default=Role.USER, description="Account role")
    is_bot: bool = Field(default=False, description="Whether this is a bot account")

    def summary(self) -> "UserSummary":
        return UserSummary(id=self.id, username=self.username)


class UserSummary(BaseModel):
    """Minimal actor projection carried by typing and reaction events."""

    id: EntityId
    username: str


class MessageAuthor(BaseModel):
    """Author projection embedded in a message."""

    model_config = ConfigDict(extra="allow")

    id: EntityId
    username: str
    is_bot: bool = False
    avatar_url: Optional[str] = None


class MessagePayload(BaseModel):
    """Message projection assembled by the write path after commit.

    Columns not listed here (reply counts, attachments, reactions) pass
    through unchanged.
    """

    model_config = ConfigDict(extra="allow")

    id: EntityId
    channel_id: EntityId
    author_id: Optional[EntityId] = None
    content: str = ""
    thread_id: Optional[EntityId] = None
    reply_to: Optional[EntityId] = None
    edited_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    author: Optional[MessageAuthor] = None


# =============================================================================
# Base Event Schema
# =============================================================================


class BaseEvent(BaseModel):
    """Base schema for all outbound realtime events."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event: EventType = Field(..., description="Event type")
    timestamp: datetime = Field(default_factory=_utc_now, description="Event timestamp")
    request_id: Optional[str] = Field(None, description="Client request ID for correlation")


# =============================================================================
# Control Events
# =============================================================================


class OnlineUsersEvent(BaseEvent):
    """Snapshot of online user IDs, sent once to a freshly connected client."""

    event: Literal[EventType.ONLINE_USERS] = EventType.ONLINE_USERS
    user_ids: list[EntityId] = Field(default_factory=list)


class PongEvent(BaseEvent):
    """Pong response to ping."""

    event: Literal[EventType.PONG] = EventType.PONG


class ErrorEvent(BaseEvent):
    """Error event, only ever sent to the connection that caused it."""

    event: Literal[EventType.ERROR] = EventType.ERROR
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    details: Optional[dict[str, Any]] = Field(None, description="Additional error details")


# =============================================================================
# Presence Events
# =============================================================================


class UserOnlineEvent(BaseEvent):
    """A user went from zero to one open connection."""

    event: Literal[EventType.USER_ONLINE] = EventType.USER_ONLINE
    user_id: EntityId
    username: str


class UserOfflineEvent(BaseEvent):
    """A user's last open connection closed."""

    event: Literal[EventType.USER_OFFLINE] = EventType.USER_OFFLINE
    user_id: EntityId


class TypingEvent(BaseEvent):
    """Ephemeral typing ping, never persisted."""

    event: Literal[EventType.USER_TYPING] = EventType.USER_TYPING
    user: UserSummary
    channel_id: EntityId
    thread_id: Optional[EntityId] = None


# =============================================================================
# Message Lifecycle Events
# =============================================================================


class MessageCreatedEvent(BaseEvent):
    event: Literal[EventType.NEW_MESSAGE] = EventType.NEW_MESSAGE
    message: MessagePayload
    channel_id: EntityId


class ThreadReplyCreatedEvent(BaseEvent):
    event: Literal[EventType.THREAD_REPLY] = EventType.THREAD_REPLY
    message: MessagePayload
    thread_id: EntityId


class MessageEditedEvent(BaseEvent):
    event: Literal[EventType.MESSAGE_EDITED] = EventType.MESSAGE_EDITED
    message: MessagePayload


class MessageDeletedEvent(BaseEvent):
    event: Literal[EventType.MESSAGE_DELETED] = EventType.MESSAGE_DELETED
    message_id: EntityId
    channel_id: EntityId


class ReactionAddedEvent(BaseEvent):
    event: Literal[EventType.REACTION_ADDED] = EventType.REACTION_ADDED
    message_id: EntityId
    channel_id: EntityId
    emoji: str
    user: UserSummary


class ReactionRemovedEvent(BaseEvent):
    event: Literal[EventType.REACTION_REMOVED] = EventType.REACTION_REMOVED
    message_id: EntityId
    channel_id: EntityId
    emoji: str
    user: UserSummary


# =============================================================================
# Bot Events
# =============================================================================


class BotMentionedEvent(BaseEvent):
    """One or more configured bot handles were mentioned in a new message."""

    event: Literal[EventType.MENTION] = EventType.MENTION
    message: MessagePayload
    channel_id: EntityId
    thread_id: Optional[EntityId] = None
    mentioned_bots: list[str]


class BotSettingsUpdatedEvent(BaseEvent):
    """Per-channel bot settings changed; clients filter on ``channelId``."""

    event: Literal[EventType.BOT_SETTINGS_UPDATED] = EventType.BOT_SETTINGS_UPDATED
    channel_id: EntityId
    new_settings: dict[str, Any] = Field(default_factory=dict)


DomainEvent = Annotated[
    Union[
        MessageCreatedEvent,
        MessageEditedEvent,
        MessageDeletedEvent,
        ThreadReplyCreatedEvent,
        ReactionAddedEvent,
        ReactionRemovedEvent,
        TypingEvent,
        BotMentionedEvent,
        BotSettingsUpdatedEvent,
        UserOnlineEvent,
        UserOfflineEvent,
    ],
    Field(discriminator="event"),
]

OutboundEvent = Annotated[
    Union[
        MessageCreatedEvent,
        MessageEditedEvent,
        MessageDeletedEvent,
        ThreadReplyCreatedEvent,
        ReactionAddedEvent,
        ReactionRemovedEvent,
        TypingEvent,
        BotMentionedEvent,
        BotSettingsUpdatedEvent,
        UserOnlineEvent,
        UserOfflineEvent,
        OnlineUsersEvent,
        PongEvent,
        ErrorEvent,
    ],
    Field(discriminator="event"),
]

_outbound_adapter: TypeAdapter[Any] = TypeAdapter(OutboundEvent)


# =============================================================================
# Inbound Commands
# =============================================================================


class _CommandPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChannelTarget(_CommandPayload):
    channel_id: str = Field(..., min_length=1)


class ThreadTarget(_CommandPayload):
    thread_id: str = Field(..., min_length=1)


class TypingPayload(_CommandPayload):
    channel_id: str = Field(..., min_length=1)
    thread_id: Optional[str] = None


class ClientMessage(BaseModel):
    """Inbound frame: ``{"type": ..., "payload": {...}, "request_id": ...}``."""

    type: CommandType
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None


# =============================================================================
# WebSocket Message Wrapper
# =============================================================================


class WebSocketMessage(BaseModel):
    """Outbound frame wrapper."""

    type: str = Field(..., description="Message type (event type)")
    payload: dict[str, Any] = Field(..., description="Event payload")
    timestamp: datetime = Field(default_factory=_utc_now)
    request_id: Optional[str] = Field(None, description="Client request ID")

    @classmethod
    def from_event(cls, event: BaseEvent) -> "WebSocketMessage":
        """Create WebSocket message from an event."""
        return cls(
            type=event.event.value,
            payload=event.model_dump(
                mode="json",
                by_alias=True,
                exclude={"event", "timestamp", "request_id"},
            ),
            timestamp=event.timestamp,
            request_id=event.request_id,
        )

    def to_frame(self) -> dict[str, Any]:
        """JSON-ready dict for ``send_json``."""
        exclude = {"request_id"} if self.request_id is None else None
        return self.model_dump(mode="json", exclude=exclude)


def parse_event_frame(frame: dict[str, Any]) -> BaseEvent:
    """Decode an outbound frame back into its event model (clients and tests)."""
    data = {
        "event": frame["type"],
        "timestamp": frame.get("timestamp"),
        "requestId": frame.get("request_id"),
        **frame.get("payload", {}),
    }
    if data["timestamp"] is None:
        del data["timestamp"]
    return _outbound_adapter.validate_python(data)
