"""Pydantic schemas for ClawChat."""

from clawchat.schemas.realtime import (
    BaseEvent,
    ClientMessage,
    CommandType,
    EventType,
    Identity,
    MessagePayload,
    Role,
    UserSummary,
    WebSocketMessage,
)

__all__ = [
    "BaseEvent",
    "ClientMessage",
    "CommandType",
    "EventType",
    "Identity",
    "MessagePayload",
    "Role",
    "UserSummary",
    "WebSocketMessage",
]
