"""SQLAlchemy models for the tables the realtime core touches."""

from clawchat.models.channel import Channel
from clawchat.models.message import Message, Thread
from clawchat.models.user import User

__all__ = [
    "Channel",
    "Message",
    "Thread",
    "User",
]
