"""Message and thread aggregate models."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Text, func
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from clawchat.db.base import Base, UUIDMixin


class Message(Base, UUIDMixin):
    """
    Channel message.

    Thread replies point at their root message through ``thread_id``.
    """

    channel_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("channels.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    thread_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=True,
    )
    reply_to: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("messages.id", ondelete="SET NULL"),
        nullable=True,
    )
    edited_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
    )
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Thread(Base, UUIDMixin):
    """Denormalized reply counters for a thread root message."""

    channel_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("channels.id"),
        nullable=False,
    )
    root_message_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("messages.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    reply_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reply_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    participants: Mapped[list[str]] = mapped_column(
        ARRAY(UUID(as_uuid=False)),
        default=list,
        nullable=False,
    )
