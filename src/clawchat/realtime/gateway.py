"""
Persistence gateway consumed by the realtime core.

The core never owns the schema; it only touches the handful of columns it
needs. ``PersistenceGateway`` is the contract, ``SQLPersistenceGateway`` the
SQLAlchemy implementation used in production.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy import case, cast, func, select, update
from sqlalchemy.dialects.postgresql import UUID, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clawchat.core.exceptions import PersistenceSideEffectError
from clawchat.core.logging import get_logger
from clawchat.models import Thread, User
from clawchat.schemas.realtime import Identity, Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class BotCredential:
    """A bot identity paired with the bcrypt hash of its API key."""

    identity: Identity
    key_hash: str


@runtime_checkable
class PersistenceGateway(Protocol):
    """Storage operations the realtime core depends on."""

    async def touch_last_seen(self, user_id: str) -> None:
        """Set the user's last-seen marker to now."""
        ...

    async def find_bot_identities_with_key_hashes(self) -> list[BotCredential]:
        """All bot accounts that have an API key."""
        ...

    async def record_thread_reply(self, channel_id: str, root_message_id: str, author_id: str) -> None:
        """Bump reply counters for a thread and add the author as participant."""
        ...


def _role_for_bot(raw: Optional[str]) -> Role:
    try:
        return Role(raw) if raw else Role.BOT
    except ValueError:
        return Role.BOT


class SQLPersistenceGateway:
    """PersistenceGateway backed by the chat database."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        if session_factory is None:
            from clawchat.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    async def touch_last_seen(self, user_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(User).where(User.id == user_id).values(last_seen=func.now())
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceSideEffectError("touch_last_seen", original_error=e) from e

    async def find_bot_identities_with_key_hashes(self) -> list[BotCredential]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(User.id, User.username, User.role, User.api_key).where(
                        User.is_bot.is_(True),
                        User.api_key.is_not(None),
                    )
                )
                rows = result.all()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceSideEffectError("find_bot_identities", original_error=e) from e

        return [
            BotCredential(
                identity=Identity(
                    id=str(row.id),
                    username=row.username,
                    role=_role_for_bot(row.role),
                    is_bot=True,
                ),
                key_hash=row.api_key,
            )
            for row in rows
        ]

    async def record_thread_reply(self, channel_id: str, root_message_id: str, author_id: str) -> None:
        author = cast(author_id, UUID(as_uuid=False))
        stmt = insert(Thread).values(
            channel_id=channel_id,
            root_message_id=root_message_id,
            reply_count=1,
            last_reply_at=func.now(),
            participants=[author_id],
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Thread.root_message_id],
            set_={
                "reply_count": Thread.reply_count + 1,
                "last_reply_at": func.now(),
                "participants": case(
                    (Thread.participants.any(author_id), Thread.participants),
                    else_=func.array_append(Thread.participants, author),
                ),
            },
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceSideEffectError("record_thread_reply", original_error=e) from e
        logger.debug(f"Recorded reply by {author_id} in thread {root_message_id}")

