"""
Event emission interface for write paths.

Write paths call these methods strictly after their transaction commits.
Each method builds the wire event(s) and hands them to the ``RoomRouter``;
none of them raise on delivery problems. Thread replies also bump the
thread counters through the persistence gateway as a detached side effect.
"""

import re
from typing import Any, Iterable, Optional, Union

from clawchat.core.config import settings
from clawchat.core.logging import get_logger
from clawchat.realtime.gateway import PersistenceGateway
from clawchat.realtime.rooms import RoomId, RoomRouter
from clawchat.realtime.tasks import spawn_detached
from clawchat.schemas.realtime import (
    BotMentionedEvent,
    BotSettingsUpdatedEvent,
    Identity,
    MessageCreatedEvent,
    MessageDeletedEvent,
    MessageEditedEvent,
    MessagePayload,
    ReactionAddedEvent,
    ReactionRemovedEvent,
    ThreadReplyCreatedEvent,
    TypingEvent,
    UserOfflineEvent,
    UserOnlineEvent,
    UserSummary,
)

logger = get_logger(__name__)

MessageLike = Union[MessagePayload, dict[str, Any]]
ActorLike = Union[Identity, UserSummary, dict[str, Any]]


class BotMentionDetector:
    """Finds ``@handle`` mentions of the configured bot handles.

    Matching is case-insensitive and requires a word boundary after the
    handle. Results are lowercased and de-duplicated in first-seen order.
    """

    def __init__(self, handles: Optional[Iterable[str]] = None) -> None:
        names = [h.strip().lower() for h in (handles if handles is not None else settings.bot_mention_handles)]
        self.handles = tuple(dict.fromkeys(h for h in names if h))
        alternation = "|".join(re.escape(h) for h in self.handles)
        self._pattern = re.compile(rf"@({alternation})\b", re.IGNORECASE) if self.handles else None

    def detect(self, content: Optional[str]) -> list[str]:
        if not content or self._pattern is None:
            return []
        return list(dict.fromkeys(m.lower() for m in self._pattern.findall(content)))


def _as_message(message: MessageLike) -> MessagePayload:
    if isinstance(message, MessagePayload):
        return message
    return MessagePayload.model_validate(message)


def _as_actor(actor: ActorLike) -> UserSummary:
    if isinstance(actor, Identity):
        return actor.summary()
    if isinstance(actor, UserSummary):
        return actor
    return UserSummary.model_validate(actor)


class EventBroadcaster:
    """Translates committed writes into realtime events."""

    def __init__(
        self,
        router: RoomRouter,
        mention_detector: Optional[BotMentionDetector] = None,
        gateway: Optional[PersistenceGateway] = None,
    ) -> None:
        self._router = router
        self._mentions = mention_detector or BotMentionDetector()
        self._gateway = gateway

    @property
    def mention_handles(self) -> tuple[str, ...]:
        return self._mentions.handles

    # -------------------------------------------------------------------------
    # Message lifecycle
    # -------------------------------------------------------------------------

    async def message_created(
        self,
        message: MessageLike,
        channel_id: str,
        thread_id: Optional[str] = None,
    ) -> None:
        """Fan out a new message, its thread reply and any bot mention."""
        payload = _as_message(message)

        if thread_id:
            await self._router.broadcast(
                RoomId.thread(thread_id),
                ThreadReplyCreatedEvent(message=payload, thread_id=thread_id),
            )
            self._record_thread_reply(payload, channel_id, thread_id)
        await self._router.broadcast(
            RoomId.channel(channel_id),
            MessageCreatedEvent(message=payload, channel_id=channel_id),
        )

        mentioned = self._mentions.detect(payload.content)
        if mentioned:
            logger.info(f"Bots mentioned in message {payload.id}: {', '.join(mentioned)}")
            await self._router.broadcast_all(
                BotMentionedEvent(
                    message=payload,
                    channel_id=channel_id,
                    thread_id=thread_id,
                    mentioned_bots=mentioned,
                )
            )

    async def thread_reply_created(self, message: MessageLike, thread_id: str, channel_id: str) -> None:
        """Reply posted through the thread endpoint: thread room, then channel room."""
        payload = _as_message(message)
        await self._router.broadcast(
            RoomId.thread(thread_id),
            ThreadReplyCreatedEvent(message=payload, thread_id=thread_id),
        )
        await self._router.broadcast(
            RoomId.channel(channel_id),
            MessageCreatedEvent(message=payload, channel_id=channel_id),
        )
        self._record_thread_reply(payload, channel_id, thread_id)

    def _record_thread_reply(self, payload: MessagePayload, channel_id: str, thread_id: str) -> None:
        if self._gateway is None or payload.author_id is None:
            return
        spawn_detached(
            self._gateway.record_thread_reply(str(channel_id), str(thread_id), payload.author_id),
            name=f"thread-reply:{thread_id}",
        )

    async def message_edited(self, message: MessageLike) -> None:
        payload = _as_message(message)
        event = MessageEditedEvent(message=payload)
        await self._router.broadcast(RoomId.channel(payload.channel_id), event)
        if payload.thread_id:
            await self._router.broadcast(RoomId.thread(payload.thread_id), event)

    async def message_deleted(self, message_id: str, channel_id: str) -> None:
        await self._router.broadcast(
            RoomId.channel(channel_id),
            MessageDeletedEvent(message_id=message_id, channel_id=channel_id),
        )

    async def reaction_added(self, message_id: str, channel_id: str, emoji: str, actor: ActorLike) -> None:
        await self._router.broadcast(
            RoomId.channel(channel_id),
            ReactionAddedEvent(
                message_id=message_id,
                channel_id=channel_id,
                emoji=emoji,
                user=_as_actor(actor),
            ),
        )

    async def reaction_removed(self, message_id: str, channel_id: str, emoji: str, actor: ActorLike) -> None:
        await self._router.broadcast(
            RoomId.channel(channel_id),
            ReactionRemovedEvent(
                message_id=message_id,
                channel_id=channel_id,
                emoji=emoji,
                user=_as_actor(actor),
            ),
        )

    # -------------------------------------------------------------------------
    # Bots
    # -------------------------------------------------------------------------

    async def bot_settings_updated(self, channel_id: str, settings: dict[str, Any]) -> None:
        """Sent to every connection; bots filter on the channel."""
        await self._router.broadcast_all(BotSettingsUpdatedEvent(channel_id=channel_id, new_settings=settings))

    # -------------------------------------------------------------------------
    # Ephemeral and presence
    # -------------------------------------------------------------------------

    async def typing(
        self,
        identity: Identity,
        channel_id: str,
        thread_id: Optional[str] = None,
        exclude_connection: Optional[str] = None,
    ) -> int:
        """Typing ping to the thread room when given, else the channel room."""
        room = RoomId.thread(thread_id) if thread_id else RoomId.channel(channel_id)
        return await self._router.broadcast(
            room,
            TypingEvent(user=identity.summary(), channel_id=channel_id, thread_id=thread_id),
            exclude_connection=exclude_connection,
        )

    async def user_online(self, identity: Identity, exclude_connection: Optional[str] = None) -> int:
        return await self._router.broadcast_all(
            UserOnlineEvent(user_id=identity.id, username=identity.username),
            exclude_connection=exclude_connection,
        )

    async def user_offline(self, user_id: str) -> int:
        return await self._router.broadcast_all(UserOfflineEvent(user_id=user_id))
