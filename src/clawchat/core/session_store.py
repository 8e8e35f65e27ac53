"""Redis-backed token blacklist consulted when verifying session tokens."""

from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from clawchat.core.config import settings
from clawchat.core.logging import get_logger

logger = get_logger(__name__)


class RedisSessionStore:
    """Read side of the session token blacklist.

    The auth service writes ``session:blacklist:<jti>`` keys with a TTL equal
    to the token's remaining lifetime when a user logs out. The realtime core
    only checks for their existence.
    """

    BLACKLIST_PREFIX = "session:blacklist"

    def __init__(self, redis_url: str | None = None) -> None:
        self._redis_url = redis_url or settings.redis_url
        self._redis: Optional[Redis] = None

    async def get_redis(self) -> Optional[Redis]:
        """Get or create the Redis client, None if it cannot be created."""
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self._redis_url,
                    max_connections=settings.redis_max_connections,
                    decode_responses=True,
                )
            except Exception as e:
                logger.warning(f"Failed to create Redis session store client: {e}")
                self._redis = None
        return self._redis

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def generate_blacklist_key(self, token_jti: str) -> str:
        return f"{self.BLACKLIST_PREFIX}:{token_jti}"

    async def is_token_blacklisted(self, token_jti: str) -> bool:
        """Check if a session token is blacklisted.

        Fails open: when Redis is unreachable the token is treated as valid.

        Args:
            token_jti: JWT ID (jti claim) of the token

        Returns:
            True if token is blacklisted, False otherwise
        """
        try:
            redis_client = await self.get_redis()
            if not redis_client:
                logger.warning("Redis unavailable, allowing token (fail open)")
                return False

            blacklisted = await redis_client.exists(self.generate_blacklist_key(token_jti))
            if blacklisted:
                logger.debug(f"Token {token_jti} is blacklisted")
            return bool(blacklisted)

        except Exception as e:
            logger.warning(f"Error checking token blacklist: {e}")
            return False
