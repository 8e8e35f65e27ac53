"""Sharded asyncio locks for per-key serialization of shared maps."""

import asyncio
import zlib


class ShardedLock:
    """A fixed pool of ``asyncio.Lock`` objects selected by key.

    Mutations on the same key always take the same lock; unrelated keys
    contend only when they hash to the same shard.

    Usage:
        async with locks.for_key(user_id):
            ...
    """

    def __init__(self, shards: int = 64) -> None:
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._locks = [asyncio.Lock() for _ in range(shards)]

    def __len__(self) -> int:
        return len(self._locks)

    def shard_index(self, key: str) -> int:
        # crc32 is stable across processes, unlike hash() on str
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def for_key(self, key: str) -> asyncio.Lock:
        return self._locks[self.shard_index(key)]
