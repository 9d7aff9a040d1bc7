"""
Fast-path cache used for session mirrors, refresh-token registration, and
login-attempt counters.

Two implementations share one interface:

  - RedisCache: redis.asyncio client, used whenever REDIS_URL is set.
    Required when more than one API process runs.
  - MemoryCache: in-process dict with per-key expiry, evicted on write.
    Used by the test suite and by single-process development setups.

The cache is never the source of truth for anything security-critical.
Session validity falls back to the durable row on a miss, and every revoke
path deletes the cache key explicitly.
"""

import heapq
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

import redis.asyncio as aioredis

from savings.logging import get_logger

logger = get_logger(__name__)


class SessionCache(ABC):
    """Key/value cache with TTLs and counters."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter; the TTL is applied when the counter is created."""

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


class RedisCache(SessionCache):
    """Thin redis.asyncio wrapper."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def incr(self, key: str, ttl_seconds: int) -> int:
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, max(1, int(ttl_seconds)), nx=True)
        count, _ = await pipe.execute()
        return int(count)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class MemoryCache(SessionCache):
    """
    In-process cache with the same semantics as RedisCache.

    Every write first evicts keys whose TTL has lapsed, using a min-heap of
    expiry times, so keys that are never read again don't accumulate.
    `clock` returns monotonic seconds and can be replaced in tests to
    fast-forward expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        # (expires_at, key); entries go stale when a key is rewritten or deleted
        self._expiries: list[tuple[float, str]] = []

    def __len__(self) -> int:
        return len(self._data)

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def _evict_expired(self) -> None:
        now = self._clock()
        while self._expiries and self._expiries[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiries)
            entry = self._data.get(key)
            if entry is not None and entry[1] == expires_at:
                del self._data[key]

    def _store(self, key: str, value: str, expires_at: float) -> None:
        self._data[key] = (value, expires_at)
        heapq.heappush(self._expiries, (expires_at, key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._evict_expired()
        self._store(key, value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        return entry[0] if entry else None

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def incr(self, key: str, ttl_seconds: int) -> int:
        self._evict_expired()
        entry = self._live(key)
        if entry is None:
            self._store(key, "1", self._clock() + max(1, int(ttl_seconds)))
            return 1
        count = int(entry[0]) + 1
        # Same expiry, so the existing heap entry still covers it
        self._data[key] = (str(count), entry[1])
        return count

    async def ping(self) -> bool:
        return True


def create_cache(redis_url: str | None) -> SessionCache:
    """Build the configured cache backend."""
    if redis_url:
        logger.info("cache_initialized", backend="redis")
        return RedisCache(redis_url)
    logger.warning(
        "cache_memory_fallback",
        message="REDIS_URL not set; session mirrors and counters are process-local",
    )
    return MemoryCache()
