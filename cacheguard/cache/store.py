"""TTL key-value stores backing the cache manager.

Two implementations share the ``CacheStore`` interface:

- ``RedisCacheStore``: Redis via ``redis.asyncio``; expiry is native.
- ``MemoryCacheStore``: in-process dict with lazy expiry, for development
  and tests.

Stores deal in serialized strings only. Policy (TTL choice, stale mirrors,
validation) lives in the cache manager; administrative operations such as
flush and pattern deletion are called on the store directly.
"""

import fnmatch
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class CacheStore(ABC):
    """Interface for a TTL key-value store."""

    #: Whether expired keys disappear without calling purge_expired().
    supports_native_ttl: bool = True

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored string or None if absent/expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """Store ``value`` for ``ttl`` seconds."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of an existing key. Returns False if absent."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern."""

    @abstractmethod
    async def flush(self) -> None:
        """Remove every key."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds, -1 if no TTL, -2 if missing."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check the store is reachable."""

    async def exists(self, key: str) -> bool:
        """Check whether a live key exists."""
        return await self.get(key) is not None

    async def purge_expired(self) -> int:
        """Drop expired entries; stores with native TTL have nothing to do."""
        return 0

    async def info(self) -> dict[str, Any]:
        """Backend details for admin endpoints."""
        return {"backend": type(self).__name__}

    async def close(self) -> None:
        """Release backend resources."""


class RedisCacheStore(CacheStore):
    """Cache store backed by Redis.

    Example:
        store = RedisCacheStore.from_url("redis://localhost:6379")
        await store.set("coingecko:token-price:abc", '{"usd": 1.0}', 300)
    """

    supports_native_ttl = True

    def __init__(self, redis: Any) -> None:
        """Initialize the store.

        Args:
            redis: ``redis.asyncio.Redis`` client (or compatible).
        """
        self.redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        """Create a store from a Redis URL."""
        from redis.asyncio import Redis

        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        data = await self.redis.get(key)
        if data is None:
            return None
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return str(data)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.redis.setex(key, ttl, value)

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self.redis.expire(key, ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.redis.delete(*keys))

    async def delete_pattern(self, pattern: str) -> int:
        keys = [key async for key in self.redis.scan_iter(match=pattern)]
        if not keys:
            return 0
        deleted = int(await self.redis.delete(*keys))
        logger.info("cache_delete_pattern", pattern=pattern, deleted_count=deleted)
        return deleted

    async def flush(self) -> None:
        await self.redis.flushdb()
        logger.info("cache_flushed", backend="redis")

    async def ttl(self, key: str) -> int:
        return int(await self.redis.ttl(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def info(self) -> dict[str, Any]:
        memory = await self.redis.info("memory")
        return {
            "backend": "redis",
            "db_size": int(await self.redis.dbsize()),
            "used_memory_human": memory.get("used_memory_human", "unknown"),
        }

    async def close(self) -> None:
        await self.redis.aclose()


class MemoryCacheStore(CacheStore):
    """In-process cache store with lazy expiry.

    Expired entries are dropped when read or on purge_expired().
    """

    supports_native_ttl = False

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the store.

        Args:
            clock: Time source in seconds (injectable for tests).
        """
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> tuple[str, float] | None:
        item = self._data.get(key)
        if item is None:
            return None
        if item[1] <= self._clock():
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> str | None:
        item = self._live(key)
        return item[0] if item else None

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._clock() + ttl)

    async def expire(self, key: str, ttl: int) -> bool:
        item = self._live(key)
        if item is None:
            return False
        self._data[key] = (item[0], self._clock() + ttl)
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                deleted += 1
            self._data.pop(key, None)
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        matches = [key for key in list(self._data) if fnmatch.fnmatchcase(key, pattern)]
        deleted = await self.delete(*matches)
        logger.info("cache_delete_pattern", pattern=pattern, deleted_count=deleted)
        return deleted

    async def flush(self) -> None:
        self._data.clear()
        logger.info("cache_flushed", backend="memory")

    async def ttl(self, key: str) -> int:
        item = self._live(key)
        if item is None:
            return -2
        return int(item[1] - self._clock())

    async def ping(self) -> bool:
        return True

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def info(self) -> dict[str, Any]:
        return {"backend": "memory", "db_size": len(self._data)}
