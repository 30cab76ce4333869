"""Cache manager with stale mirrors and validated writes.

This module provides the policy layer over a CacheStore so upstream
outages degrade to older data instead of errors.

Features:
- TTL chosen by declared data type
- Stale mirror of every entry at 4x the primary TTL
- Optional validation of new data against the previous value, with
  well-formed stale fields merged into suspicious data
- Cache metrics tracking (hits, misses, stale served, latency)
"""

import asyncio
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from cacheguard.cache.keys import stale_key
from cacheguard.cache.store import CacheStore
from cacheguard.cache.validation import Validator, merge_with_stale

logger = structlog.get_logger(__name__)

STALE_TTL_MULTIPLIER = 4
CACHED_AT_FIELD = "_cached_at"
UNAVAILABLE_FIELD = "_unavailable"


class DataType(str, Enum):
    """Types of cached data with different TTLs."""

    PROTOCOL_INFO = "protocol-info"
    TOKEN_PRICE = "token-price"
    PROTOCOL_TVL = "protocol-tvl"
    ALL_PROTOCOLS = "all-protocols"
    MARKET_DATA = "market-data"
    VOLUME_DATA = "volume-data"
    DEFAULT = "default"


TTL_TABLE: dict[DataType, int] = {
    DataType.PROTOCOL_INFO: 86400,  # 24 hours
    DataType.TOKEN_PRICE: 300,  # 5 minutes
    DataType.PROTOCOL_TVL: 1800,  # 30 minutes
    DataType.ALL_PROTOCOLS: 43200,  # 12 hours
    DataType.MARKET_DATA: 1800,  # 30 minutes
    DataType.VOLUME_DATA: 3600,  # 1 hour
    DataType.DEFAULT: 3600,  # 1 hour
}


@dataclass
class CacheConfig:
    """Configuration for cache TTLs.

    Attributes:
        ttls: TTL in seconds per data type.
        stale_multiplier: Stale mirror TTL as a multiple of the primary TTL.
    """

    ttls: dict[DataType, int] = field(default_factory=lambda: dict(TTL_TABLE))
    stale_multiplier: int = STALE_TTL_MULTIPLIER

    @property
    def default_ttl(self) -> int:
        return self.ttls.get(DataType.DEFAULT, TTL_TABLE[DataType.DEFAULT])

    def get_ttl(self, data_type: DataType | str | None) -> int:
        """Get TTL for a data type; unknown types use the default TTL."""
        if data_type is None:
            return self.default_ttl
        try:
            key = DataType(data_type)
        except ValueError:
            return self.default_ttl
        return self.ttls.get(key, self.default_ttl)

    def stale_ttl(self, ttl: int) -> int:
        return ttl * self.stale_multiplier


# Default cache configuration
DEFAULT_CACHE_CONFIG = CacheConfig()


@dataclass
class CacheMetrics:
    """Metrics for cache performance.

    Attributes:
        hits: Number of cache hits.
        misses: Number of cache misses.
        errors: Number of cache store errors.
        stale_served: Number of reads answered from a stale mirror.
        validation_failures: Number of writes the validator rejected.
        merges: Number of rejected writes patched from stale data.
        total_hit_latency_ms: Total latency for hits in milliseconds.
        total_miss_latency_ms: Total latency for misses in milliseconds.
    """

    hits: int = 0
    misses: int = 0
    errors: int = 0
    stale_served: int = 0
    validation_failures: int = 0
    merges: int = 0
    total_hit_latency_ms: float = 0.0
    total_miss_latency_ms: float = 0.0
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def total_requests(self) -> int:
        """Total number of cache requests."""
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Cache hit rate as a percentage."""
        if self.total_requests == 0:
            return 0.0
        return (self.hits / self.total_requests) * 100

    @property
    def avg_hit_latency_ms(self) -> float:
        if self.hits == 0:
            return 0.0
        return self.total_hit_latency_ms / self.hits

    @property
    def avg_miss_latency_ms(self) -> float:
        if self.misses == 0:
            return 0.0
        return self.total_miss_latency_ms / self.misses

    async def record_hit(self, latency_ms: float) -> None:
        async with self._lock:
            self.hits += 1
            self.total_hit_latency_ms += latency_ms

    async def record_miss(self, latency_ms: float) -> None:
        async with self._lock:
            self.misses += 1
            self.total_miss_latency_ms += latency_ms

    async def record_error(self) -> None:
        async with self._lock:
            self.errors += 1

    async def record_stale_served(self) -> None:
        async with self._lock:
            self.stale_served += 1

    async def record_validation_failure(self, merged: bool) -> None:
        async with self._lock:
            self.validation_failures += 1
            if merged:
                self.merges += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "stale_served": self.stale_served,
            "validation_failures": self.validation_failures,
            "merges": self.merges,
            "total_requests": self.total_requests,
            "hit_rate": round(self.hit_rate, 2),
            "avg_hit_latency_ms": round(self.avg_hit_latency_ms, 2),
            "avg_miss_latency_ms": round(self.avg_miss_latency_ms, 2),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.stale_served = 0
        self.validation_failures = 0
        self.merges = 0
        self.total_hit_latency_ms = 0.0
        self.total_miss_latency_ms = 0.0


def serialize(value: Any) -> str:
    """Serialize a value for caching.

    Args:
        value: Value to serialize.

    Returns:
        JSON string representation.
    """
    return json.dumps(value, default=str)


def deserialize(data: str | bytes) -> Any:
    """Deserialize a cached value.

    Args:
        data: Serialized data from cache.

    Returns:
        Deserialized value.
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return json.loads(data)


def strip_metadata(value: Any) -> Any:
    """Drop cache-layer fields (``_cached_at``, ``_stale`` ...) from a mapping."""
    if not isinstance(value, Mapping):
        return value
    return {k: v for k, v in value.items() if not k.startswith("_")}


def unwrap_stale(stale: Any) -> Any:
    """Original value of a stale payload.

    Non-mapping values are mirrored as ``{"data": value, "_cached_at": ...}``;
    those come back as ``value``. Mappings come back without metadata.
    """
    stripped = strip_metadata(stale)
    if isinstance(stripped, Mapping) and set(stripped) == {"data"}:
        return stripped["data"]
    return stripped


class CacheManager:
    """Cache manager over a CacheStore.

    Every write goes to the primary key and to ``{key}:stale`` at
    ``stale_multiplier`` times the TTL. Store failures are logged, counted
    and reported as a miss or failed write; they never reach the caller.

    Example:
        store = RedisCacheStore.from_url("redis://localhost:6379")
        cache = CacheManager(store, validator=DataValidator())

        key = CacheKeyBuilder.protocol_tvl("defillama", "aave")
        await cache.set_with_smart_ttl(key, {"tvl": 1.2e10}, DataType.PROTOCOL_TVL)
        stale = await cache.get_stale(key)
    """

    def __init__(
        self,
        store: CacheStore,
        config: CacheConfig | None = None,
        validator: Validator | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize cache manager.

        Args:
            store: Backing TTL store.
            config: Cache configuration.
            validator: Optional ``(new, previous, data_type)`` validator.
            enabled: Whether caching is enabled.
            clock: Wall clock used for ``_cached_at`` stamps.
        """
        self.store = store
        self.config = config or DEFAULT_CACHE_CONFIG
        self.validator = validator
        self.enabled = enabled
        self._clock = clock
        self.metrics = CacheMetrics()

    async def _read(self, key: str) -> Any | None:
        """Read and decode a key without touching hit/miss metrics."""
        try:
            data = await self.store.get(key)
            return deserialize(data) if data is not None else None
        except Exception as e:
            await self.metrics.record_error()
            logger.error("cache_get_error", key=key, error=str(e))
            return None

    async def get(self, key: str) -> Any | None:
        """Get a value from cache.

        Args:
            key: Cache key.

        Returns:
            Cached value or None if not found.
        """
        if not self.enabled:
            return None

        try:
            start = time.monotonic()
            data = await self.store.get(key)
            latency_ms = (time.monotonic() - start) * 1000

            if data is not None:
                await self.metrics.record_hit(latency_ms)
                logger.debug("cache_hit", key=key, latency_ms=round(latency_ms, 2))
                return deserialize(data)

            await self.metrics.record_miss(latency_ms)
            logger.debug("cache_miss", key=key)
            return None

        except Exception as e:
            await self.metrics.record_error()
            logger.error("cache_get_error", key=key, error=str(e))
            return None

    def _stale_payload(self, value: Any) -> dict[str, Any]:
        cached_at = self._clock()
        if isinstance(value, Mapping):
            return {**value, CACHED_AT_FIELD: cached_at}
        return {"data": value, CACHED_AT_FIELD: cached_at}

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Write ``key`` and its stale mirror.

        Args:
            key: Cache key.
            value: JSON-serializable value.
            ttl: TTL in seconds; defaults to the config's default TTL.

        Returns:
            True if the primary write succeeded.
        """
        if not self.enabled:
            return False

        if ttl is None:
            ttl = self.config.default_ttl
        stale_ttl = self.config.stale_ttl(ttl)

        try:
            await self.store.set(key, serialize(value), ttl)
        except Exception as e:
            await self.metrics.record_error()
            logger.error("cache_set_error", key=key, error=str(e))
            return False

        try:
            await self.store.set(stale_key(key), serialize(self._stale_payload(value)), stale_ttl)
        except Exception as e:
            await self.metrics.record_error()
            logger.warning("cache_stale_set_error", key=key, error=str(e))

        logger.debug("cache_set", key=key, ttl=ttl, stale_ttl=stale_ttl)
        return True

    async def get_stale(self, key: str) -> Any | None:
        """Read the stale mirror of ``key``.

        Returns:
            The stale payload (including ``_cached_at``) or None.
        """
        if not self.enabled:
            return None
        value = await self._read(stale_key(key))
        if value is not None:
            await self.metrics.record_stale_served()
            logger.info("cache_stale_read", key=key, cached_at=_cached_at_of(value))
        return value

    async def set_with_smart_ttl(
        self,
        key: str,
        value: Any,
        data_type: DataType | str = DataType.DEFAULT,
    ) -> bool:
        """Write ``value`` with the TTL of its data type, validating first.

        When a validator is configured and rejects the new value:
        - if a stale copy exists and both are mappings, well-formed stale
          fields are merged in, the merged value is written and the stale
          entry's TTL is extended
        - if a stale copy exists otherwise, the stale value is written back
          to the primary key and the stale entry's TTL is extended
        - with no stale copy the new value is written anyway with a warning

        A rejected value never replaces the stale mirror.

        Placeholder values (``_unavailable``) are never cached.

        Returns:
            True if a value was written.
        """
        if not self.enabled:
            return False

        if isinstance(value, Mapping) and value.get(UNAVAILABLE_FIELD):
            logger.warning("cache_skip_unavailable", key=key)
            return False

        ttl = self.config.get_ttl(data_type)
        data_type_name = data_type.value if isinstance(data_type, DataType) else str(data_type)

        if self.validator is None:
            return await self.set(key, value, ttl)

        previous = await self._read(key)
        stale = await self._read(stale_key(key))
        if previous is None and stale is not None:
            previous = unwrap_stale(stale)

        result = self.validator(value, previous, data_type_name)
        if result.valid:
            return await self.set(key, value, ttl)

        if isinstance(value, Mapping) and isinstance(stale, Mapping):
            merged, taken = merge_with_stale(value, stale, result.invalid_fields)
            await self.metrics.record_validation_failure(merged=True)
            logger.warning(
                "cache_validation_merged",
                key=key,
                data_type=data_type_name,
                issues=result.issues,
                merged_fields=taken,
            )
            try:
                await self.store.set(key, serialize(merged), ttl)
                await self.store.expire(stale_key(key), self.config.stale_ttl(ttl))
            except Exception as e:
                await self.metrics.record_error()
                logger.error("cache_set_error", key=key, error=str(e))
                return False
            return True

        if stale is not None:
            restored = unwrap_stale(stale)
            await self.metrics.record_validation_failure(merged=False)
            logger.warning(
                "cache_validation_restored_stale",
                key=key,
                data_type=data_type_name,
                issues=result.issues,
            )
            try:
                await self.store.set(key, serialize(restored), ttl)
                await self.store.expire(stale_key(key), self.config.stale_ttl(ttl))
            except Exception as e:
                await self.metrics.record_error()
                logger.error("cache_set_error", key=key, error=str(e))
                return False
            return True

        await self.metrics.record_validation_failure(merged=False)
        logger.warning(
            "cache_validation_failed_no_stale",
            key=key,
            data_type=data_type_name,
            issues=result.issues,
        )
        return await self.set(key, value, ttl)

    async def delete(self, key: str) -> int:
        """Delete a key and its stale mirror.

        Returns:
            Number of entries removed.
        """
        if not self.enabled:
            return 0
        try:
            deleted = await self.store.delete(key, stale_key(key))
            logger.debug("cache_delete", key=key, deleted=deleted)
            return deleted
        except Exception as e:
            await self.metrics.record_error()
            logger.error("cache_delete_error", key=key, error=str(e))
            return 0

    async def ttl(self, key: str) -> int:
        """Remaining TTL for a key, -2 if missing or unreadable."""
        if not self.enabled:
            return -2
        try:
            return await self.store.ttl(key)
        except Exception as e:
            await self.metrics.record_error()
            logger.error("cache_ttl_error", key=key, error=str(e))
            return -2

    async def cleanup(self) -> int:
        """Purge expired entries from stores without native expiry.

        Returns:
            Number of entries removed (always 0 for Redis).
        """
        if self.store.supports_native_ttl:
            return 0
        removed = await self.store.purge_expired()
        if removed:
            logger.info("cache_cleanup", removed=removed)
        return removed

    def get_metrics(self) -> dict[str, Any]:
        """Get cache metrics.

        Returns:
            Dictionary of cache metrics.
        """
        return self.metrics.to_dict()

    def reset_metrics(self) -> None:
        """Reset cache metrics."""
        self.metrics.reset()


def _cached_at_of(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value.get(CACHED_AT_FIELD)
    return None
