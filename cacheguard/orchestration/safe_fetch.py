"""Get-or-fetch with graceful degradation.

The safe fetch is the one entry point data routes use for upstream data:

1. A cache hit returns immediately.
2. On a miss the fetch runs through the upstream's RequestQueue (rate
   limit, concurrency gate, circuit breaker, retries), each attempt raced
   against a timeout that cancels the call.
3. A successful result is written with the TTL of its data type.
4. Any failure falls back to the stale mirror (flagged ``_stale``), then
   to a zero-value placeholder (flagged ``_unavailable``).

Upstream failures never propagate. Only configuration mistakes do.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from cacheguard.cache.manager import CACHED_AT_FIELD, CacheManager, DataType
from cacheguard.resilience.errors import ConfigurationError, run_with_timeout
from cacheguard.resilience.request_queue import RequestQueue

logger = structlog.get_logger(__name__)

STALE_FIELD = "_stale"
UNAVAILABLE_FIELD = "_unavailable"
ERROR_FIELD = "_error"


class FetchSource(Enum):
    """Where a safe-fetch result came from, best to worst."""

    CACHED = "cached"
    FRESH = "fresh"
    STALE = "stale"
    PLACEHOLDER = "placeholder"

    def is_degraded(self) -> bool:
        """Check if this source represents degraded data."""
        return self in (FetchSource.STALE, FetchSource.PLACEHOLDER)


def placeholder(message: str) -> dict[str, Any]:
    """Zero-value result returned when neither fresh nor stale data exists."""
    return {"data": 0, UNAVAILABLE_FIELD: True, ERROR_FIELD: message}


@dataclass
class FetchOutcome:
    """Safe-fetch result with degradation information.

    Attributes:
        value: The value handed to the caller.
        source: Where the value came from.
        error: Message of the upstream failure, if any.
        cache_age_seconds: Age of stale data, if served.
        timestamp: When the outcome was produced.
    """

    value: Any
    source: FetchSource
    error: str | None = None
    cache_age_seconds: float | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_degraded(self) -> bool:
        """Check if the value is stale or a placeholder."""
        return self.source.is_degraded()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "value": self.value,
            "source": self.source.value,
            "error": self.error,
            "cache_age_seconds": self.cache_age_seconds,
            "timestamp": self.timestamp.isoformat(),
        }


class SafeFetcher:
    """Orchestrates cache, request queues and stale fallback.

    Example:
        fetcher = SafeFetcher(cache, queues={"defillama": queue})

        tvl = await fetcher.safe_fetch(
            CacheKeyBuilder.protocol_tvl("defillama", "aave"),
            lambda: client.get_json("/tvl/aave"),
            upstream="defillama",
            timeout=10.0,
            data_type=DataType.PROTOCOL_TVL,
        )
    """

    def __init__(
        self,
        cache: CacheManager,
        queues: Mapping[str, RequestQueue],
        default_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the fetcher.

        Args:
            cache: Cache manager used for reads, writes and stale fallback.
            queues: Request queue per upstream name.
            default_timeout: Per-attempt timeout when none is given.
            clock: Wall clock used to age stale data.
        """
        self.cache = cache
        self.queues = queues
        self.default_timeout = default_timeout
        self._clock = clock

    def _queue_for(self, upstream: str) -> RequestQueue:
        try:
            return self.queues[upstream]
        except KeyError:
            raise ConfigurationError(
                f"Unknown upstream '{upstream}'",
                details={"known": sorted(self.queues)},
            ) from None

    async def fetch_with_outcome(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        upstream: str,
        timeout: float | None = None,
        data_type: DataType | str = DataType.DEFAULT,
    ) -> FetchOutcome:
        """Fetch ``cache_key`` and report where the value came from.

        Raises:
            ConfigurationError: Empty key, missing fetch function or
                unknown upstream.
        """
        if not cache_key:
            raise ConfigurationError("safe_fetch requires a non-empty cache key")
        if fetch_fn is None or not callable(fetch_fn):
            raise ConfigurationError(f"safe_fetch requires a callable fetch for '{cache_key}'")
        queue = self._queue_for(upstream)
        deadline = self.default_timeout if timeout is None else timeout
        if deadline <= 0:
            raise ConfigurationError(f"timeout must be positive, got {deadline}")

        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.debug("safe_fetch_cache_hit", key=cache_key, upstream=upstream)
            return FetchOutcome(value=cached, source=FetchSource.CACHED)

        logger.debug("safe_fetch_cache_miss", key=cache_key, upstream=upstream)

        try:
            value = await queue.enqueue(
                cache_key,
                lambda: run_with_timeout(fetch_fn(), deadline, upstream),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "safe_fetch_failed",
                key=cache_key,
                upstream=upstream,
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
            return await self._fallback(cache_key, upstream, e)

        await self.cache.set_with_smart_ttl(cache_key, value, data_type)
        logger.info("safe_fetch_success", key=cache_key, upstream=upstream)
        return FetchOutcome(value=value, source=FetchSource.FRESH)

    async def _fallback(self, cache_key: str, upstream: str, error: Exception) -> FetchOutcome:
        message = str(error) or type(error).__name__
        stale = await self.cache.get_stale(cache_key)

        if isinstance(stale, Mapping):
            cached_at = stale.get(CACHED_AT_FIELD)
            age = None
            if isinstance(cached_at, (int, float)):
                age = max(0.0, self._clock() - cached_at)
            logger.warning(
                "safe_fetch_serving_stale",
                key=cache_key,
                upstream=upstream,
                cache_age_seconds=round(age, 1) if age is not None else None,
            )
            return FetchOutcome(
                value={**stale, STALE_FIELD: True},
                source=FetchSource.STALE,
                error=message,
                cache_age_seconds=age,
            )

        logger.error(
            "safe_fetch_placeholder",
            key=cache_key,
            upstream=upstream,
            error=message[:200],
        )
        return FetchOutcome(
            value=placeholder(message),
            source=FetchSource.PLACEHOLDER,
            error=message,
        )

    async def safe_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        upstream: str,
        timeout: float | None = None,
        data_type: DataType | str = DataType.DEFAULT,
    ) -> Any:
        """Fetch ``cache_key``, degrading to stale data or a placeholder.

        Args:
            cache_key: Cache key; also the coalescing key in the queue.
            fetch_fn: Zero-argument coroutine function calling the upstream.
            upstream: Name of the upstream's request queue.
            timeout: Per-attempt timeout in seconds.
            data_type: Data type selecting the TTL.

        Returns:
            Fresh or cached value, stale value with ``_stale=True``, or
            ``{"data": 0, "_unavailable": True, "_error": message}``.
        """
        outcome = await self.fetch_with_outcome(cache_key, fetch_fn, upstream, timeout, data_type)
        return outcome.value
