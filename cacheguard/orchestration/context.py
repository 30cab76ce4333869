"""Startup-built container for the resilience layer.

``ResilienceContext`` owns the cache manager, one RequestQueue per
upstream, the circuit breaker registry those queues share and the safe
fetcher. It is built once at startup and passed explicitly to whatever
needs it (routes, refresh jobs, tests).
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from cacheguard.cache.manager import CacheManager
from cacheguard.cache.store import CacheStore, RedisCacheStore
from cacheguard.cache.validation import DataValidator, Validator
from cacheguard.config import UPSTREAM_PRESETS, Settings, UpstreamConfig
from cacheguard.orchestration.safe_fetch import SafeFetcher
from cacheguard.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from cacheguard.resilience.errors import ConfigurationError
from cacheguard.resilience.request_queue import RequestQueue

logger = structlog.get_logger(__name__)

STORE_PING_TIMEOUT = 1.0


@dataclass
class ResilienceContext:
    """Cache, queues and breakers for one process.

    Attributes:
        settings: Settings the context was built from.
        store: Backing cache store (admin operations go here directly).
        cache: Cache manager over ``store``.
        breakers: Circuit breaker per upstream.
        queues: Request queue per upstream.
        fetcher: Safe fetcher over ``cache`` and ``queues``.
    """

    settings: Settings
    store: CacheStore
    cache: CacheManager
    breakers: CircuitBreakerRegistry
    queues: dict[str, RequestQueue] = field(default_factory=dict)
    fetcher: SafeFetcher | None = None

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        store: CacheStore | None = None,
        *,
        upstreams: Iterable[str] | None = None,
        validator: Validator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ResilienceContext":
        """Build a context with a queue for every upstream.

        Args:
            settings: Settings; loaded from the environment if omitted.
            store: Cache store; Redis at ``REDIS_URL`` if omitted.
            upstreams: Upstream names; every preset if omitted.
            validator: Cache validator; ``DataValidator()`` if omitted.
            clock: Monotonic clock shared by the circuit breakers.
        """
        settings = settings or Settings.from_env()
        store = store or RedisCacheStore.from_url(settings.REDIS_URL)
        cache = CacheManager(
            store,
            validator=validator or DataValidator(),
            enabled=settings.CACHE_ENABLED,
        )
        context = cls(
            settings=settings,
            store=store,
            cache=cache,
            breakers=CircuitBreakerRegistry(clock=clock),
        )
        names = list(UPSTREAM_PRESETS) if upstreams is None else list(upstreams)
        for name in names:
            context.add_upstream(name)
        context.fetcher = SafeFetcher(
            cache,
            context.queues,
            default_timeout=settings.FETCH_TIMEOUT_SECONDS,
        )
        logger.info(
            "resilience_context_created",
            upstreams=names,
            cache_enabled=settings.CACHE_ENABLED,
            store=type(store).__name__,
        )
        return context

    def add_upstream(self, name: str, config: UpstreamConfig | None = None) -> RequestQueue:
        """Register an upstream and return its queue.

        Raises:
            ConfigurationError: If the upstream already exists.
        """
        if not name:
            raise ConfigurationError("upstream name must not be empty")
        if name in self.queues:
            raise ConfigurationError(f"Upstream '{name}' is already registered")
        config = config or self.settings.upstream_config(name)
        breaker = self.breakers.get(
            name,
            CircuitBreakerConfig(
                failure_threshold=config.circuit_threshold,
                recovery_timeout=config.circuit_timeout,
            ),
        )
        queue = RequestQueue(name, config, breaker=breaker)
        self.queues[name] = queue
        return queue

    def queue(self, name: str) -> RequestQueue:
        """Queue of a registered upstream.

        Raises:
            ConfigurationError: If the upstream is unknown.
        """
        try:
            return self.queues[name]
        except KeyError:
            raise ConfigurationError(f"Unknown upstream '{name}'") from None

    async def safe_fetch(self, *args: Any, **kwargs: Any) -> Any:
        """Shortcut for ``self.fetcher.safe_fetch``."""
        assert self.fetcher is not None
        return await self.fetcher.safe_fetch(*args, **kwargs)

    async def _check_store(self) -> dict[str, Any]:
        start = time.monotonic()
        try:
            reachable = await asyncio.wait_for(self.store.ping(), timeout=STORE_PING_TIMEOUT)
            error = None if reachable else "Ping failed"
        except TimeoutError:
            reachable, error = False, f"Timeout after {STORE_PING_TIMEOUT}s"
        except Exception as e:
            reachable, error = False, str(e)
        result: dict[str, Any] = {
            "reachable": bool(reachable),
            "latency_ms": round((time.monotonic() - start) * 1000, 2),
            "enabled": self.cache.enabled,
            "metrics": self.cache.get_metrics(),
        }
        if error:
            result["error"] = error
        return result

    async def health(self) -> dict[str, Any]:
        """Health snapshot of the cache store and every upstream.

        Status is ``"degraded"`` when any circuit is open or the store is
        unreachable, ``"healthy"`` otherwise.
        """
        cache = await self._check_store()
        upstreams = {
            name: queue.get_status().model_dump() for name, queue in self.queues.items()
        }
        open_circuits = [
            name
            for name, status in upstreams.items()
            if status["circuit_state"] == CircuitState.OPEN.value
        ]
        healthy = cache["reachable"] and not open_circuits
        status = "healthy" if healthy else "degraded"

        logger.info(
            "health_check_completed",
            status=status,
            open_circuits=open_circuits,
            cache_reachable=cache["reachable"],
        )

        return {
            "status": status,
            "service": self.settings.SERVICE_NAME,
            "timestamp": datetime.now(UTC).isoformat(),
            "cache": cache,
            "upstreams": upstreams,
            "open_circuits": open_circuits,
        }

    async def close(self) -> None:
        """Drop pending requests and close the store."""
        dropped = sum(queue.clear() for queue in self.queues.values())
        await self.store.close()
        logger.info("resilience_context_closed", dropped_requests=dropped)
