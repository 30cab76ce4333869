"""Per-upstream request queue with rate limiting, concurrency and retries.

Each upstream provider gets its own RequestQueue. One ``enqueue`` call:

1. Joins an identical in-flight request when coalescing is enabled.
2. Waits for a concurrency slot, then for the rate limiter, so the rate
   limiter records the moment the task actually starts.
3. Runs the task through the upstream's circuit breaker.
4. Retries failures other than circuit rejections with jittered backoff,
   going back through the gate and the rate limiter each time.
5. Releases the concurrency slot on every exit path.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel

from cacheguard.config import UpstreamConfig
from cacheguard.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from cacheguard.resilience.concurrency import ConcurrencyGate
from cacheguard.resilience.errors import ConfigurationError, QueueClearedError
from cacheguard.resilience.rate_limiter import RateLimiter
from cacheguard.resilience.retry import RetryPolicy, full_jitter, with_retry

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class QueueStatus(BaseModel):
    """Monitoring snapshot of one request queue."""

    name: str
    in_flight: int
    queued_count: int
    circuit_state: str
    failure_count: int


@dataclass(eq=False)
class QueueEntry(Generic[T]):
    """A request owned by the queue until it settles.

    Attributes:
        key: Request key, usually the cache key.
        task: Zero-argument coroutine function performing one attempt.
        attempt: Zero-based attempt currently running or scheduled.
        enqueued_at: Monotonic enqueue time.
        future: Settles with the shared result.
        waiters: Callers currently awaiting ``future``.
    """

    key: str
    task: Callable[[], Awaitable[T]]
    attempt: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)
    future: "asyncio.Future[T] | None" = None
    runner: "asyncio.Task[None] | None" = None
    waiters: int = 0


class RequestQueue:
    """Rate-limited, concurrency-bounded, circuit-protected task runner.

    Example:
        queue = RequestQueue("ethereum", UPSTREAM_PRESETS["ethereum"])

        balance = await queue.enqueue(
            "ethereum:token-balance:abc123",
            lambda: rpc.call("eth_call", params),
        )
        print(queue.get_status())
    """

    def __init__(
        self,
        name: str,
        config: UpstreamConfig | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        jitter: Callable[[float], float] = full_jitter,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        window_seconds: float = 1.0,
    ) -> None:
        """Initialize the queue.

        Args:
            name: Upstream name.
            config: Resilience knobs. Uses defaults if not provided.
            breaker: Circuit breaker to share; built from config if omitted.
            retry_policy: Overrides the policy derived from config.
            jitter: Jitter function for the derived retry policy.
            sleep: Backoff sleep replacement (for testing).
            window_seconds: Rate limiter window length.
        """
        self.name = name
        self.config = config or UpstreamConfig()
        self.rate_limiter = RateLimiter(
            self.config.requests_per_second,
            window_seconds=window_seconds,
            name=name,
        )
        self.gate = ConcurrencyGate(self.config.concurrency, name=name)
        self.breaker = breaker or CircuitBreaker(
            name=name,
            config=CircuitBreakerConfig(
                failure_threshold=self.config.circuit_threshold,
                recovery_timeout=self.config.circuit_timeout,
            ),
        )
        self.retry_policy = retry_policy or RetryPolicy(
            attempts=self.config.retry_attempts,
            base_delay=self.config.base_delay,
            max_delay=self.config.max_delay,
            jitter=jitter,
        )
        self._sleep = sleep
        self._entries: set[QueueEntry[Any]] = set()
        self._in_flight_by_key: dict[str, QueueEntry[Any]] = {}
        self._logger = logger.bind(component="request_queue", upstream=name)

    @property
    def in_flight(self) -> int:
        """Number of tasks currently holding a concurrency slot."""
        return self.gate.in_flight

    @property
    def queued_count(self) -> int:
        """Entries owned by the queue that are not executing right now."""
        return max(0, len(self._entries) - self.gate.in_flight)

    async def enqueue(
        self,
        key: str,
        task: Callable[[], Awaitable[T]],
        *,
        coalesce: bool | None = None,
    ) -> T:
        """Run ``task`` under this upstream's resilience policy.

        Args:
            key: Request key. Identical keys may share one execution.
            task: Zero-argument coroutine function, called once per attempt.
            coalesce: Overrides the configured coalescing behaviour.

        Returns:
            The task result.

        Raises:
            CircuitOpenError: The circuit rejected the request.
            QueueClearedError: clear() dropped the request.
            Exception: The task's own final error, unwrapped.
        """
        if not key:
            raise ConfigurationError("enqueue requires a non-empty key")
        if task is None or not callable(task):
            raise ConfigurationError(f"enqueue requires a callable task for '{key}'")

        use_coalescing = self.config.coalesce if coalesce is None else coalesce
        entry = self._in_flight_by_key.get(key) if use_coalescing else None

        if entry is not None:
            self._logger.debug("request_coalesced", key=key, waiters=entry.waiters + 1)
        else:
            entry = self._start(key, task, register=use_coalescing)

        return await self._wait_for(entry)

    def _start(
        self,
        key: str,
        task: Callable[[], Awaitable[T]],
        *,
        register: bool,
    ) -> QueueEntry[T]:
        loop = asyncio.get_running_loop()
        entry: QueueEntry[T] = QueueEntry(key=key, task=task)
        entry.future = loop.create_future()
        self._entries.add(entry)
        if register:
            self._in_flight_by_key[key] = entry
        entry.runner = loop.create_task(self._drive(entry))
        return entry

    async def _wait_for(self, entry: QueueEntry[T]) -> T:
        assert entry.future is not None
        entry.waiters += 1
        try:
            return await asyncio.shield(entry.future)
        except asyncio.CancelledError:
            if not entry.future.done() and entry.waiters == 1:
                # Last interested caller is gone: cancel the upstream call too.
                self._abandon(entry)
            raise
        finally:
            entry.waiters -= 1

    async def _drive(self, entry: QueueEntry[T]) -> None:
        assert entry.future is not None

        async def attempt() -> T:
            async with self.gate:
                # Rate slot stamped only once a gate slot is held
                await self.rate_limiter.acquire()
                return await self.breaker.call(entry.task)

        def on_retry(error: BaseException, next_attempt: int, delay: float) -> None:
            entry.attempt = next_attempt - 1

        try:
            result = await with_retry(
                self.retry_policy,
                attempt,
                name=f"{self.name}:{entry.key}",
                sleep=self._sleep,
                on_retry=on_retry,
            )
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            if not entry.future.done():
                entry.future.set_exception(e)
            self._logger.warning(
                "request_failed",
                key=entry.key,
                attempts=entry.attempt + 1,
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
        else:
            if not entry.future.done():
                entry.future.set_result(result)
            self._logger.debug(
                "request_succeeded",
                key=entry.key,
                attempts=entry.attempt + 1,
                latency_ms=round((time.monotonic() - entry.enqueued_at) * 1000, 2),
            )
        finally:
            self._settle(entry)

    def _settle(self, entry: QueueEntry[Any]) -> None:
        self._entries.discard(entry)
        if self._in_flight_by_key.get(entry.key) is entry:
            del self._in_flight_by_key[entry.key]

    def _abandon(self, entry: QueueEntry[Any]) -> None:
        self._settle(entry)
        if entry.runner is not None and not entry.runner.done():
            entry.runner.cancel()

    def clear(self) -> int:
        """Drop every pending request.

        Running attempts are cancelled, which releases their concurrency
        slots; callers awaiting them receive QueueClearedError.

        Returns:
            Number of requests dropped.
        """
        entries = list(self._entries)
        for entry in entries:
            if entry.future is not None and not entry.future.done():
                entry.future.set_exception(QueueClearedError(self.name, entry.key))
                if entry.waiters == 0:
                    # Nobody will retrieve it
                    entry.future.exception()
            self._abandon(entry)

        if entries:
            self._logger.info("queue_cleared", dropped=len(entries))
        return len(entries)

    def get_status(self) -> QueueStatus:
        """Snapshot for health and monitoring endpoints."""
        return QueueStatus(
            name=self.name,
            in_flight=self.in_flight,
            queued_count=self.queued_count,
            circuit_state=self.breaker.state.value,
            failure_count=self.breaker.failure_count,
        )

    def health_check(self) -> dict[str, Any]:
        """Queue health: CLOSED circuit with fewer than three failures."""
        status = self.get_status()
        return {
            "healthy": (
                status.circuit_state == CircuitState.CLOSED.value
                and status.failure_count < 3
            ),
            "status": status.model_dump(),
        }
