"""Circuit breaker pattern implementation for upstream providers.

This module implements the circuit breaker pattern to stop hammering an
upstream (market-data API, subgraph, RPC node) that is clearly down.

Circuit States:
- CLOSED: Normal operation, calls pass through
- OPEN: Upstream is failing, calls are rejected immediately
- HALF_OPEN: Cooldown elapsed, a single probe call is allowed
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import structlog

from cacheguard.resilience.errors import CircuitOpenError, ConfigurationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Failing, reject calls
    HALF_OPEN = "HALF_OPEN"  # Probing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for a circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout: Cooldown in seconds before a probe is allowed.
        excluded_exceptions: Exceptions that don't count as failures.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        if self.recovery_timeout <= 0:
            raise ConfigurationError("recovery_timeout must be > 0")


@dataclass
class CircuitBreaker:
    """Circuit breaker with async support.

    Wraps exactly one callable per call and never retries; retrying is the
    request queue's job so that every attempt is checked against the circuit.

    Example:
        breaker = CircuitBreaker("coingecko", CircuitBreakerConfig(3, 45.0))

        try:
            price = await breaker.call(lambda: fetch_price("bitcoin"))
        except CircuitOpenError:
            # Serve stale data instead
            pass
    """

    name: str
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: float | None = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def state(self) -> CircuitState:
        """Get current circuit state, reporting HALF_OPEN once a probe is due."""
        if self._state == CircuitState.OPEN and self._should_attempt_recovery():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def is_closed(self) -> bool:
        """Check if circuit is closed (normal operation)."""
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (rejecting calls)."""
        return self._state == CircuitState.OPEN and not self._should_attempt_recovery()

    @property
    def failure_count(self) -> int:
        """Get current failure count."""
        return self._failure_count

    @property
    def last_failure_time(self) -> float | None:
        """Clock reading of the most recent counted failure."""
        return self._last_failure_time

    @property
    def time_until_recovery(self) -> float:
        """Get seconds until a probe is allowed."""
        if self._last_failure_time is None:
            return 0.0
        elapsed = self.clock() - self._last_failure_time
        return max(0.0, self.config.recovery_timeout - elapsed)

    def _should_attempt_recovery(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self.clock() - self._last_failure_time >= self.config.recovery_timeout

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state != new_state:
            self._state = new_state
            logger.info(
                "circuit_state_changed",
                circuit=self.name,
                from_state=old_state.value,
                to_state=new_state.value,
                failure_count=self._failure_count,
            )

    async def allow_request(self) -> None:
        """Admit a call or reject it.

        Raises:
            CircuitOpenError: If the circuit is open, or a half-open probe
                is already in flight.
        """
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                if not self._should_attempt_recovery():
                    logger.debug(
                        "circuit_rejected",
                        circuit=self.name,
                        recovery_in=round(self.time_until_recovery, 2),
                    )
                    raise CircuitOpenError(self.name, self.time_until_recovery)
                self._transition_to(CircuitState.HALF_OPEN)

            if self._probe_in_flight:
                raise CircuitOpenError(self.name, self.time_until_recovery)

            self._probe_in_flight = True
            logger.debug("circuit_half_open_probe", circuit=self.name)

    async def record_success(self) -> None:
        """Record a successful call."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._failure_count = 0
                self._last_failure_time = None
                self._transition_to(CircuitState.CLOSED)
                logger.info("circuit_closed", circuit=self.name)
            elif self._state == CircuitState.CLOSED and self._failure_count > 0:
                self._failure_count = 0
                logger.debug("circuit_failure_count_reset", circuit=self.name)

    async def record_failure(self, exception: Exception) -> None:
        """Record a failed call."""
        if isinstance(exception, self.config.excluded_exceptions):
            logger.debug(
                "circuit_excluded_exception",
                circuit=self.name,
                exception_type=type(exception).__name__,
            )
            await self._abandon_probe()
            return

        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self.clock()

            logger.warning(
                "circuit_failure_recorded",
                circuit=self.name,
                failure_count=self._failure_count,
                threshold=self.config.failure_threshold,
                exception_type=type(exception).__name__,
                exception_msg=str(exception)[:200],
            )

            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._open()

    async def _abandon_probe(self) -> None:
        """Free the half-open probe slot when the probe was cancelled."""
        async with self._lock:
            self._probe_in_flight = False

    def _open(self) -> None:
        self._transition_to(CircuitState.OPEN)
        logger.warning(
            "circuit_opened",
            circuit=self.name,
            failure_count=self._failure_count,
            recovery_timeout=self.config.recovery_timeout,
        )

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Invoke ``fn`` under circuit protection.

        Args:
            fn: Zero-argument coroutine function performing one attempt.

        Returns:
            The result of ``fn``.

        Raises:
            CircuitOpenError: If the call was rejected; ``fn`` is not invoked.
        """
        async with self:
            return await fn()

    async def __aenter__(self) -> "CircuitBreaker":
        await self.allow_request()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        if exc_val is None:
            await self.record_success()
        elif isinstance(exc_val, Exception):
            await self.record_failure(exc_val)
        else:
            await self._abandon_probe()
        return False

    def reset(self) -> None:
        """Force the circuit back to CLOSED (for testing and admin use)."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._probe_in_flight = False

    def get_status(self) -> dict[str, Any]:
        """Get current circuit breaker status for observability."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.config.failure_threshold,
            "time_until_recovery": round(self.time_until_recovery, 3),
            "recovery_timeout": self.config.recovery_timeout,
        }


class CircuitBreakerRegistry:
    """Explicit per-upstream map of circuit breakers.

    Built once at startup and owned by the resilience context, so tests get
    fresh breakers without resetting module state.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Get or create the breaker for an upstream.

        Args:
            name: Upstream name.
            config: Only used when the breaker does not exist yet.
        """
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name=name,
                config=config or CircuitBreakerConfig(),
                clock=self._clock,
            )
        return self._breakers[name]

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __iter__(self) -> Iterator[str]:
        return iter(self._breakers)

    def __len__(self) -> int:
        return len(self._breakers)

    def open_circuits(self) -> list[str]:
        """Names of upstreams whose circuit currently rejects calls."""
        return [name for name, breaker in self._breakers.items() if breaker.is_open]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Status of every registered breaker."""
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}
