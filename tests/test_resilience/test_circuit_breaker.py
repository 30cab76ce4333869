"""Tests for circuit breaker implementation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from cacheguard.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from cacheguard.resilience.errors import CircuitOpenError, ConfigurationError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def fail() -> None:
    raise ValueError("upstream down")


async def succeed() -> str:
    return "ok"


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ValueError):
            await breaker.call(fail)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        name="coingecko",
        config=CircuitBreakerConfig(failure_threshold=3, recovery_timeout=45.0),
        clock=clock,
    )


class TestCircuitState:
    """Tests for CircuitState enum."""

    def test_state_values(self) -> None:
        """Test states render as upper-case names on the status surface."""
        assert CircuitState.CLOSED.value == "CLOSED"
        assert CircuitState.OPEN.value == "OPEN"
        assert CircuitState.HALF_OPEN.value == "HALF_OPEN"


class TestCircuitBreakerConfig:
    """Tests for CircuitBreakerConfig."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.recovery_timeout == 60.0
        assert config.excluded_exceptions == ()

    def test_invalid_threshold(self) -> None:
        """Test a zero threshold is rejected."""
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(failure_threshold=0)

    def test_invalid_timeout(self) -> None:
        """Test a non-positive cooldown is rejected."""
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(recovery_timeout=0)


class TestCircuitBreakerClosed:
    """Tests for the CLOSED state."""

    @pytest.mark.asyncio
    async def test_starts_closed(self, breaker: CircuitBreaker) -> None:
        """Test a new breaker is closed with no failures."""
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_closed
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_passes_result_through(self, breaker: CircuitBreaker) -> None:
        """Test successful calls return the wrapped result."""
        assert await breaker.call(succeed) == "ok"

    @pytest.mark.asyncio
    async def test_failures_below_threshold_stay_closed(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        """Test failures are counted without opening the circuit."""
        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2
        assert breaker.last_failure_time == clock.now

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker: CircuitBreaker) -> None:
        """Test a success in CLOSED resets consecutive failures."""
        await trip(breaker, 2)
        await breaker.call(succeed)
        assert breaker.failure_count == 0

        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_excluded_exceptions_not_counted(self, clock: FakeClock) -> None:
        """Test excluded exceptions propagate without counting."""
        breaker = CircuitBreaker(
            name="excluded",
            config=CircuitBreakerConfig(failure_threshold=1, excluded_exceptions=(KeyError,)),
            clock=clock,
        )

        async def missing() -> None:
            raise KeyError("not found")

        with pytest.raises(KeyError):
            await breaker.call(missing)
        assert breaker.failure_count == 0
        assert breaker.is_closed


class TestCircuitBreakerOpen:
    """Tests for opening and rejecting."""

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker: CircuitBreaker) -> None:
        """Test the circuit opens after threshold consecutive failures."""
        await trip(breaker, 3)
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_rejects_without_invoking(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """Test an open circuit rejects before calling the task."""
        await trip(breaker, 3)
        clock.advance(10.0)
        task = AsyncMock(return_value="never")

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(task)

        task.assert_not_called()
        assert exc_info.value.name == "coingecko"
        assert exc_info.value.recovery_time == pytest.approx(35.0)

    @pytest.mark.asyncio
    async def test_rejection_does_not_count_as_failure(
        self, breaker: CircuitBreaker
    ) -> None:
        """Test rejected calls leave the failure count alone."""
        await trip(breaker, 3)
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)
        assert breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_time_until_recovery(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """Test remaining cooldown follows the clock."""
        await trip(breaker, 3)
        clock.advance(40.0)
        assert breaker.time_until_recovery == pytest.approx(5.0)


class TestCircuitBreakerHalfOpen:
    """Tests for recovery probing."""

    @pytest.mark.asyncio
    async def test_reports_half_open_after_cooldown(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        """Test the state reads HALF_OPEN once the cooldown has elapsed."""
        await trip(breaker, 3)
        clock.advance(45.0)
        assert breaker.state == CircuitState.HALF_OPEN
        assert not breaker.is_open

    @pytest.mark.asyncio
    async def test_probe_success_closes(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """Test a successful probe closes the circuit and resets failures."""
        await trip(breaker, 3)
        clock.advance(45.0)

        assert await breaker.call(succeed) == "ok"

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_probe_failure_reopens_and_restarts_cooldown(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        """Test a failed probe reopens the circuit with a fresh cooldown."""
        await trip(breaker, 3)
        clock.advance(45.0)

        with pytest.raises(ValueError):
            await breaker.call(fail)
        assert breaker.state == CircuitState.OPEN

        clock.advance(44.0)
        task = AsyncMock()
        with pytest.raises(CircuitOpenError):
            await breaker.call(task)
        task.assert_not_called()

        clock.advance(1.0)
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_single_probe_in_flight(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """Test a second call during a probe is rejected."""
        await trip(breaker, 3)
        clock.advance(45.0)
        release = asyncio.Event()

        async def slow_probe() -> str:
            await release.wait()
            return "recovered"

        probe = asyncio.create_task(breaker.call(slow_probe))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

        release.set()
        assert await probe == "recovered"
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_slot(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        """Test a cancelled probe lets the next call probe."""
        await trip(breaker, 3)
        clock.advance(45.0)

        probe = asyncio.create_task(breaker.call(lambda: asyncio.sleep(10)))
        await asyncio.sleep(0)
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert await breaker.call(succeed) == "ok"
        assert breaker.is_closed


class TestCircuitBreakerStatus:
    """Tests for reset and status."""

    @pytest.mark.asyncio
    async def test_reset(self, breaker: CircuitBreaker) -> None:
        """Test reset forces CLOSED."""
        await trip(breaker, 3)
        breaker.reset()
        assert breaker.is_closed
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_get_status(self, breaker: CircuitBreaker) -> None:
        """Test status snapshot fields."""
        await trip(breaker, 1)
        status = breaker.get_status()
        assert status["name"] == "coingecko"
        assert status["state"] == "CLOSED"
        assert status["failure_count"] == 1
        assert status["failure_threshold"] == 3


class TestCircuitBreakerRegistry:
    """Tests for the per-upstream registry."""

    def test_get_creates_once(self, clock: FakeClock) -> None:
        """Test the same breaker is returned for a name."""
        registry = CircuitBreakerRegistry(clock=clock)
        first = registry.get("defillama", CircuitBreakerConfig(failure_threshold=3))
        second = registry.get("defillama")
        assert first is second
        assert first.config.failure_threshold == 3
        assert "defillama" in registry
        assert len(registry) == 1
        assert list(registry) == ["defillama"]

    @pytest.mark.asyncio
    async def test_open_circuits_and_snapshot(self, clock: FakeClock) -> None:
        """Test open circuits are listed and snapshotted."""
        registry = CircuitBreakerRegistry(clock=clock)
        registry.get("curve", CircuitBreakerConfig(failure_threshold=1))
        registry.get("fluid")

        with pytest.raises(ValueError):
            await registry.get("curve").call(fail)

        assert registry.open_circuits() == ["curve"]
        snapshot = registry.snapshot()
        assert snapshot["curve"]["state"] == "OPEN"
        assert snapshot["fluid"]["state"] == "CLOSED"
