"""FIFO concurrency gate bounding in-flight calls per upstream."""

import asyncio
from collections import deque
from typing import Any

import structlog

from cacheguard.resilience.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class ConcurrencyGate:
    """Counting gate with strict FIFO hand-off.

    A released slot is handed directly to the oldest waiter, so a later
    arrival can never overtake an earlier one. ``0 <= in_flight <= capacity``
    holds at all times.

    Example:
        gate = ConcurrencyGate(capacity=3)

        async with gate:
            await call_upstream()
    """

    def __init__(self, capacity: int, name: str = "default") -> None:
        """Initialize the gate.

        Args:
            capacity: Maximum simultaneously held slots.
            name: Upstream name, used for logging.
        """
        if capacity < 1:
            raise ConfigurationError("concurrency must be >= 1")
        self.capacity = capacity
        self.name = name
        self._in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def in_flight(self) -> int:
        """Number of slots currently held."""
        return self._in_flight

    @property
    def waiting(self) -> int:
        """Number of callers queued for a slot."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Wait for a free slot and take it."""
        if self._in_flight < self.capacity and not self._waiters:
            self._in_flight += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(
            "concurrency_gate_wait",
            upstream=self.name,
            in_flight=self._in_flight,
            waiting=len(self._waiters),
        )
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation: pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Free a slot, handing it to the oldest live waiter if any."""
        if self._in_flight <= 0:
            raise RuntimeError(f"ConcurrencyGate '{self.name}' released too many times")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_flight -= 1

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        self.release()
        return False

    def get_status(self) -> dict[str, Any]:
        """Get current gate status for observability."""
        return {
            "capacity": self.capacity,
            "in_flight": self._in_flight,
            "waiting": self.waiting,
        }
