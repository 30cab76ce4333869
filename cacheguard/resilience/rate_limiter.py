"""Per-upstream rate limiting on call starts.

The limiter keeps the start times of the calls admitted during the last
window. A caller is admitted when fewer than ``requests_per_second`` starts
fall inside the trailing window; otherwise it sleeps until the oldest start
ages out. Unused capacity is never banked, so there is no burst credit
across windows.

Waiters are admitted in arrival order because the wait happens while holding
an ``asyncio.Lock``, which wakes its waiters FIFO.
"""

import asyncio
import time
from collections import deque
from typing import Any

import structlog

from cacheguard.resilience.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Limits call starts to ``requests_per_second`` per rolling window.

    Example:
        limiter = RateLimiter(requests_per_second=5)

        await limiter.acquire()  # may sleep, never raises
        result = await call_upstream()
    """

    def __init__(
        self,
        requests_per_second: int,
        window_seconds: float = 1.0,
        name: str = "default",
    ) -> None:
        """Initialize rate limiter.

        Args:
            requests_per_second: Maximum call starts per window.
            window_seconds: Window length in seconds.
            name: Upstream name, used for logging.
        """
        if requests_per_second < 1:
            raise ConfigurationError("requests_per_second must be >= 1")
        if window_seconds <= 0:
            raise ConfigurationError("window_seconds must be > 0")

        self.requests_per_second = requests_per_second
        self.window_seconds = window_seconds
        self.name = name
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()
        self._waiting = 0

    def _evict(self, now: float) -> None:
        """Drop starts that fell out of the trailing window."""
        horizon = now - self.window_seconds
        while self._starts and self._starts[0] <= horizon:
            self._starts.popleft()

    @property
    def window_started_at(self) -> float | None:
        """Monotonic timestamp of the oldest start still inside the window."""
        self._evict(time.monotonic())
        return self._starts[0] if self._starts else None

    @property
    def calls_started_in_window(self) -> int:
        """Number of starts inside the trailing window."""
        self._evict(time.monotonic())
        return len(self._starts)

    @property
    def waiting(self) -> int:
        """Number of callers currently suspended in acquire()."""
        return self._waiting

    async def acquire(self) -> None:
        """Suspend until a call start is allowed, then record it."""
        self._waiting += 1
        try:
            async with self._lock:
                while True:
                    now = time.monotonic()
                    self._evict(now)
                    if len(self._starts) < self.requests_per_second:
                        self._starts.append(now)
                        return

                    delay = self._starts[0] + self.window_seconds - now
                    logger.debug(
                        "rate_limit_wait",
                        upstream=self.name,
                        delay_s=round(delay, 3),
                        limit=self.requests_per_second,
                    )
                    await asyncio.sleep(max(delay, 0.0))
        finally:
            self._waiting -= 1

    def get_status(self) -> dict[str, Any]:
        """Get current limiter status for observability."""
        return {
            "requests_per_second": self.requests_per_second,
            "calls_started_in_window": self.calls_started_in_window,
            "waiting": self._waiting,
        }

    def reset(self) -> None:
        """Forget recorded starts (for testing)."""
        self._starts.clear()
