"""Error taxonomy for the resilience layer.

Exception Hierarchy:
    CacheGuardError (base)
    ├── UpstreamError - The unit of work itself failed
    │   └── UpstreamTimeoutError - The timeout race was lost
    ├── CircuitOpenError - Rejected without attempting the call
    ├── QueueClearedError - Pending entry abandoned by RequestQueue.clear()
    └── ConfigurationError - Programmer/configuration mistakes

Upstream errors and timeouts are retried by the request queue. Circuit-open
and queue-cleared rejections never are. Only ConfigurationError is expected
to reach a human-facing caller of the safe-fetch orchestrator.
"""

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

T = TypeVar("T")


class CacheGuardError(Exception):
    """Base exception for all cacheguard errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
    """

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class UpstreamError(CacheGuardError):
    """An upstream call failed (network error, non-2xx, malformed payload).

    Attributes:
        upstream: Name of the upstream provider.
        status: HTTP status code when one was received.
    """

    def __init__(
        self,
        message: str,
        *,
        upstream: str = "unknown",
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.upstream = upstream
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update({"upstream": self.upstream, "status": self.status})
        return base


class UpstreamTimeoutError(UpstreamError, TimeoutError):
    """The upstream call did not finish before its deadline."""

    def __init__(self, upstream: str, timeout_seconds: float) -> None:
        super().__init__(
            f"External API timeout after {timeout_seconds}s",
            upstream=upstream,
        )
        self.timeout_seconds = timeout_seconds


class CircuitOpenError(CacheGuardError):
    """Raised when a circuit is open and the call is rejected."""

    def __init__(self, name: str, recovery_time: float) -> None:
        super().__init__(
            f"Circuit '{name}' is open. Recovery in {recovery_time:.1f}s",
            details={"recovery_time": recovery_time},
        )
        self.name = name
        self.recovery_time = recovery_time


class QueueClearedError(CacheGuardError):
    """Raised to callers whose pending request was dropped by clear()."""

    def __init__(self, queue_name: str, key: str) -> None:
        super().__init__(
            f"Request '{key}' was cleared from queue '{queue_name}'",
            details={"queue": queue_name, "key": key},
        )
        self.queue_name = queue_name
        self.key = key


class ConfigurationError(CacheGuardError, ValueError):
    """Invalid key, missing task, unknown upstream or bad settings."""


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    upstream: str = "unknown",
) -> T:
    """Await with a deadline, cancelling the underlying call on expiry.

    Args:
        awaitable: The upstream call.
        timeout_seconds: Maximum time to wait.
        upstream: Upstream name for the error.

    Returns:
        The awaited result.

    Raises:
        UpstreamTimeoutError: If the deadline passes first.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except UpstreamTimeoutError:
        raise
    except asyncio.TimeoutError as e:
        raise UpstreamTimeoutError(upstream, timeout_seconds) from e
