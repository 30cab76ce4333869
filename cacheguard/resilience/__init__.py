"""Resilience patterns for upstream providers.

This module contains:
- Error taxonomy shared by the whole layer
- Rate limiting on call starts
- FIFO concurrency gate
- Circuit breaker per upstream
- Retry policy with jittered exponential backoff
- RequestQueue composing all of the above
"""

from cacheguard.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from cacheguard.resilience.concurrency import ConcurrencyGate
from cacheguard.resilience.errors import (
    CacheGuardError,
    CircuitOpenError,
    ConfigurationError,
    QueueClearedError,
    UpstreamError,
    UpstreamTimeoutError,
    run_with_timeout,
)
from cacheguard.resilience.rate_limiter import RateLimiter
from cacheguard.resilience.request_queue import QueueEntry, QueueStatus, RequestQueue
from cacheguard.resilience.retry import (
    NON_RETRYABLE_ERRORS,
    RetryPolicy,
    full_jitter,
    no_jitter,
    with_retry,
)

__all__ = [
    # Errors
    "CacheGuardError",
    "CircuitOpenError",
    "ConfigurationError",
    "QueueClearedError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "run_with_timeout",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Gates
    "ConcurrencyGate",
    "RateLimiter",
    # Retry
    "NON_RETRYABLE_ERRORS",
    "RetryPolicy",
    "full_jitter",
    "no_jitter",
    "with_retry",
    # Queue
    "QueueEntry",
    "QueueStatus",
    "RequestQueue",
]
