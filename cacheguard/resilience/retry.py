"""Retry policy and retry combinator with exponential backoff.

Backoff is exponential with full jitter: the delay before retry ``n``
(zero-based) is drawn uniformly from ``[0, min(base_delay * 2**n,
max_delay)]``. Spreading retries this way keeps many keys from retrying in
lockstep when an upstream recovers.
"""

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from cacheguard.resilience.errors import (
    CircuitOpenError,
    ConfigurationError,
    QueueClearedError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def full_jitter(delay: float) -> float:
    """Uniform random delay in ``[0, delay]``."""
    return random.uniform(0.0, delay)


def no_jitter(delay: float) -> float:
    """Use the computed delay unchanged."""
    return delay


# Rejections that must never be retried
NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (CircuitOpenError, QueueClearedError)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for one upstream.

    Attributes:
        attempts: Retries after the first attempt (0 disables retrying).
        base_delay: Backoff base in seconds.
        max_delay: Cap on the computed delay, applied before jitter.
        jitter: Maps the computed delay to the actual sleep.
        non_retryable: Exception types propagated immediately.
    """

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: Callable[[float], float] = full_jitter
    non_retryable: tuple[type[Exception], ...] = field(
        default_factory=lambda: NON_RETRYABLE_ERRORS
    )

    def __post_init__(self) -> None:
        if self.attempts < 0:
            raise ConfigurationError("retry attempts must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first one."""
        return self.attempts + 1

    def computed_delay(self, attempt: int) -> float:
        """Backoff before jitter for zero-based retry ``attempt``."""
        return min(self.base_delay * (2**attempt), self.max_delay)

    def delay_for(self, attempt: int) -> float:
        """Actual sleep before zero-based retry ``attempt``."""
        return self.jitter(self.computed_delay(attempt))

    def is_retryable(self, error: BaseException) -> bool:
        """Whether ``error`` may be retried under this policy."""
        return isinstance(error, Exception) and not isinstance(error, self.non_retryable)


async def with_retry(
    policy: RetryPolicy,
    task: Callable[[], Awaitable[T]],
    *,
    name: str = "task",
    sleep: Callable[[float], Awaitable[None]] | None = None,
    on_retry: Callable[[BaseException, int, float], None] | None = None,
) -> T:
    """Run ``task`` until it succeeds or the policy is exhausted.

    Args:
        policy: Retry policy to apply.
        task: Zero-argument coroutine function, called once per attempt.
        name: Label for log events.
        sleep: Replacement for ``asyncio.sleep`` (for testing).
        on_retry: Called with (error, next_attempt_number, delay) before
            each backoff sleep.

    Returns:
        The result of the first successful attempt.

    Raises:
        The last error raised by ``task``, unwrapped. Non-retryable errors
        and cancellation propagate immediately.
    """

    def _wait(retry_state: RetryCallState) -> float:
        return policy.delay_for(retry_state.attempt_number - 1)

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "retry_scheduled",
            task=name,
            attempt=retry_state.attempt_number,
            max_attempts=policy.max_attempts,
            delay_s=round(delay, 3),
            error_type=type(error).__name__ if error else None,
            error=str(error)[:200] if error else None,
        )
        if on_retry is not None and error is not None:
            on_retry(error, retry_state.attempt_number + 1, delay)

    retrying_kwargs = {}
    if sleep is not None:
        retrying_kwargs["sleep"] = sleep

    async for attempt_context in AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait,
        retry=(
            retry_if_exception_type(Exception)
            & retry_if_not_exception_type(policy.non_retryable)
        ),
        before_sleep=_before_sleep,
        reraise=True,
        **retrying_kwargs,
    ):
        with attempt_context:
            return await task()

    # This should not be reached due to reraise=True
    raise RuntimeError("Retry loop exited unexpectedly")
