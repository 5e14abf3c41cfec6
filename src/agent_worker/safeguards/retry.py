"""Retry with fixed or exponential backoff for unreliable remote calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff schedule for a retried operation.

    Logic:
    - Delay before attempt n+1: initial_delay * multiplier^(n-1), capped at max_delay
    - multiplier == 1 gives a fixed delay
    - After max_attempts failures the last error is re-raised
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")

    @classmethod
    def fixed(cls, max_attempts: int, delay: float) -> "RetryPolicy":
        """Policy that waits the same ``delay`` between every attempt."""
        return cls(max_attempts=max_attempts, initial_delay=delay, max_delay=delay, multiplier=1.0)

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate the wait after the given (1-based) failed attempt.

        Formula: initial * multiplier^(attempt-1), capped at max_delay
        """
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


def _always_retry(_error: BaseException) -> bool:
    return True


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] = _always_retry,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds, a terminal error occurs, or attempts run out.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt ceiling and backoff schedule
        is_retryable: Predicate; errors it rejects are re-raised immediately
        on_retry: Callback invoked with (attempt, error, delay) before sleeping
        description: Label used in log messages
        sleep: Awaitable sleep function (injectable for tests)

    Returns:
        The operation's result

    Raises:
        The first non-retryable error, or the last error once attempts are exhausted
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                logger.warning(f"{description} failed after {policy.max_attempts} attempts: {e}")
                raise

            delay = policy.calculate_delay(attempt)
            if on_retry:
                on_retry(attempt, e, delay)
            else:
                logger.warning(
                    f"{description} failed (attempt {attempt}/{policy.max_attempts}): {e}. "
                    f"Retrying in {delay:g}s..."
                )
            await sleep(delay)
