"""
Bounded retry with exponential backoff.

Only errors whose `retryable` flag is set are retried. Everything else
propagates on the first failure.

Invariants:
    - At most max_attempts calls are made
    - Delays grow by `multiplier` per attempt, capped at max_backoff
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import DocStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for transient failures.

    Attributes:
        max_attempts: Total attempts including the first one
        initial_backoff: Delay before the second attempt (seconds)
        max_backoff: Upper bound on a single delay (seconds)
        multiplier: Growth factor per attempt
        jitter: Fraction of the delay randomized (0 disables jitter)
    """

    max_attempts: int = 5
    initial_backoff: float = 0.1
    max_backoff: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff must not be negative")

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = min(self.initial_backoff * (self.multiplier ** (attempt - 1)), self.max_backoff)
        if self.jitter and delay:
            delay += random.uniform(-self.jitter, self.jitter) * delay
        return max(delay, 0.0)


NO_RETRY = RetryPolicy(max_attempts=1)


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, DocStoreError) and error.retryable


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    retry_on: Callable[[BaseException], bool] = is_retryable,
) -> T:
    """Run operation, retrying transient failures according to policy.

    Args:
        operation: Zero-argument coroutine factory
        policy: Backoff schedule
        description: Name used in log records
        retry_on: Predicate selecting retryable errors

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or the first
        non-retryable error
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except DocStoreError as e:
            if attempt >= policy.max_attempts or not retry_on(e):
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                f"Retrying {description} after transient failure",
                extra={
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "delay_s": round(delay, 3),
                    "error_code": e.code,
                },
            )
            attempt += 1
            await asyncio.sleep(delay)
