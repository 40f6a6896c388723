"""Bounded exponential backoff for upstream calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from repolens.exceptions import RepolensError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(RepolensError):
    """A retryable operation kept failing until the attempt budget ran out."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and delay schedule.

    The n-th retry waits ``base_delay * multiplier ** (n - 1)`` seconds,
    raised to the server's ``retry_after`` hint and capped at ``max_delay``.
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = self.base_delay * self.multiplier ** (attempt - 1)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Exceptions outside ``retry_on`` propagate on the first occurrence.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt budget and backoff schedule
        description: Human readable name used in logs and the final error
        retry_on: Exception types worth retrying
        sleep: Awaitable used for backoff; cancellation-aware callers pass their own
        on_retry: Callback invoked with (attempt, error, delay) before each wait

    Returns:
        The operation's result

    Raises:
        RetryExhaustedError: Every attempt failed with a retryable error
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise RetryExhaustedError(
                    f"{description} failed after {attempt} attempts: {e}", attempts=attempt
                ) from e

            delay = policy.delay_for(attempt, getattr(e, "retry_after", None))
            logger.warning(
                f"{description} attempt {attempt}/{policy.max_attempts} failed ({e}); "
                f"retrying in {delay:.1f}s"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
