"""Bounded retry with exponential backoff.

A small combinator used by both the interactive test path and the
outbound delivery path. The two paths differ only in which failures
they consider retryable, captured here as ``RetryPolicy`` presets.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .exceptions import ApplicationError, DeliveryNetworkError, DeliveryTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BackoffFn = Callable[[int], float]
SleepFn = Callable[[float], Awaitable[None]]


def exponential_backoff(retry_number: int) -> float:
    """Seconds to wait before retry ``retry_number`` (1-based): 2, 4, 8, ..."""
    return float(2 ** retry_number)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 0,
    backoff: BackoffFn = exponential_backoff,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: SleepFn = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Run ``operation`` with up to ``attempts`` retries.

    The operation is awaited at most ``attempts + 1`` times. Before retry
    k (1-based) the coordinator waits ``backoff(k)`` seconds. Exceptions
    not listed in ``retry_on`` propagate immediately; once retries are
    exhausted the last exception propagates.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        attempts: Number of retries after the first attempt.
        backoff: Delay function taking the retry number.
        retry_on: Exception types eligible for retry.
        sleep: Awaitable sleep (injectable for tests).
        on_retry: Optional hook called as (retry_number, error, delay).

    Returns:
        The first successful result of ``operation``.
    """
    if attempts < 0:
        raise ValueError("attempts must be >= 0")

    retry_number = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if retry_number >= attempts:
                raise
            retry_number += 1
            delay = backoff(retry_number)
            if on_retry:
                on_retry(retry_number, e, delay)
            logger.warning(
                f"Attempt {retry_number}/{attempts + 1} failed ({type(e).__name__}), "
                f"retrying in {delay}s"
            )
            await sleep(delay)


# Interactive tests treat a non-2xx answer as final
TEST_RETRY_ON: Tuple[Type[BaseException], ...] = (DeliveryNetworkError, DeliveryTimeoutError)

# Outbound deliveries also retry non-2xx answers
DELIVERY_RETRY_ON: Tuple[Type[BaseException], ...] = TEST_RETRY_ON + (ApplicationError,)


@dataclass(frozen=True)
class RetryPolicy:
    """Named retry configuration."""

    attempts: int = 0
    retry_on: Tuple[Type[BaseException], ...] = TEST_RETRY_ON
    backoff: BackoffFn = exponential_backoff

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        sleep: SleepFn = asyncio.sleep,
    ) -> T:
        return await retry_async(
            operation,
            attempts=self.attempts,
            backoff=self.backoff,
            retry_on=self.retry_on,
            sleep=sleep,
        )

    @classmethod
    def for_tests(cls, attempts: int = 0) -> "RetryPolicy":
        return cls(attempts=attempts, retry_on=TEST_RETRY_ON)

    @classmethod
    def for_deliveries(cls, attempts: int = 3) -> "RetryPolicy":
        return cls(attempts=attempts, retry_on=DELIVERY_RETRY_ON)
