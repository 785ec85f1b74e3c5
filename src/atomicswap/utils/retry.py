"""Retry helper for long-latency ledger calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay before retry number ``attempt`` (1-based)."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    should_retry: Callable[[Exception], bool],
    description: str = "operation",
    sleep: Optional[Sleep] = None,
) -> T:
    """Run ``operation`` until it succeeds or attempts are exhausted.

    Only exceptions for which ``should_retry`` returns True are retried;
    anything else propagates immediately. The last retryable error is
    re-raised once attempts run out.
    """
    sleep = sleep or asyncio.sleep
    attempt = 1

    while True:
        try:
            return await operation()
        except Exception as e:
            if not should_retry(e):
                raise
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e} - retrying in {delay:.2f}s"
            )
            await sleep(delay)
            attempt += 1
