"""Retry utilities with exponential backoff."""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


async def retry_with_backoff[T](
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int | None = 5,
    max_elapsed: float | None = None,
    base_delay: float = 0.5,
    max_delay: float = 60.0,
    multiplier: float = 1.5,
    jitter: float = 0.5,
) -> T:
    """Retry an async function with exponential backoff.

    The whole call to ``func`` is the unit of retry, so it should start from
    scratch on every attempt.

    Args:
        func: Async function to retry
        max_attempts: Maximum number of attempts, or None for no limit
        max_elapsed: Total time budget in seconds, measured from the first
            attempt; no retry is scheduled that would sleep past it
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries
        multiplier: Growth factor applied to the delay after each attempt
        jitter: Random jitter factor (0-1)

    Returns:
        Result of the function

    Raises:
        The last exception if all attempts fail
    """
    if max_attempts is None and max_elapsed is None:
        raise ValueError("retry_with_backoff needs max_attempts or max_elapsed")

    start = time.monotonic()
    attempt = 0

    while True:
        try:
            return await func()
        except Exception as e:
            attempt += 1

            if max_attempts is not None and attempt >= max_attempts:
                raise

            delay = min(base_delay * (multiplier ** (attempt - 1)), max_delay)
            if jitter > 0:
                delay = delay * (1 + random.uniform(-jitter, jitter))

            if max_elapsed is not None and time.monotonic() - start + delay > max_elapsed:
                raise

            logger.debug("retrying", attempt=attempt, delay=round(delay, 3), error=str(e))
            await asyncio.sleep(delay)
