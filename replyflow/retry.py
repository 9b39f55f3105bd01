"""Bounded retry with a per-attempt timeout."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger("replyflow.retry")


def is_retryable_status(status_code: Optional[int]) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code <= 599


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int,
    timeout: float,
    should_retry: Callable[[BaseException], bool],
    backoff_seconds: float = 0.5,
    max_backoff_seconds: float = 5.0,
) -> T:
    """Run ``func`` up to ``retries + 1`` times.

    Each attempt is cut off after ``timeout`` seconds (raising
    ``asyncio.TimeoutError``). Exceptions for which ``should_retry`` returns
    False propagate immediately; the last exception propagates once the
    attempts are used up.
    """
    attempts = max(0, retries) + 1
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=timeout)
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = min(backoff_seconds * (2 ** (attempt - 1)), max_backoff_seconds)
            logger.warning("retrying after %s (attempt %s/%s, sleeping %.2fs)", type(exc).__name__, attempt, attempts, delay)
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover
