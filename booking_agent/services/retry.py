"""Reusable async retry with exponential backoff.

The booking client is the only consumer.  Validation-class failures are
never retried: ``retry_on`` decides, per exception, whether another
attempt is worthwhile.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
INITIAL_BACKOFF_SECONDS = 1.0


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: Callable[[BaseException], bool],
    max_attempts: int = MAX_ATTEMPTS,
    initial_backoff: float = INITIAL_BACKOFF_SECONDS,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds or a non-retryable error occurs.

    Backoff doubles after each failed attempt (1s, 2s, 4s, ...).  Errors for
    which ``retry_on`` returns ``False`` propagate immediately.  When all
    attempts fail, ``RetryExhaustedError`` wraps the last error.
    """
    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if not retry_on(exc):
                raise
            last_error = exc
            if attempt == max_attempts:
                break
            backoff = initial_backoff * (2 ** (attempt - 1))
            logger.warning(
                "%s attempt %d/%d failed (%s). Retrying in %.1fs",
                label, attempt, max_attempts, type(exc).__name__, backoff,
            )
            await sleep(backoff)

    raise RetryExhaustedError(label, max_attempts, last_error)
