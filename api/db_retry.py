"""
Retry helpers for transient database errors.

The publish worker's terminal write lands long after the request that queued
the video has returned, so losing it to a momentary lock would leave the slot
in `queued` for good. Writes on that path go through execute_with_retry.

Retryable conditions:
- SQLite: "database is locked", SQLITE_BUSY / SQLITE_LOCKED
- PostgreSQL: deadlocks (40P01), serialization failures (40001), lock timeouts,
  dropped connections
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0

_RETRYABLE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "lock timeout",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation still fails after all retries."""


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check whether an exception (or its cause chain) is a transient database error."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in _RETRYABLE_PATTERNS):
        return True

    if getattr(exc, "sqlstate", None) in ("40P01", "40001"):
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Run an async database callable, retrying transient failures with
    exponential backoff and ±25% jitter.

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            last_exception = e

            if attempt < max_retries:
                delay = min(base_delay * (2**attempt), max_delay)
                delay = max(0.01, delay + delay * 0.25 * (2 * random.random() - 1))
                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(
        f"Database operation failed after {max_retries + 1} attempts: {last_exception}"
    ) from last_exception
