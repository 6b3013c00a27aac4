"""
Retry with exponential backoff for conflicting concurrent merges.

A request that loses a serialization race is re-run from the match step;
the database has already rolled its transaction back by then.
"""

import asyncio
import functools
from typing import Awaitable, Callable, Optional, Tuple, Type

from .exceptions import RetryExhaustedError

# serialization_failure, deadlock_detected
CONFLICT_SQLSTATES = {"40001", "40P01"}

CONFLICT_MESSAGES = (
    "could not serialize access",
    "deadlock detected",
    "database is locked",
)


def is_conflict_error(exception: BaseException) -> bool:
    """
    Determine if a database error means another transaction won a race
    and the whole unit of work should be retried.

    Args:
        exception: SQLAlchemy/driver exception to check

    Returns:
        True for serialization failures and deadlocks
    """
    orig = getattr(exception, "orig", None) or exception
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code in CONFLICT_SQLSTATES:
            return True

    error_str = str(orig).lower()
    return any(message in error_str for message in CONFLICT_MESSAGES)


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
):
    """
    Decorator for retrying coroutine functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)

    Raises:
        RetryExhaustedError: once every attempt has failed, chained to the last error
    """
    def decorator(func: Callable[..., Awaitable]) -> Callable[..., Awaitable]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        raise RetryExhaustedError(
                            f"Failed after {max_retries + 1} attempts: {e}",
                            attempts=max_retries + 1,
                        ) from e

                    current_delay = min(delay, max_delay)
                    if on_retry:
                        on_retry(attempt + 1, e, current_delay)

                    await asyncio.sleep(current_delay)
                    delay *= exponential_base

        return wrapper
    return decorator
