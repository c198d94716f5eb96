"""Utility decorators for showsync_rec."""

import time
import logging
from functools import wraps
from typing import TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator that retries a function with exponential backoff on failure.

    Args:
        max_retries: Total attempts before the last exception is re-raised
        initial_delay: Seconds to wait before the second attempt
        backoff_factor: Multiplier applied to the delay after each failure
        exceptions: Exception types that trigger a retry
        sleep: Sleep function (injectable for tests)

    Example:
        @retry_with_backoff(max_retries=3, initial_delay=2.0)
        def post_summary():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")

            raise last_exception

        return wrapper
    return decorator
