# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Retry Utilities - Exponential backoff that honours server Retry-After hints
"""
import time
import logging
from functools import wraps
from typing import Callable, TypeVar, Any

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delay(attempt: int, error: Exception, base_delay: float, max_delay: float,
                  exponential_base: float) -> float:
    """Seconds to wait before retry number ``attempt + 1``"""
    retry_after = getattr(error, 'retry_after', None)
    if retry_after:
        return min(float(retry_after), max_delay)
    return min(base_delay * (exponential_base ** attempt), max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    retry_on: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator that retries transient failures with exponential backoff

    Args:
        max_retries: Retries after the first attempt (0 disables retrying)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between retries
        retry_on: Exception types worth retrying; anything else propagates at once
        sleep: Wait function, injectable for tests

    An exception with a ``retry_after`` attribute (e.g. a throttled Graph
    response) sets the delay instead of the backoff curve.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} failed after {attempt + 1} attempts: {e}")
                        raise

                    delay = backoff_delay(attempt, e, base_delay, max_delay, exponential_base)
                    logger.warning(f"{func.__name__} attempt {attempt + 1}/{max_retries + 1} failed "
                                   f"({type(e).__name__}: {e}), retrying in {delay:.1f}s")
                    sleep(delay)

        return wrapper
    return decorator
