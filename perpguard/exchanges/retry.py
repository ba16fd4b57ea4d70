"""
Bounded retry for exchange reads.

Only TransientNetworkError is retried. Malformed responses and exchange-side
rejections surface immediately: repeating them cannot change the outcome.
"""

import time
from functools import wraps

from ..errors import TransientNetworkError
from ..utils.logger import get_logger


MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 0.3
MAX_DELAY_SECONDS = 5.0


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY_SECONDS,
                  max_delay: float = MAX_DELAY_SECONDS) -> float:
    """Delay before the retry that follows `attempt` (1-based)."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def with_retry(max_attempts: int = MAX_ATTEMPTS, base_delay: float = BASE_DELAY_SECONDS,
               max_delay: float = MAX_DELAY_SECONDS):
    """
    Decorator retrying a call on TransientNetworkError with exponential backoff.

    Args:
        max_attempts: Total attempts including the first call
        base_delay: Delay after the first failure, doubled on each retry
        max_delay: Upper bound for a single delay

    Usage:
        @with_retry()
        def get_positions(self): ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except TransientNetworkError as e:
                    if attempt >= max_attempts:
                        get_logger().error(
                            f"{func.__name__} failed after {attempt} attempts: {e}"
                        )
                        raise
                    delay = backoff_delay(attempt, base_delay, max_delay)
                    get_logger().warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
        return wrapper
    return decorator
