"""
Utility modules.
"""

from .logger import get_logger, setup_logger, TradingLogger
from .rate_limiter import RateLimiter, create_bybit_limiters
from .helpers import (
    safe_float,
    safe_int,
    safe_str,
    is_positive_finite,
    floor_to_step,
    utc_now,
    from_millis,
)

__all__ = [
    # Logger
    "get_logger",
    "setup_logger",
    "TradingLogger",
    # Rate limiting
    "RateLimiter",
    "create_bybit_limiters",
    # Type conversion helpers
    "safe_float",
    "safe_int",
    "safe_str",
    "is_positive_finite",
    "floor_to_step",
    "utc_now",
    "from_millis",
]
