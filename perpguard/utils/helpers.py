"""
Common utility functions used across the package.

These helpers handle edge cases from exchange API responses.
"""

import math
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Any


def safe_float(value: Any, default: float = 0.0) -> float:
    """
    Safely convert value to float, handling edge cases from API responses.

    Exchanges return:
    - Empty strings "" instead of 0 or null
    - String numbers "123.45" instead of 123.45
    - None for optional fields

    Args:
        value: Value to convert (str, int, float, None, etc.)
        default: Default value if conversion fails

    Returns:
        Float value or default

    Examples:
        >>> safe_float("123.45")
        123.45
        >>> safe_float("")
        0.0
        >>> safe_float("invalid", default=-1.0)
        -1.0
    """
    if value is None or value == "" or value == " ":
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


def safe_int(value: Any, default: int = 0) -> int:
    """
    Safely convert value to int, handling edge cases from API responses.

    Args:
        value: Value to convert
        default: Default value if conversion fails

    Returns:
        Int value or default
    """
    if value is None or value == "" or value == " ":
        return default
    try:
        return int(float(value))  # Handle "123.0" -> 123
    except (ValueError, TypeError):
        return default


def safe_str(value: Any, default: str = "") -> str:
    """Safely convert value to string."""
    if value is None:
        return default
    return str(value)


def is_positive_finite(value: Any) -> bool:
    """True when value is a real number, finite and strictly positive."""
    try:
        number = float(value)
    except (ValueError, TypeError):
        return False
    return math.isfinite(number) and number > 0


def floor_to_step(value: float, step: float) -> float:
    """
    Round a quantity down to the exchange's step size.

    Decimal arithmetic avoids float artifacts like 0.30000000000000004
    turning into one step less than intended.
    """
    if step <= 0:
        return value
    step_dec = Decimal(str(step))
    units = (Decimal(str(value)) / step_dec).to_integral_value(rounding=ROUND_DOWN)
    return float(units * step_dec)


def utc_now() -> datetime:
    """Naive UTC timestamp, the format the store persists."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_millis(value: Any) -> datetime:
    """Convert an exchange millisecond timestamp into a naive UTC datetime."""
    millis = safe_int(value)
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).replace(tzinfo=None)
