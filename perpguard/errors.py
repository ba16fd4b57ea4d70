"""
Error taxonomy.

Library exceptions (pybit, requests, ccxt) are translated into these at the
exchange-client boundary, so callers above the client only handle the types
declared here.
"""

from typing import Optional


class TradingError(Exception):
    """Base class for all errors raised by this package."""


class TransientNetworkError(TradingError):
    """Network or HTTP failure that may succeed on retry."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        self.original = original
        super().__init__(message)


class InvalidResponseError(TradingError):
    """Exchange replied, but the payload is malformed or missing fields."""

    def __init__(self, message: str, response: Optional[object] = None):
        self.response = response
        super().__init__(message)


class ExchangeRequestError(TradingError):
    """Exchange rejected the request (bad parameters, insufficient margin, auth)."""

    def __init__(self, message: str, code: Optional[int] = None,
                 original: Optional[Exception] = None):
        self.code = code
        self.original = original
        super().__init__(f"[{code}] {message}" if code is not None else message)


class InvalidContractError(TradingError):
    """Contract metadata is unusable or belongs to the wrong contract type."""


class InconsistentStateError(TradingError):
    """Local store and exchange disagree about a position or order."""

    def __init__(self, symbol: str, detail: str):
        self.symbol = symbol
        self.detail = detail
        super().__init__(f"{symbol}: {detail}")


class InsufficientStopDistanceError(TradingError):
    """Proposed stop-loss is closer to entry than the strategy allows."""

    def __init__(self, symbol: str, distance_percent: float, min_percent: float):
        self.symbol = symbol
        self.distance_percent = distance_percent
        self.min_percent = min_percent
        super().__init__(
            f"{symbol}: stop distance {distance_percent:.3f}% below minimum {min_percent:.3f}%"
        )


class FatalConfigError(TradingError):
    """Configuration is invalid; the process must not start trading."""
