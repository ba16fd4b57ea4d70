"""
Persistence layer.
"""

from .store import TradeStore, PEAK_BALANCE_KEY

__all__ = [
    "TradeStore",
    "PEAK_BALANCE_KEY",
]
