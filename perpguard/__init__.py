"""
PerpGuard - risk-managed perpetual futures trading.

Exchange-agnostic contracts, positions and protective orders over a linear
(Bybit USDT perpetuals) and an inverse (Gate.io contract-unit) client.
"""

__version__ = "0.3.0"

from .config import get_config
from .core import Application, TradingCycle
from .errors import TradingError

__all__ = [
    "__version__",
    "get_config",
    "Application",
    "TradingCycle",
    "TradingError",
]
