"""
Exchange clients.
"""

from .base import ExchangeClient
from .bybit_linear import BybitLinearClient
from .gate_inverse import GateInverseClient
from .factory import create_exchange_client
from .retry import with_retry

__all__ = [
    "ExchangeClient",
    "BybitLinearClient",
    "GateInverseClient",
    "create_exchange_client",
    "with_retry",
]
