"""
Exchange client factory.

The client variant is chosen once per process from EXCHANGE_NAME; everything
downstream works against the ExchangeClient interface.
"""

from ..config.config import Config, ExchangeName
from ..errors import FatalConfigError
from .base import ExchangeClient
from .bybit_linear import BybitLinearClient
from .gate_inverse import GateInverseClient


def create_exchange_client(config: Config) -> ExchangeClient:
    """
    Build the client for the configured exchange.

    Raises:
        FatalConfigError: unknown exchange name or missing credentials
    """
    exchange = config.exchange
    api_key, api_secret = exchange.get_credentials()

    if exchange.name not in ExchangeName.ALL:
        raise FatalConfigError(
            f"Unsupported EXCHANGE_NAME '{exchange.name}'. Supported: {', '.join(ExchangeName.ALL)}"
        )
    if not api_key or not api_secret:
        prefix = exchange.name.upper()
        raise FatalConfigError(f"{prefix}_API_KEY and {prefix}_API_SECRET must be set")

    if exchange.name == ExchangeName.GATE:
        return GateInverseClient(
            api_key=api_key,
            api_secret=api_secret,
            use_testnet=exchange.gate_use_testnet,
            taker_fee_rate=exchange.taker_fee_rate,
        )

    return BybitLinearClient(
        api_key=api_key,
        api_secret=api_secret,
        use_demo=exchange.bybit_use_demo,
        recv_window=exchange.bybit_recv_window,
        taker_fee_rate=exchange.taker_fee_rate,
    )
