"""
Shared fixtures: an in-memory store, an in-process exchange and a clean
configuration per test.
"""

import itertools
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from perpguard.config.config import Config, RiskConfig
from perpguard.config.strategies import STRATEGY_PROFILES
from perpguard.core.contracts import ContractRegistry
from perpguard.data.store import TradeStore
from perpguard.errors import ExchangeRequestError, InvalidResponseError, TransientNetworkError
from perpguard.exchanges.base import ExchangeClient
from perpguard.models import (
    AccountSnapshot,
    ConditionalOrder,
    Contract,
    ContractType,
    ExchangePosition,
    OrderKind,
    OrderResult,
    PositionHistoryEntry,
    Side,
)
from perpguard.utils.logger import setup_logger


ENV_VARS = (
    "EXCHANGE_NAME", "BYBIT_API_KEY", "BYBIT_API_SECRET", "BYBIT_USE_DEMO",
    "GATE_API_KEY", "GATE_API_SECRET", "GATE_USE_TESTNET", "TAKER_FEE_RATE",
    "DRAWDOWN_WARNING_PERCENT", "DRAWDOWN_NO_NEW_POSITION_PERCENT",
    "DRAWDOWN_FORCE_CLOSE_PERCENT", "MAX_LEVERAGE", "DEFAULT_LEVERAGE", "MAX_POSITIONS",
    "ENABLE_TRAILING_STOP_LOSS", "ENABLE_PARTIAL_TAKE_PROFIT", "RECONCILE_POLICY",
    "TRADING_SYMBOLS", "TRADING_STRATEGY", "TRADING_INTERVAL_MINUTES",
    "INDICATOR_TIMEFRAME", "DEFAULT_ORDER_AMOUNT", "STRATEGY_PROFILES_PATH",
    "DATABASE_PATH", "LOG_LEVEL", "LOG_DIR",
)


class FakeExchangeClient(ExchangeClient):
    """
    In-process exchange.

    Market orders fill at self.prices and update self.positions; conditional
    orders sit in self.conditional until cancelled or fired with trigger().
    """

    name = "fake"
    DEFAULT_SIZE_MULTIPLIERS = {"BTC": 0.0001, "ETH": 0.01}
    FALLBACK_SIZE_MULTIPLIER = 0.01

    def __init__(self, contract_type: ContractType = ContractType.LINEAR,
                 taker_fee_rate: float = 0.0005):
        super().__init__(taker_fee_rate)
        self.CONTRACT_TYPE = contract_type
        self.contracts: Dict[str, object] = {}
        self.contract_calls: List[str] = []
        self.positions: Dict[str, ExchangePosition] = {}
        self.balance = 1000.0
        self.prices: Dict[str, float] = {}
        self.conditional: Dict[str, ConditionalOrder] = {}
        self.orders: List[dict] = []
        self.cancelled: List[str] = []
        self.leverage: Dict[str, int] = {}
        self.history: List[PositionHistoryEntry] = []
        self.reject_conditional = 0
        self._ids = itertools.count(1)

    # ---- helpers for tests ----

    def add_contract(self, symbol: str, multiplier: float = 1.0, step: float = 0.001,
                     leverage_max: int = 100, size_min: float = 0.0) -> Contract:
        contract = Contract(
            symbol=symbol,
            exchange_contract_id=self.normalize_contract(symbol),
            contract_type=self.CONTRACT_TYPE,
            size_multiplier=multiplier,
            leverage_max=leverage_max,
            size_precision=step,
            size_min=size_min,
        )
        self.contracts[contract.exchange_contract_id] = contract
        return contract

    def open_remote(self, symbol: str, side: Side, quantity: float, entry_price: float,
                    leverage: int = 3) -> ExchangePosition:
        position = ExchangePosition(
            symbol=symbol,
            contract_id=self.normalize_contract(symbol),
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            mark_price=entry_price,
            leverage=leverage,
        )
        self.positions[symbol] = position
        return position

    def trigger(self, order_id: str) -> ConditionalOrder:
        """Fire a conditional order: it disappears and closes the position."""
        order = self.conditional.pop(order_id)
        self.positions.pop(order.symbol, None)
        return order

    def active_conditional(self, symbol: str, kind: OrderKind) -> List[ConditionalOrder]:
        return [o for o in self.conditional.values() if o.symbol == symbol and o.kind is kind]

    # ---- ExchangeClient ----

    def normalize_contract(self, symbol: str) -> str:
        return f"{symbol.upper()}USDT"

    def extract_symbol(self, contract_id: str) -> str:
        return contract_id.upper()[:-len("USDT")]

    def get_contract_info(self, contract_id: str) -> Contract:
        self.contract_calls.append(contract_id)
        value = self.contracts.get(contract_id)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise InvalidResponseError(f"unknown contract {contract_id}")
        return value

    def get_positions(self) -> List[ExchangePosition]:
        return list(self.positions.values())

    def get_account(self) -> AccountSnapshot:
        return AccountSnapshot(balance=self.balance)

    def get_ticker_price(self, symbol: str) -> float:
        price = self.prices.get(symbol.upper())
        if price is None:
            raise TransientNetworkError(f"no ticker for {symbol}")
        return price

    def place_order(self, symbol: str, side: str, quantity: float,
                    reduce_only: bool = False) -> OrderResult:
        symbol = symbol.upper()
        price = self.prices.get(symbol)
        self.orders.append(
            {"symbol": symbol, "side": side, "quantity": quantity, "reduce_only": reduce_only}
        )
        current = self.positions.get(symbol)
        if reduce_only:
            if current is not None:
                remaining = round(current.quantity - quantity, 12)
                if remaining <= 0:
                    del self.positions[symbol]
                else:
                    current.quantity = remaining
        elif current is None:
            self.open_remote(symbol, Side.LONG if side == "buy" else Side.SHORT, quantity,
                             price or 0.0, self.leverage.get(symbol, 1))
        else:
            current.quantity += quantity
        return OrderResult(
            success=True,
            order_id=f"m-{next(self._ids)}",
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            reduce_only=reduce_only,
        )

    def place_conditional_order(self, symbol: str, kind: OrderKind, position_side: Side,
                                trigger_price: float, quantity: float) -> OrderResult:
        if self.reject_conditional:
            self.reject_conditional -= 1
            raise ExchangeRequestError("trigger price invalid", code=110092)
        order_id = f"c-{next(self._ids)}"
        self.conditional[order_id] = ConditionalOrder(
            id=order_id,
            symbol=symbol,
            kind=kind,
            trigger_price=trigger_price,
            side=position_side,
            quantity=quantity,
        )
        return OrderResult(success=True, order_id=order_id, symbol=symbol.upper(),
                           trigger_price=trigger_price, reduce_only=True)

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return self.conditional.pop(order_id, None) is not None

    def get_open_conditional_orders(self, symbol: str) -> List[ConditionalOrder]:
        return [o for o in self.conditional.values() if o.symbol == symbol.upper()]

    def set_leverage(self, symbol: str, leverage: int) -> bool:
        self.leverage[symbol.upper()] = leverage
        return True

    def get_position_history(self, symbol: Optional[str] = None,
                             since: Optional[datetime] = None,
                             limit: int = 50) -> List[PositionHistoryEntry]:
        entries = [
            h for h in self.history
            if (symbol is None or h.symbol == symbol.upper())
            and (since is None or h.closed_at >= since)
        ]
        return entries[:limit]

    def get_settlement_history(self, symbol: Optional[str] = None, limit: int = 50):
        return []


@pytest.fixture(autouse=True)
def _logger(tmp_path):
    """Route log files into the test's temp dir."""
    setup_logger(str(tmp_path / "logs"), "DEBUG")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Config singleton rebuilt from a blank environment, away from any .env file."""
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(Config, "_instance", None)
    yield monkeypatch
    Config._instance = None


@pytest.fixture
def store():
    with TradeStore(":memory:") as s:
        yield s


@pytest.fixture
def client():
    fake = FakeExchangeClient()
    fake.add_contract("BTC", multiplier=1.0, step=0.001)
    fake.add_contract("ETH", multiplier=1.0, step=0.01)
    return fake


@pytest.fixture
def registry(client):
    return ContractRegistry(client)


@pytest.fixture
def risk_config():
    return RiskConfig()


@pytest.fixture
def balanced_profile():
    return STRATEGY_PROFILES["balanced"]


@pytest.fixture
def make_client():
    """Factory for extra fake clients (e.g. the inverse variant)."""
    return FakeExchangeClient
