"""
Exchange-agnostic client interface.

Two variants implement it: a linear (USDT-margined) client and an inverse
(contract-unit, quanto multiplier) client. The factory picks one per process.
Callers never branch on which exchange is active, only on
get_contract_type(), and the PnL/fee/quantity arithmetic for both contract
types lives here so the variants differ only in transport.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from ..errors import InvalidContractError
from ..models import (
    AccountSnapshot,
    ConditionalOrder,
    Contract,
    ContractType,
    ExchangePosition,
    OrderKind,
    OrderResult,
    PositionHistoryEntry,
    SettlementEntry,
    Side,
)
from ..utils.helpers import floor_to_step


class ExchangeClient(ABC):
    """
    Abstract exchange client.

    Subclasses set CONTRACT_TYPE, DEFAULT_SIZE_MULTIPLIERS and
    FALLBACK_SIZE_MULTIPLIER, and implement the transport methods.
    """

    name: str = "abstract"
    CONTRACT_TYPE: ContractType = ContractType.LINEAR

    # Static per-asset defaults used when contract metadata cannot be fetched
    DEFAULT_SIZE_MULTIPLIERS: Dict[str, float] = {}
    FALLBACK_SIZE_MULTIPLIER: float = 1.0
    FALLBACK_SIZE_STEP: float = 1.0
    FALLBACK_LEVERAGE_MAX: int = 20

    # False when conditional orders close the whole position whatever its size
    PROTECTIVE_ORDERS_TRACK_SIZE: bool = True

    def __init__(self, taker_fee_rate: float = 0.0005):
        self.taker_fee_rate = taker_fee_rate

    # ==================== Contract Identity ====================

    def get_contract_type(self) -> ContractType:
        return self.CONTRACT_TYPE

    @abstractmethod
    def normalize_contract(self, symbol: str) -> str:
        """Base symbol ("BTC") to the exchange's contract id."""

    @abstractmethod
    def extract_symbol(self, contract_id: str) -> str:
        """Exchange contract id back to the base symbol."""

    def default_size_multiplier(self, symbol: str) -> float:
        return self.DEFAULT_SIZE_MULTIPLIERS.get(symbol.upper(), self.FALLBACK_SIZE_MULTIPLIER)

    def fallback_contract(self, symbol: str) -> Contract:
        """Contract built from static defaults, flagged as a fallback."""
        return Contract(
            symbol=symbol.upper(),
            exchange_contract_id=self.normalize_contract(symbol),
            contract_type=self.CONTRACT_TYPE,
            size_multiplier=self.default_size_multiplier(symbol),
            leverage_min=1,
            leverage_max=self.FALLBACK_LEVERAGE_MAX,
            size_precision=self.FALLBACK_SIZE_STEP,
            is_fallback=True,
        )

    # ==================== Transport (per exchange) ====================

    @abstractmethod
    def get_contract_info(self, contract_id: str) -> Contract:
        """Fetch contract metadata. Raises InvalidResponseError on malformed payloads."""

    @abstractmethod
    def get_positions(self) -> List[ExchangePosition]:
        """Open positions with non-zero quantity."""

    @abstractmethod
    def get_account(self) -> AccountSnapshot:
        """Current account equity. peak_balance is left at 0 for the guard to fill."""

    @abstractmethod
    def get_ticker_price(self, symbol: str) -> float:
        """Last traded price for a symbol."""

    @abstractmethod
    def place_order(self, symbol: str, side: str, quantity: float,
                    reduce_only: bool = False) -> OrderResult:
        """Market order. `side` is "buy" or "sell"."""

    @abstractmethod
    def place_conditional_order(self, symbol: str, kind: OrderKind, position_side: Side,
                                trigger_price: float, quantity: float) -> OrderResult:
        """Reduce-only market order triggered server-side at trigger_price."""

    @abstractmethod
    def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel a conditional order. Returns False if it no longer exists."""

    @abstractmethod
    def get_open_conditional_orders(self, symbol: str) -> List[ConditionalOrder]:
        """Untriggered conditional orders for a symbol."""

    @abstractmethod
    def set_leverage(self, symbol: str, leverage: int) -> bool:
        """Set leverage for a symbol."""

    @abstractmethod
    def get_position_history(self, symbol: Optional[str] = None,
                             since: Optional[datetime] = None,
                             limit: int = 50) -> List[PositionHistoryEntry]:
        """Closed positions reported by the exchange."""

    @abstractmethod
    def get_settlement_history(self, symbol: Optional[str] = None,
                               limit: int = 50) -> List[SettlementEntry]:
        """Settlement/funding records reported by the exchange."""

    # ==================== Contract Arithmetic ====================

    def _check_contract(self, contract: Contract) -> None:
        if contract.contract_type != self.CONTRACT_TYPE:
            raise InvalidContractError(
                f"{contract.symbol}: {contract.contract_type.value} contract passed to "
                f"{self.CONTRACT_TYPE.value} client"
            )

    def calculate_pnl(self, entry_price: float, exit_price: float, quantity: float,
                      side: Side, contract: Contract) -> float:
        """
        Gross PnL in quote currency.

        Linear:  sign * q * mult * (exit - entry)
        Inverse: sign * q * mult * entry * (1/entry - 1/exit), the base-asset PnL
                 valued at entry, which reduces to
                 sign * q * mult * (exit - entry) * entry / exit

        Args:
            entry_price: Average entry price
            exit_price: Exit price
            quantity: Quantity in exchange units (contracts or base coin)
            side: Position side
            contract: Contract metadata; must match this client's contract type

        Raises:
            InvalidContractError: contract type differs from the client's
        """
        self._check_contract(contract)
        side = Side(side)
        if entry_price <= 0 or exit_price <= 0:
            raise InvalidContractError(
                f"{contract.symbol}: prices must be positive (entry={entry_price}, exit={exit_price})"
            )
        notional_units = quantity * contract.size_multiplier
        price_move = exit_price - entry_price
        if contract.contract_type is ContractType.INVERSE:
            return side.sign * notional_units * price_move * entry_price / exit_price
        return side.sign * notional_units * price_move

    def estimate_fee(self, price: float, quantity: float, contract: Contract,
                     fee_rate: Optional[float] = None) -> float:
        """
        Taker fee for one leg.

        Inverse: multiplier * price * quantity * rate
        Linear:  price * quantity * rate
        """
        self._check_contract(contract)
        rate = self.taker_fee_rate if fee_rate is None else fee_rate
        if contract.contract_type is ContractType.INVERSE:
            return contract.size_multiplier * price * quantity * rate
        return price * quantity * rate

    def calculate_quantity(self, amount: float, price: float, leverage: int,
                           contract: Contract) -> float:
        """
        Order quantity for `amount` of margin at `leverage`.

        quantity = amount * leverage / (mult * price), floored to the step and
        clamped to the contract's maximum. Returns 0 when below the minimum.
        """
        self._check_contract(contract)
        if price <= 0 or amount <= 0 or leverage <= 0:
            return 0.0
        raw = amount * leverage / (contract.size_multiplier * price)
        quantity = floor_to_step(raw, contract.size_precision)
        if contract.size_max and quantity > contract.size_max:
            quantity = floor_to_step(contract.size_max, contract.size_precision)
        if quantity <= 0 or (contract.size_min and quantity < contract.size_min):
            return 0.0
        return quantity

    def clamp_leverage(self, leverage: int, contract: Contract, ceiling: int) -> int:
        """Clamp to [contract.leverage_min, min(contract.leverage_max, ceiling)]."""
        upper = max(contract.leverage_min, min(contract.leverage_max, ceiling))
        return max(contract.leverage_min, min(int(leverage), upper))
