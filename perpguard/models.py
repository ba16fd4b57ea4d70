"""
Domain types shared by the exchange clients, the risk engine and the store.

Exchange-reported values are normalized into these dataclasses at the client
boundary; nothing above the clients sees raw exchange payloads.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from .utils.helpers import utc_now


# ==================== Enums ====================

class ContractType(str, Enum):
    """How a contract settles PnL."""
    INVERSE = "inverse"  # contract units times a quanto multiplier
    LINEAR = "linear"    # quantity in base coin, settled in quote


class Side(str, Enum):
    """Position direction."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG

    @property
    def entry_order_side(self) -> str:
        """Order side that opens this position ("buy"/"sell")."""
        return "buy" if self is Side.LONG else "sell"

    @property
    def exit_order_side(self) -> str:
        """Order side that reduces this position."""
        return "sell" if self is Side.LONG else "buy"


class OrderKind(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class OrderStatus(str, Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"


class TradeType(str, Enum):
    OPEN = "open"
    CLOSE = "close"


class CloseReason(str, Enum):
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "take_profit_triggered"
    MANUAL = "manual"
    FORCED = "forced"


# ==================== Contracts ====================

@dataclass(frozen=True)
class Contract:
    """
    Per-symbol contract metadata.

    Immutable once resolved for a session; the registry replaces the whole
    object on explicit invalidation.
    """
    symbol: str
    exchange_contract_id: str
    contract_type: ContractType
    size_multiplier: float
    leverage_min: int = 1
    leverage_max: int = 100
    size_precision: float = 1.0   # quantity step
    size_min: float = 0.0
    size_max: float = 0.0         # 0 = no limit reported
    is_fallback: bool = False


# ==================== Positions & Orders ====================

@dataclass
class TrailingState:
    """Best price seen in the position's favor and whether trailing is live."""
    highest_favorable_price: Optional[float] = None
    activated: bool = False


@dataclass
class Position:
    """Locally tracked open position."""
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    leverage: int
    opened_at: datetime = field(default_factory=utc_now)
    stop_loss_order_ref: Optional[str] = None
    take_profit_order_ref: Optional[str] = None
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    initial_risk: Optional[float] = None
    trailing_state: TrailingState = field(default_factory=TrailingState)
    fired_stages: Set[int] = field(default_factory=set)
    mark_price: Optional[float] = None

    def __post_init__(self):
        self.symbol = self.symbol.upper()
        self.side = Side(self.side)
        if self.quantity <= 0:
            raise ValueError(f"{self.symbol}: position quantity must be positive, got {self.quantity}")

    def r_multiple(self, price: float) -> Optional[float]:
        """Favorable excursion of `price` in units of the initial risk."""
        if not self.initial_risk:
            return None
        return self.side.sign * (price - self.entry_price) / self.initial_risk

    def price_at_r(self, r: float) -> Optional[float]:
        if not self.initial_risk:
            return None
        return self.entry_price + self.side.sign * r * self.initial_risk


@dataclass
class ExchangePosition:
    """Position as reported by the exchange."""
    symbol: str
    contract_id: str
    side: Side
    quantity: float
    entry_price: float
    mark_price: float = 0.0
    leverage: int = 1
    unrealized_pnl: float = 0.0
    liquidation_price: Optional[float] = None


@dataclass
class ConditionalOrder:
    """Server-side protective order (stop-loss or take-profit)."""
    id: str
    symbol: str
    kind: OrderKind
    trigger_price: float
    side: Side
    quantity: float
    status: OrderStatus = OrderStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.symbol = self.symbol.upper()
        self.kind = OrderKind(self.kind)
        self.side = Side(self.side)
        self.status = OrderStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status is OrderStatus.ACTIVE


@dataclass
class OrderResult:
    """Normalized result of a placed order."""
    success: bool
    order_id: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[str] = None
    quantity: Optional[float] = None
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    reduce_only: bool = False
    error: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


# ==================== Account & History ====================

@dataclass
class AccountSnapshot:
    """Account equity at one point in time."""
    balance: float
    peak_balance: float = 0.0
    unrealized_pnl: float = 0.0
    available: Optional[float] = None

    @property
    def drawdown_percent(self) -> float:
        if self.peak_balance <= 0:
            return 0.0
        return max(0.0, (self.peak_balance - self.balance) / self.peak_balance * 100)


@dataclass
class Trade:
    """Append-only fill record."""
    type: TradeType
    symbol: str
    side: Side
    price: float
    quantity: float
    pnl: Optional[float] = None
    fee: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    order_id: Optional[str] = None
    status: str = "filled"
    leverage: int = 1
    id: Optional[int] = None

    def __post_init__(self):
        self.symbol = self.symbol.upper()
        self.type = TradeType(self.type)
        self.side = Side(self.side)


@dataclass
class CloseEvent:
    """Why and at what price a position was closed."""
    symbol: str
    side: Side
    close_reason: CloseReason
    close_price: float
    entry_price: float
    quantity: float
    pnl: float
    trigger_price: Optional[float] = None
    pnl_percent: Optional[float] = None
    trigger_order_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.symbol = self.symbol.upper()
        self.side = Side(self.side)
        self.close_reason = CloseReason(self.close_reason)


@dataclass
class PartialTakeProfitRecord:
    """One partial take-profit stage attempt: completed, failed or skipped."""
    symbol: str
    position_opened_at: datetime
    stage: int
    r_multiple: float
    trigger_price: float
    close_percent: float
    closed_quantity: float
    remaining_quantity: float
    pnl: float = 0.0
    new_stop_loss_price: Optional[float] = None
    status: str = "completed"
    notes: str = ""
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class PositionHistoryEntry:
    """Closed position reported by the exchange."""
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    exit_price: float
    pnl: float
    closed_at: datetime


@dataclass
class SettlementEntry:
    """Exchange settlement or funding record."""
    symbol: str
    amount: float
    settled_at: datetime
    kind: str = "settlement"
    raw: Dict[str, Any] = field(default_factory=dict)
