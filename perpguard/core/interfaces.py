"""
Protocol definitions for the trading cycle's collaborators.

The decision-making call and the market-data feed live outside this
package. The cycle only depends on these shapes:
- MarketDataFeed: latest price and indicators for a symbol
- DecisionFunction: maps a market snapshot to an action
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..models import Position, Side


# =============================================================================
# Data Types
# =============================================================================


class Action(str, Enum):
    """What the decision function wants done with a symbol."""
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE = "close"
    HOLD = "hold"

    @property
    def side(self) -> Side | None:
        if self is Action.OPEN_LONG:
            return Side.LONG
        if self is Action.OPEN_SHORT:
            return Side.SHORT
        return None


@dataclass(slots=True)
class Decision:
    """
    Output of the decision function.

    size is the margin to commit in quote currency; 0 means the configured
    default order amount.
    """

    action: Action
    size: float = 0.0
    leverage: int = 0
    reason: str = ""

    def __post_init__(self):
        self.action = Action(self.action)


@dataclass(slots=True)
class Indicators:
    """Latest indicator values for one symbol and timeframe."""

    price: float
    atr: float
    ema: float | None = None
    rsi: float | None = None
    macd: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MarketSnapshot:
    """Everything the decision function sees for one symbol."""

    symbol: str
    timeframe: str
    indicators: Indicators
    position: Position | None = None
    can_open: bool = True


# =============================================================================
# Protocol Definitions
# =============================================================================


@runtime_checkable
class MarketDataFeed(Protocol):
    """Read-only source of prices and indicators."""

    def get_indicators(self, symbol: str, timeframe: str) -> Indicators:
        """
        Latest indicators for a symbol.

        Raises:
            TradingError: data unavailable (the symbol is skipped this cycle)
        """
        ...


@runtime_checkable
class DecisionFunction(Protocol):
    """Strategy collaborator that turns a snapshot into an action."""

    def __call__(self, snapshot: MarketSnapshot) -> Decision:
        ...
