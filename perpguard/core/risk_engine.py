"""
Risk engine - stop-loss, take-profit and trailing-stop arithmetic.

Pure rules, no exchange access. The engine decides levels and quantities;
the ProtectiveOrderManager turns them into exchange conditional orders.

Levels are expressed in R: one R is the distance between entry and the
initial stop. Stops only ever move in the position's favor.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import math
from typing import Dict, List, Optional

from ..config.config import RiskConfig, get_config
from ..config.strategies import StrategyProfile, TakeProfitStage
from ..errors import InsufficientStopDistanceError
from ..models import Contract, Position, Side
from ..utils.helpers import floor_to_step, utc_now
from ..utils.logger import get_logger


# Trailing adjustments pause for this long after a partial take-profit
PARTIAL_COOLDOWN = timedelta(minutes=5)


@dataclass
class StopLossPlan:
    """Initial stop for a new position."""
    symbol: str
    side: Side
    entry_price: float
    stop_price: float
    distance: float
    distance_percent: float
    clamped: bool = False


@dataclass
class StageTrigger:
    """A partial take-profit stage whose trigger price has been reached."""
    stage: TakeProfitStage
    trigger_price: float
    close_quantity: float
    remaining_quantity: float
    new_stop_price: Optional[float] = None

    @property
    def executable(self) -> bool:
        return self.close_quantity > 0


def is_better_stop(side: Side, current: Optional[float], candidate: float) -> bool:
    """True when `candidate` tightens the stop in the position's favor."""
    if current is None:
        return True
    if side is Side.LONG:
        return candidate > current
    return candidate < current


class RiskEngine:
    """
    Rule-based protective-level calculator for one strategy profile.

    Enforces:
    - Initial stop distance inside the profile's percent band
    - Staged take-profit stages fire at most once per position
    - Trailing stop is monotonic and stays on the losing side of price
    """

    def __init__(self, profile: StrategyProfile, config: RiskConfig = None,
                 partial_cooldown: timedelta = PARTIAL_COOLDOWN):
        self.profile = profile
        self.config = config or get_config().risk
        self.partial_cooldown = partial_cooldown
        self.logger = get_logger()
        self._last_partial: Dict[str, datetime] = {}

    # ==================== Entry ====================

    def compute_initial_stop(self, symbol: str, side: Side, entry_price: float,
                             atr: float) -> StopLossPlan:
        """
        Initial stop from ATR x profile multiplier.

        The distance is capped at the profile's maximum percent. A distance
        below the minimum percent rejects the trade.

        Raises:
            InsufficientStopDistanceError: ATR unusable or distance below minimum
        """
        side = Side(side)
        profile = self.profile
        if entry_price <= 0 or not math.isfinite(atr) or atr <= 0:
            self.logger.risk(
                "BLOCKED", f"{symbol}: ATR unusable for stop placement",
                atr=atr, entry=entry_price, strategy=profile.name,
            )
            raise InsufficientStopDistanceError(symbol, 0.0, profile.min_stop_percent)

        raw_distance = atr * profile.atr_multiplier
        distance_percent = raw_distance / entry_price * 100

        if distance_percent < profile.min_stop_percent:
            self.logger.risk(
                "BLOCKED", f"{symbol}: stop too close to entry",
                distance_pct=f"{distance_percent:.3f}", min_pct=profile.min_stop_percent,
                atr=atr, entry=entry_price, strategy=profile.name,
            )
            raise InsufficientStopDistanceError(symbol, distance_percent, profile.min_stop_percent)

        clamped = distance_percent > profile.max_stop_percent
        if clamped:
            distance_percent = profile.max_stop_percent
        distance = entry_price * distance_percent / 100
        stop_price = entry_price - side.sign * distance

        self.logger.risk(
            "ALLOWED", f"{symbol}: initial stop",
            side=side.value, entry=entry_price, stop=f"{stop_price:.6f}",
            distance_pct=f"{distance_percent:.3f}", clamped=clamped,
        )
        return StopLossPlan(
            symbol=symbol,
            side=side,
            entry_price=entry_price,
            stop_price=stop_price,
            distance=distance,
            distance_percent=distance_percent,
            clamped=clamped,
        )

    def protective_stop(self, symbol: str, side: Side, entry_price: float,
                        atr: float) -> StopLossPlan:
        """
        Stop for a position that already exists and must be protected.

        Same as compute_initial_stop, except that a distance below the
        minimum is widened to the minimum instead of rejected.
        """
        try:
            return self.compute_initial_stop(symbol, side, entry_price, atr)
        except InsufficientStopDistanceError:
            side = Side(side)
            distance = entry_price * self.profile.min_stop_percent / 100
            self.logger.risk(
                "WARNING", f"{symbol}: existing position protected at minimum stop distance",
                side=side.value, entry=entry_price, min_pct=self.profile.min_stop_percent,
            )
            return StopLossPlan(
                symbol=symbol,
                side=side,
                entry_price=entry_price,
                stop_price=entry_price - side.sign * distance,
                distance=distance,
                distance_percent=self.profile.min_stop_percent,
                clamped=True,
            )

    @staticmethod
    def plan_from_position(position: Position) -> Optional[StopLossPlan]:
        """Rebuild the initial plan of a position whose R unit is known."""
        if not position.initial_risk:
            return None
        return StopLossPlan(
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            stop_price=position.price_at_r(-1),
            distance=position.initial_risk,
            distance_percent=position.initial_risk / position.entry_price * 100,
        )

    def compute_take_profit(self, plan: StopLossPlan) -> Optional[float]:
        """
        Exchange-side take-profit level.

        Fixed mode: entry +/- fixed_target_percent.
        Staged mode: the final target at extreme_r; earlier stages are
        partial closes handled each cycle.
        """
        profile = self.profile
        if profile.take_profit_mode == "fixed":
            target = plan.entry_price * (1 + plan.side.sign * profile.fixed_target_percent / 100)
        else:
            target = plan.entry_price + plan.side.sign * profile.extreme_r * plan.distance
        return target if target > 0 else None

    # ==================== Partial Take-Profit ====================

    @property
    def partial_take_profit_enabled(self) -> bool:
        return (self.config.enable_partial_take_profit
                and self.profile.take_profit_mode == "staged"
                and bool(self.profile.stages))

    def stage_triggers(self, position: Position, price: float,
                       contract: Contract) -> List[StageTrigger]:
        """
        Stages reached at `price` that have not fired for this position.

        Each stage closes close_percent of the quantity remaining after the
        stages before it in the same batch. Quantities are floored to the
        contract step; a stage whose quantity floors to zero is still returned
        (not executable) so the caller can record it and never retry it.
        """
        if not self.partial_take_profit_enabled or not position.initial_risk:
            return []

        triggers = []
        remaining = position.quantity
        stop = position.stop_loss_price
        for stage in sorted(self.profile.stages, key=lambda s: s.r_multiple):
            if stage.stage in position.fired_stages:
                continue
            trigger_price = position.price_at_r(stage.r_multiple)
            reached = (price >= trigger_price if position.side is Side.LONG
                       else price <= trigger_price)
            if not reached:
                break

            close_quantity = floor_to_step(remaining * stage.close_percent / 100,
                                           contract.size_precision)
            if contract.size_min and close_quantity < contract.size_min:
                close_quantity = 0.0
            close_quantity = min(close_quantity, remaining)

            new_stop = None
            if stage.move_stop_to_r is not None and close_quantity > 0:
                candidate = position.price_at_r(stage.move_stop_to_r)
                if is_better_stop(position.side, stop, candidate) and self._stop_below_price(
                        position.side, candidate, price):
                    new_stop = candidate
                    stop = candidate

            remaining = remaining - close_quantity
            triggers.append(StageTrigger(
                stage=stage,
                trigger_price=trigger_price,
                close_quantity=close_quantity,
                remaining_quantity=remaining,
                new_stop_price=new_stop,
            ))
            if remaining <= 0:
                break
        return triggers

    def note_partial_close(self, symbol: str, when: Optional[datetime] = None) -> None:
        """Start the trailing cooldown for `symbol`."""
        self._last_partial[symbol.upper()] = when or utc_now()

    def in_partial_cooldown(self, symbol: str, now: Optional[datetime] = None) -> bool:
        last = self._last_partial.get(symbol.upper())
        if last is None:
            return False
        return (now or utc_now()) - last < self.partial_cooldown

    # ==================== Trailing Stop ====================

    @staticmethod
    def _stop_below_price(side: Side, stop: float, price: float) -> bool:
        """Stop must sit on the losing side of the current price."""
        return stop < price if side is Side.LONG else stop > price

    def update_trailing(self, position: Position, price: float,
                        now: Optional[datetime] = None) -> Optional[float]:
        """
        Advance the trailing state with a new price.

        Mutates position.trailing_state. The favorable extreme moves only on
        strict improvement; trailing activates once the extreme reaches
        trailing_activation_r and then proposes
        extreme - sign * trailing_distance_r * R.

        Returns:
            New stop price when it strictly improves on the current stop,
            otherwise None.
        """
        if not self.config.enable_trailing_stop or not position.initial_risk:
            return None

        side = position.side
        state = position.trailing_state
        extreme = state.highest_favorable_price
        if extreme is None:
            extreme = position.entry_price
        if (side is Side.LONG and price > extreme) or (side is Side.SHORT and price < extreme):
            extreme = price
        state.highest_favorable_price = extreme

        if not state.activated:
            if position.r_multiple(extreme) < self.profile.trailing_activation_r:
                return None
            state.activated = True
            self.logger.risk(
                "ALLOWED", f"{position.symbol}: trailing stop activated",
                extreme=extreme, r=f"{position.r_multiple(extreme):.2f}",
            )

        if self.in_partial_cooldown(position.symbol, now):
            return None

        candidate = extreme - side.sign * self.profile.trailing_distance_r * position.initial_risk
        if not is_better_stop(side, position.stop_loss_price, candidate):
            return None
        if not self._stop_below_price(side, candidate, price):
            return None
        return candidate

    def validate_stop_move(self, position: Position, new_stop: float) -> bool:
        """Reject any stop change that loosens protection."""
        if is_better_stop(position.side, position.stop_loss_price, new_stop):
            return True
        self.logger.risk(
            "BLOCKED", f"{position.symbol}: stop move would loosen protection",
            side=position.side.value, current=position.stop_loss_price, proposed=new_stop,
        )
        return False
