"""
Account-level drawdown protection.

State machine over the drawdown from the account's high-water mark:

    NORMAL -> WARNING -> NO_NEW_POSITION -> FORCE_CLOSE

The state follows the drawdown up and down except for FORCE_CLOSE, which
latches until an operator calls reset(). reset() is also the only way to
lower the peak balance (e.g. after a withdrawal).
"""

from dataclasses import dataclass
from enum import Enum
import threading
from typing import Callable, Optional

from ..config.config import RiskConfig, get_config
from ..errors import FatalConfigError
from ..models import AccountSnapshot
from ..utils.logger import get_logger


class DrawdownState(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    NO_NEW_POSITION = "no_new_position"
    FORCE_CLOSE = "force_close"


@dataclass
class DrawdownDecision:
    """Outcome of one evaluation."""
    state: DrawdownState
    drawdown_percent: float
    balance: float
    peak_balance: float

    @property
    def allows_new_positions(self) -> bool:
        return self.state in (DrawdownState.NORMAL, DrawdownState.WARNING)

    @property
    def must_force_close(self) -> bool:
        return self.state is DrawdownState.FORCE_CLOSE


class DrawdownGuard:
    """
    Gate new positions and trigger liquidation on account drawdown.

    Args:
        warning_percent: Drawdown at which a warning is logged
        no_new_position_percent: Drawdown at which new positions are refused
        force_close_percent: Drawdown at which all positions are closed
        peak_balance: Restored high-water mark (0 = unknown)
        on_peak_change: Callback receiving the new peak whenever it changes

    Raises:
        FatalConfigError: thresholds not strictly ascending
    """

    def __init__(self, warning_percent: float, no_new_position_percent: float,
                 force_close_percent: float, peak_balance: float = 0.0,
                 on_peak_change: Optional[Callable[[float], None]] = None):
        if not (0 < warning_percent < no_new_position_percent < force_close_percent <= 100):
            raise FatalConfigError(
                "Drawdown thresholds must be strictly ascending: "
                f"warning={warning_percent}, no_new_position={no_new_position_percent}, "
                f"force_close={force_close_percent}"
            )
        self.warning_percent = warning_percent
        self.no_new_position_percent = no_new_position_percent
        self.force_close_percent = force_close_percent
        self.peak_balance = max(0.0, peak_balance)
        self.state = DrawdownState.NORMAL
        self._on_peak_change = on_peak_change
        self._lock = threading.Lock()
        self.logger = get_logger()

    @classmethod
    def from_config(cls, config: RiskConfig = None, peak_balance: float = 0.0,
                    on_peak_change: Optional[Callable[[float], None]] = None) -> "DrawdownGuard":
        config = config or get_config().risk
        return cls(
            warning_percent=config.drawdown_warning_percent,
            no_new_position_percent=config.drawdown_no_new_position_percent,
            force_close_percent=config.drawdown_force_close_percent,
            peak_balance=peak_balance,
            on_peak_change=on_peak_change,
        )

    def _classify(self, drawdown_percent: float) -> DrawdownState:
        if drawdown_percent >= self.force_close_percent:
            return DrawdownState.FORCE_CLOSE
        if drawdown_percent >= self.no_new_position_percent:
            return DrawdownState.NO_NEW_POSITION
        if drawdown_percent >= self.warning_percent:
            return DrawdownState.WARNING
        return DrawdownState.NORMAL

    def evaluate(self, snapshot: AccountSnapshot) -> DrawdownDecision:
        """
        Update the peak and state from a fresh account snapshot.

        Fills snapshot.peak_balance with the updated peak.
        """
        with self._lock:
            new_peak = None
            if snapshot.balance > self.peak_balance:
                self.peak_balance = snapshot.balance
                new_peak = self.peak_balance
            snapshot.peak_balance = self.peak_balance
            drawdown = snapshot.drawdown_percent

            previous = self.state
            if previous is DrawdownState.FORCE_CLOSE:
                state = previous
            else:
                state = self._classify(drawdown)
            self.state = state

        if new_peak is not None and self._on_peak_change:
            self._on_peak_change(new_peak)

        if state is not previous:
            self._log_transition(previous, state, drawdown, snapshot)

        return DrawdownDecision(
            state=state,
            drawdown_percent=drawdown,
            balance=snapshot.balance,
            peak_balance=snapshot.peak_balance,
        )

    def _log_transition(self, previous: DrawdownState, state: DrawdownState,
                        drawdown: float, snapshot: AccountSnapshot) -> None:
        fields = dict(
            previous=previous.value,
            drawdown_pct=f"{drawdown:.2f}",
            balance=f"{snapshot.balance:.2f}",
            peak=f"{snapshot.peak_balance:.2f}",
        )
        if state is DrawdownState.FORCE_CLOSE:
            self.logger.risk("FORCE_CLOSE", "Account drawdown reached force-close threshold",
                             threshold=self.force_close_percent, **fields)
        elif state is DrawdownState.NO_NEW_POSITION:
            self.logger.risk("BLOCKED", "Drawdown blocks new positions",
                             threshold=self.no_new_position_percent, **fields)
        elif state is DrawdownState.WARNING:
            self.logger.risk("WARNING", "Drawdown warning",
                             threshold=self.warning_percent, **fields)
        else:
            self.logger.risk("ALLOWED", "Drawdown back to normal", **fields)

    def reset(self, balance: float) -> None:
        """
        Operator reset: peak becomes `balance` and state returns to NORMAL.

        Clears a latched FORCE_CLOSE.
        """
        with self._lock:
            previous = self.state
            self.peak_balance = max(0.0, balance)
            self.state = DrawdownState.NORMAL
        self.logger.warning(
            f"Drawdown guard reset: peak={balance:.2f}, previous_state={previous.value}"
        )
        if self._on_peak_change:
            self._on_peak_change(self.peak_balance)
