"""
Conditional order monitor.

Exchange-side stops and take-profits fire without telling us. Each cycle
the monitor compares the locally active orders with the exchange's open
conditional orders:

- order gone and position gone: it fired. Record the close trade and close
  event, cancel the orphaned opposite order, drop the local position.
- order gone but position still open: cancelled outside this process. Clear
  the reference so the trading cycle re-protects the position.

Orders already marked triggered or cancelled are never processed again.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..data.store import TradeStore
from ..errors import TradingError
from ..exchanges.base import ExchangeClient
from ..models import (
    CloseEvent,
    CloseReason,
    ConditionalOrder,
    ExchangePosition,
    OrderKind,
    OrderStatus,
    Position,
    Trade,
    TradeType,
)
from ..utils.helpers import utc_now
from ..utils.logger import get_logger
from .contracts import ContractRegistry


@dataclass
class MonitorReport:
    """Outcome of one poll."""
    triggered: List[str] = field(default_factory=list)      # order ids
    cancelled: List[str] = field(default_factory=list)      # order ids
    closed_symbols: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class ConditionalOrderMonitor:
    """Poll-and-reconcile watcher for protective orders."""

    def __init__(self, client: ExchangeClient, store: TradeStore, registry: ContractRegistry):
        self.client = client
        self.store = store
        self.registry = registry
        self.logger = get_logger()

    def poll(self, exchange_positions: Optional[List[ExchangePosition]] = None) -> MonitorReport:
        """
        Check every locally active conditional order against the exchange.

        Args:
            exchange_positions: Already-fetched positions; fetched when None
        """
        report = MonitorReport()
        active = self.store.active_orders()
        if not active:
            return report

        if exchange_positions is None:
            exchange_positions = self.client.get_positions()
        remote = {p.symbol.upper(): p for p in exchange_positions}

        by_symbol: Dict[str, List[ConditionalOrder]] = defaultdict(list)
        for order in active:
            by_symbol[order.symbol].append(order)

        for symbol, orders in sorted(by_symbol.items()):
            try:
                self._poll_symbol(symbol, orders, remote.get(symbol), report)
            except TradingError as e:
                report.errors[symbol] = str(e)
                self.logger.error(f"Order monitor failed for {symbol}: {e}")
        return report

    def _poll_symbol(self, symbol: str, orders: List[ConditionalOrder],
                     remote: Optional[ExchangePosition], report: MonitorReport) -> None:
        open_ids = {o.id for o in self.client.get_open_conditional_orders(symbol)}
        missing = [o for o in orders if o.id not in open_ids]
        if not missing:
            return

        position = self.store.get_position(symbol)
        if remote is None or (position is not None and remote.side is not position.side):
            fired = self._pick_fired(symbol, missing)
            self._handle_triggered(symbol, fired, orders, position, report)
            return

        for order in missing:
            self.store.set_order_status(order.id, OrderStatus.CANCELLED)
            report.cancelled.append(order.id)
            if position is not None:
                if position.stop_loss_order_ref == order.id:
                    position.stop_loss_order_ref = None
                if position.take_profit_order_ref == order.id:
                    position.take_profit_order_ref = None
            self.logger.warning(
                f"{symbol}: {order.kind.value} order {order.id} disappeared while position is open; "
                f"will re-protect"
            )
        if position is not None:
            self.store.save_position(position)

    def _pick_fired(self, symbol: str, missing: List[ConditionalOrder]) -> ConditionalOrder:
        """Which missing order closed the position; nearest trigger to price when ambiguous."""
        if len(missing) == 1:
            return missing[0]
        try:
            price = self.client.get_ticker_price(symbol)
        except TradingError as e:
            self.logger.warning(f"{symbol}: no price to disambiguate fired order ({e}); assuming stop-loss")
            stops = [o for o in missing if o.kind is OrderKind.STOP_LOSS]
            return stops[0] if stops else missing[0]
        return min(missing, key=lambda o: abs(o.trigger_price - price))

    def _handle_triggered(self, symbol: str, fired: ConditionalOrder,
                          orders: List[ConditionalOrder], position: Optional[Position],
                          report: MonitorReport) -> None:
        self.store.set_order_status(fired.id, OrderStatus.TRIGGERED)
        report.triggered.append(fired.id)

        for other in orders:
            if other.id == fired.id:
                continue
            try:
                self.client.cancel_order(symbol, other.id)
            except TradingError as e:
                self.logger.error(f"{symbol}: orphaned {other.kind.value} {other.id} not cancelled: {e}")
            self.store.set_order_status(other.id, OrderStatus.CANCELLED)
            report.cancelled.append(other.id)

        if position is None:
            return

        close_price = self._close_price(position, fired)
        contract = self.registry.resolve(symbol)
        gross = self.client.calculate_pnl(
            position.entry_price, close_price, position.quantity, position.side, contract
        )
        # Close trades carry the fees of both legs
        fee = (self.client.estimate_fee(position.entry_price, position.quantity, contract)
               + self.client.estimate_fee(close_price, position.quantity, contract))
        net = gross - fee
        margin = position.entry_price * position.quantity * contract.size_multiplier / max(1, position.leverage)
        reason = (CloseReason.STOP_LOSS_TRIGGERED if fired.kind is OrderKind.STOP_LOSS
                  else CloseReason.TAKE_PROFIT_TRIGGERED)
        now = utc_now()

        self.store.record_trade(Trade(
            type=TradeType.CLOSE,
            symbol=symbol,
            side=position.side,
            price=close_price,
            quantity=position.quantity,
            pnl=net,
            fee=fee,
            timestamp=now,
            order_id=fired.id,
            leverage=position.leverage,
        ))
        self.store.record_close_event(CloseEvent(
            symbol=symbol,
            side=position.side,
            close_reason=reason,
            close_price=close_price,
            entry_price=position.entry_price,
            quantity=position.quantity,
            pnl=net,
            trigger_price=fired.trigger_price,
            pnl_percent=net / margin * 100 if margin > 0 else None,
            trigger_order_id=fired.id,
            created_at=now,
        ))
        self.store.delete_position(symbol)
        report.closed_symbols.append(symbol)
        self.logger.trade(
            "POSITION_CLOSED", symbol, position.side.value, position.quantity,
            price=close_price, pnl=net, reason=reason.value, order_id=fired.id,
        )

    def _close_price(self, position: Position, fired: ConditionalOrder) -> float:
        """Exit price from the exchange's position history, else the trigger price."""
        try:
            history = self.client.get_position_history(position.symbol, since=position.opened_at, limit=5)
        except TradingError as e:
            self.logger.debug(f"{position.symbol}: position history unavailable ({e})")
            return fired.trigger_price
        closes = [h for h in history if h.side is position.side and h.exit_price > 0]
        if not closes:
            return fired.trigger_price
        return max(closes, key=lambda h: h.closed_at).exit_price
