"""
Protective order management.

Places, replaces and cancels the exchange-side stop-loss and take-profit
orders of open positions. Every mutation for a symbol runs under that
symbol's lock, which keeps the "at most one active stop-loss and one active
take-profit per position" rule even when the trading cycle and an operator
action touch the same position.
"""

from contextlib import contextmanager
import threading
from typing import Dict, Iterator, Optional

from ..data.store import TradeStore
from ..errors import TradingError
from ..exchanges.base import ExchangeClient
from ..models import ConditionalOrder, OrderKind, OrderStatus, Position
from ..utils.logger import get_logger
from .risk_engine import is_better_stop


class ProtectiveOrderManager:
    """
    Owns the lifecycle of conditional orders attached to positions.

    Usage:
        orders = ProtectiveOrderManager(client, store)
        with orders.position_lock("BTC"):
            orders.protect(position, stop_price=95.0, take_profit_price=110.0)
    """

    def __init__(self, client: ExchangeClient, store: TradeStore):
        self.client = client
        self.store = store
        self.logger = get_logger()
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def position_lock(self, symbol: str) -> Iterator[None]:
        """Serialize order operations for one symbol (re-entrant)."""
        key = symbol.upper()
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            yield

    # ==================== Primitives ====================

    def _place(self, position: Position, kind: OrderKind, trigger_price: float) -> ConditionalOrder:
        result = self.client.place_conditional_order(
            position.symbol, kind, position.side, trigger_price, position.quantity
        )
        order = ConditionalOrder(
            id=result.order_id,
            symbol=position.symbol,
            kind=kind,
            trigger_price=trigger_price,
            side=position.side,
            quantity=position.quantity,
        )
        self.store.save_conditional_order(order)
        self.logger.trade(
            "STOP_PLACED" if kind is OrderKind.STOP_LOSS else "TAKE_PROFIT_PLACED",
            position.symbol, position.side.value, position.quantity,
            price=trigger_price, order_id=order.id,
        )
        return order

    def _cancel(self, symbol: str, order_id: str) -> None:
        existed = self.client.cancel_order(symbol, order_id)
        self.store.set_order_status(order_id, OrderStatus.CANCELLED)
        self.logger.debug(f"Cancelled conditional order {order_id} for {symbol} (existed={existed})")

    # ==================== Operations ====================

    def protect(self, position: Position, stop_price: Optional[float],
                take_profit_price: Optional[float] = None) -> Position:
        """
        Place whichever protective orders the position is missing.

        Existing orders are left untouched; use move_stop() to change a stop.
        """
        with self.position_lock(position.symbol):
            if stop_price is not None and position.stop_loss_order_ref is None:
                order = self._place(position, OrderKind.STOP_LOSS, stop_price)
                position.stop_loss_order_ref = order.id
                position.stop_loss_price = stop_price
            if take_profit_price is not None and position.take_profit_order_ref is None:
                order = self._place(position, OrderKind.TAKE_PROFIT, take_profit_price)
                position.take_profit_order_ref = order.id
                position.take_profit_price = take_profit_price
            self.store.save_position(position)
        return position

    def move_stop(self, position: Position, new_stop: float, reason: str = "") -> bool:
        """
        Replace the stop-loss with a tighter one.

        The old order is cancelled before the new one is placed. If placement
        fails the old level is restored; if that fails too the position is
        left without a stop and the failure is logged as a panic so the next
        cycle re-protects it.

        Returns:
            True if the stop moved.
        """
        with self.position_lock(position.symbol):
            if not is_better_stop(position.side, position.stop_loss_price, new_stop):
                self.logger.risk(
                    "BLOCKED", f"{position.symbol}: stop move rejected, not an improvement",
                    side=position.side.value, current=position.stop_loss_price, proposed=new_stop,
                )
                return False

            old_ref = position.stop_loss_order_ref
            old_price = position.stop_loss_price
            if old_ref:
                try:
                    self._cancel(position.symbol, old_ref)
                except TradingError as e:
                    self.logger.error(f"{position.symbol}: could not cancel stop {old_ref}: {e}")
                    return False
                position.stop_loss_order_ref = None

            try:
                order = self._place(position, OrderKind.STOP_LOSS, new_stop)
            except TradingError as e:
                self.logger.error(f"{position.symbol}: new stop {new_stop} rejected: {e}")
                self._restore_stop(position, old_price)
                return False

            position.stop_loss_order_ref = order.id
            position.stop_loss_price = new_stop
            self.store.save_position(position)
            self.logger.trade(
                "STOP_MOVED", position.symbol, position.side.value, position.quantity,
                price=new_stop, previous=old_price, reason=reason or "adjust",
            )
            return True

    def _restore_stop(self, position: Position, price: Optional[float]) -> None:
        if price is None:
            self.store.save_position(position)
            return
        try:
            order = self._place(position, OrderKind.STOP_LOSS, price)
        except TradingError as e:
            position.stop_loss_order_ref = None
            self.store.save_position(position)
            self.logger.panic(f"{position.symbol} has NO stop-loss: restore at {price} failed: {e}")
            return
        position.stop_loss_order_ref = order.id
        position.stop_loss_price = price
        self.store.save_position(position)

    def resize(self, position: Position) -> None:
        """
        Re-place protective orders after the position's quantity changed.

        Clients whose conditional orders close the whole position regardless
        of size skip this.
        """
        if not self.client.PROTECTIVE_ORDERS_TRACK_SIZE:
            self.store.save_position(position)
            return
        with self.position_lock(position.symbol):
            stop_price = position.stop_loss_price
            tp_price = position.take_profit_price
            for ref in (position.stop_loss_order_ref, position.take_profit_order_ref):
                if ref:
                    self._cancel(position.symbol, ref)
            position.stop_loss_order_ref = None
            position.take_profit_order_ref = None
            self.protect(position, stop_price, tp_price)

    def cancel_all(self, position: Position) -> None:
        """Cancel both protective orders; failures are logged, not raised."""
        with self.position_lock(position.symbol):
            for ref in (position.stop_loss_order_ref, position.take_profit_order_ref):
                if not ref:
                    continue
                try:
                    self._cancel(position.symbol, ref)
                except TradingError as e:
                    self.logger.error(f"{position.symbol}: failed to cancel order {ref}: {e}")
            position.stop_loss_order_ref = None
            position.take_profit_order_ref = None
