"""
Position reconciliation.

The exchange is the source of truth for which positions exist. Each pass
compares exchange positions with the local store and repairs the store:

- exchange only: insert a local position from the exchange values
- local only: the position was closed behind our back; record its close
  from the local trade log or the exchange's position history, otherwise
  flag it for manual audit, then drop the local row
- both: compare side and quantity and correct (policy "auto") or flag
  (policy "flag") any mismatch

A second pass over unchanged exchange state makes no corrections.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..data.store import TradeStore
from ..errors import InconsistentStateError, TradingError
from ..exchanges.base import ExchangeClient
from ..models import (
    CloseEvent,
    CloseReason,
    ExchangePosition,
    OrderStatus,
    Position,
    Trade,
    TradeType,
)
from ..utils.helpers import utc_now
from ..utils.logger import get_logger
from .contracts import ContractRegistry


QUANTITY_TOLERANCE = 1e-9


@dataclass
class ReconcileReport:
    """Summary of one reconciliation pass."""
    inserted: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    corrected: List[str] = field(default_factory=list)
    resized: List[str] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)
    needs_audit: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def corrections(self) -> int:
        return len(self.inserted) + len(self.closed) + len(self.corrected)

    def to_dict(self) -> dict:
        return {
            "inserted": list(self.inserted),
            "closed": list(self.closed),
            "corrected": list(self.corrected),
            "resized": list(self.resized),
            "flagged": list(self.flagged),
            "needs_audit": list(self.needs_audit),
            "errors": dict(self.errors),
        }


class PositionReconciler:
    """
    Repairs the local store from exchange ground truth.

    Args:
        client: Exchange client
        store: Persisted store
        registry: Contract registry (for close PnL reconstruction)
        policy: "auto" corrects mismatches, "flag" only records them
    """

    def __init__(self, client: ExchangeClient, store: TradeStore,
                 registry: ContractRegistry, policy: str = "auto"):
        if policy not in ("auto", "flag"):
            raise ValueError(f"Unknown reconcile policy: {policy}")
        self.client = client
        self.store = store
        self.registry = registry
        self.policy = policy
        self.logger = get_logger()

    def reconcile(self, exchange_positions: Optional[List[ExchangePosition]] = None) -> ReconcileReport:
        """
        Run one reconciliation pass.

        Args:
            exchange_positions: Already-fetched positions; fetched when None.
                A fetch failure propagates, since nothing can be reconciled
                without the exchange's view.
        """
        if exchange_positions is None:
            exchange_positions = self.client.get_positions()

        remote = {p.symbol.upper(): p for p in exchange_positions}
        local = {p.symbol: p for p in self.store.list_positions()}
        report = ReconcileReport()

        for symbol in sorted(set(remote) | set(local)):
            try:
                if symbol not in local:
                    self._insert_from_exchange(remote[symbol], report)
                elif symbol not in remote:
                    self._close_local(local[symbol], report)
                else:
                    self._compare(local[symbol], remote[symbol], report)
            except TradingError as e:
                report.errors[symbol] = str(e)
                self.logger.error(f"Reconcile failed for {symbol}: {e}")

        if report.corrections or report.flagged or report.errors:
            self.logger.info(
                f"Reconcile: inserted={report.inserted} closed={report.closed} "
                f"corrected={report.corrected} flagged={report.flagged} errors={list(report.errors)}"
            )
        return report

    # ==================== Cases ====================

    def _insert_from_exchange(self, remote: ExchangePosition, report: ReconcileReport) -> None:
        position = Position(
            symbol=remote.symbol,
            side=remote.side,
            quantity=remote.quantity,
            entry_price=remote.entry_price,
            leverage=remote.leverage,
            opened_at=utc_now(),
            mark_price=remote.mark_price or None,
        )
        self.store.save_position(position)
        report.inserted.append(position.symbol)
        self.logger.reconcile(
            "INSERTED", position.symbol,
            side=position.side.value, qty=position.quantity,
            entry=position.entry_price, leverage=position.leverage,
        )

    def _close_local(self, position: Position, report: ReconcileReport) -> None:
        symbol = position.symbol
        if not self._close_recorded(position) and not self._record_close_from_history(position):
            detail = (
                f"{position.side.value} {position.quantity} @ {position.entry_price} "
                f"opened {position.opened_at:%Y-%m-%d %H:%M:%S} closed with no recorded fill"
            )
            self.store.flag_for_audit(symbol, "missing_close", detail)
            report.needs_audit.append(symbol)
            self.logger.reconcile("NEEDS_AUDIT", symbol, detail=detail)

        self._cancel_stale_orders(symbol)
        self.store.delete_position(symbol)
        report.closed.append(symbol)
        self.logger.reconcile(
            "CLOSED", symbol, side=position.side.value, qty=position.quantity,
            reason="absent on exchange",
        )

    def _close_recorded(self, position: Position) -> bool:
        """True when close trades since the open cover the whole opened quantity."""
        partial = sum(
            r.closed_quantity for r in self.store.partial_take_profit_history(position.symbol)
            if r.position_opened_at == position.opened_at and r.status == "completed"
        )
        opened = position.quantity + partial
        closed = self.store.closed_quantity_since(position.symbol, position.opened_at)
        return closed >= opened - QUANTITY_TOLERANCE * max(1.0, opened)

    def _cancel_stale_orders(self, symbol: str) -> None:
        for order in self.store.active_orders(symbol):
            try:
                self.client.cancel_order(symbol, order.id)
            except TradingError as e:
                self.logger.error(f"{symbol}: stale order {order.id} not cancelled: {e}")
            self.store.set_order_status(order.id, OrderStatus.CANCELLED)

    def _record_close_from_history(self, position: Position) -> bool:
        """Record a close trade and event from the exchange's position history."""
        history = self.client.get_position_history(position.symbol, since=position.opened_at)
        matches = [
            h for h in history
            if h.symbol.upper() == position.symbol and h.side is position.side
            and h.closed_at >= position.opened_at
        ]
        if not matches:
            return False
        entry = max(matches, key=lambda h: h.closed_at)
        contract = self.registry.resolve(position.symbol)
        fee = (self.client.estimate_fee(position.entry_price, position.quantity, contract)
               + self.client.estimate_fee(entry.exit_price, position.quantity, contract))

        self.store.record_trade(Trade(
            type=TradeType.CLOSE,
            symbol=position.symbol,
            side=position.side,
            price=entry.exit_price,
            quantity=position.quantity,
            pnl=entry.pnl,
            fee=fee,
            timestamp=entry.closed_at,
            leverage=position.leverage,
            status="reconciled",
        ))
        self.store.record_close_event(CloseEvent(
            symbol=position.symbol,
            side=position.side,
            close_reason=CloseReason.MANUAL,
            close_price=entry.exit_price,
            entry_price=position.entry_price,
            quantity=position.quantity,
            pnl=entry.pnl,
            created_at=entry.closed_at,
        ))
        self.logger.reconcile(
            "CLOSE_RECONSTRUCTED", position.symbol,
            exit=entry.exit_price, pnl=f"{entry.pnl:.4f}", source="position_history",
        )
        return True

    def _compare(self, position: Position, remote: ExchangePosition, report: ReconcileReport) -> None:
        side_differs = position.side is not remote.side
        qty_differs = abs(position.quantity - remote.quantity) > QUANTITY_TOLERANCE * max(1.0, remote.quantity)
        if not side_differs and not qty_differs:
            return

        error = InconsistentStateError(
            position.symbol,
            f"local {position.side.value} {position.quantity} vs exchange "
            f"{remote.side.value} {remote.quantity}",
        )

        if self.policy == "flag":
            report.flagged.append(position.symbol)
            if self.store.flag_for_audit(position.symbol, "mismatch", error.detail):
                self.logger.reconcile("FLAGGED", position.symbol, detail=error.detail)
            return

        before = f"{position.side.value}/{position.quantity}"
        if side_differs:
            # Closed and reopened the other way outside this process
            self._cancel_stale_orders(position.symbol)
            position = Position(
                symbol=remote.symbol,
                side=remote.side,
                quantity=remote.quantity,
                entry_price=remote.entry_price,
                leverage=remote.leverage,
                opened_at=utc_now(),
                mark_price=remote.mark_price or None,
            )
        else:
            position.quantity = remote.quantity
            position.entry_price = remote.entry_price or position.entry_price
            report.resized.append(position.symbol)

        self.store.save_position(position)
        report.corrected.append(position.symbol)
        self.logger.reconcile(
            "CORRECTED", position.symbol,
            before=before, after=f"{position.side.value}/{position.quantity}",
            detail=error.detail,
        )
