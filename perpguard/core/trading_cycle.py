"""
Trading cycle - one pass of the periodic pipeline.

    account snapshot -> drawdown guard -> conditional-order monitor
    -> reconciler -> indicators (parallel) -> per-symbol management
    -> decisions -> open/close

Errors are isolated per symbol: a failure while handling one symbol is
logged and recorded in the CycleReport, and the remaining symbols are
still processed. Every order mutation for a symbol runs under that
symbol's lock from the ProtectiveOrderManager; the lock is released
while the decision function runs.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..config.config import Config, get_config
from ..data.store import TradeStore
from ..errors import InsufficientStopDistanceError, TradingError
from ..exchanges.base import ExchangeClient
from ..models import (
    CloseEvent,
    CloseReason,
    Contract,
    OrderResult,
    PartialTakeProfitRecord,
    Position,
    Side,
    Trade,
    TradeType,
)
from ..utils.helpers import utc_now
from ..utils.logger import get_logger
from .contracts import ContractRegistry
from .drawdown import DrawdownDecision, DrawdownGuard
from .interfaces import Action, Decision, DecisionFunction, Indicators, MarketDataFeed, MarketSnapshot
from .order_monitor import ConditionalOrderMonitor, MonitorReport
from .protective_orders import ProtectiveOrderManager
from .reconciler import PositionReconciler, ReconcileReport
from .risk_engine import RiskEngine, StageTrigger


@dataclass
class CycleReport:
    """What one cycle did."""
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    drawdown: Optional[DrawdownDecision] = None
    monitor: Optional[MonitorReport] = None
    reconcile: Optional[ReconcileReport] = None
    opened: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    partial_closes: List[str] = field(default_factory=list)
    stops_moved: List[str] = field(default_factory=list)
    protected: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    aborted: bool = False

    @property
    def force_closed(self) -> bool:
        return self.drawdown is not None and self.drawdown.must_force_close

    def summary(self) -> str:
        state = self.drawdown.state.value if self.drawdown else "unknown"
        return (
            f"drawdown={state} opened={self.opened} closed={self.closed} "
            f"partials={self.partial_closes} stops_moved={self.stops_moved} "
            f"protected={self.protected} skipped={list(self.skipped)} errors={list(self.errors)}"
        )


class TradingCycle:
    """
    Drives one trading pass over the configured symbols.

    Usage:
        cycle = TradingCycle(client, store, registry, engine, guard,
                             orders, monitor, reconciler, feed, decide)
        report = cycle.run_once()
    """

    def __init__(
        self,
        client: ExchangeClient,
        store: TradeStore,
        registry: ContractRegistry,
        engine: RiskEngine,
        guard: DrawdownGuard,
        orders: ProtectiveOrderManager,
        monitor: ConditionalOrderMonitor,
        reconciler: PositionReconciler,
        feed: MarketDataFeed,
        decide: DecisionFunction,
        config: Config = None,
        max_workers: int = 4,
    ):
        self.client = client
        self.store = store
        self.registry = registry
        self.engine = engine
        self.guard = guard
        self.orders = orders
        self.monitor = monitor
        self.reconciler = reconciler
        self.feed = feed
        self.decide = decide
        self.config = config or get_config()
        self.max_workers = max_workers
        self.logger = get_logger()

    # ==================== Cycle ====================

    def run_once(self) -> CycleReport:
        """Run one full cycle and return its report."""
        report = CycleReport()
        try:
            snapshot = self.client.get_account()
            exchange_positions = self.client.get_positions()
        except TradingError as e:
            report.aborted = True
            report.errors["account"] = str(e)
            self.logger.warning(f"Cycle skipped: account state unavailable ({e})")
            return self._finish(report)

        report.drawdown = self.guard.evaluate(snapshot)
        report.monitor = self.monitor.poll(exchange_positions)
        report.reconcile = self.reconciler.reconcile(exchange_positions)

        if report.drawdown.must_force_close:
            self.close_all(CloseReason.FORCED, report)
            return self._finish(report)

        for symbol in report.reconcile.resized:
            self._resize_after_reconcile(symbol, report)

        symbols = self._symbols()
        market = self._prefetch(symbols, report)
        for symbol in symbols:
            indicators = market.get(symbol)
            if indicators is None:
                continue
            try:
                self._process_symbol(symbol, indicators, report)
            except TradingError as e:
                report.errors[symbol] = str(e)
                self.logger.warning(f"{symbol}: cycle step failed: {e}")
            except Exception as e:
                report.errors[symbol] = str(e)
                self.logger.error(f"{symbol}: unexpected error in cycle: {e}", exc_info=True)

        return self._finish(report)

    def _finish(self, report: CycleReport) -> CycleReport:
        report.finished_at = utc_now()
        self.logger.info(f"Cycle done: {report.summary()}")
        return report

    def _symbols(self) -> List[str]:
        """Configured symbols followed by any other symbol with an open position."""
        symbols = [s.upper() for s in self.config.trading.symbols]
        for position in self.store.list_positions():
            if position.symbol not in symbols:
                symbols.append(position.symbol)
        return symbols

    def _prefetch(self, symbols: List[str], report: CycleReport) -> Dict[str, Indicators]:
        """Fetch indicators for all symbols in parallel; failures skip the symbol."""
        timeframe = self.config.trading.indicator_timeframe
        market: Dict[str, Indicators] = {}
        if not symbols:
            return market
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(symbols))) as pool:
            futures = {pool.submit(self.feed.get_indicators, s, timeframe): s for s in symbols}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    market[symbol] = future.result()
                except Exception as e:
                    report.skipped[symbol] = f"market data unavailable: {e}"
                    self.logger.warning(f"{symbol}: no indicators for {timeframe}: {e}")
        return market

    def _resize_after_reconcile(self, symbol: str, report: CycleReport) -> None:
        position = self.store.get_position(symbol)
        if position is None:
            return
        try:
            with self.orders.position_lock(symbol):
                self.orders.resize(position)
        except TradingError as e:
            report.errors[symbol] = str(e)
            self.logger.error(f"{symbol}: protective orders not resized to {position.quantity}: {e}")

    def _process_symbol(self, symbol: str, indicators: Indicators, report: CycleReport) -> None:
        with self.orders.position_lock(symbol):
            position = self.store.get_position(symbol)
            if position is not None:
                position = self._manage_position(position, indicators, report)

        decision = self.decide(MarketSnapshot(
            symbol=symbol,
            timeframe=self.config.trading.indicator_timeframe,
            indicators=indicators,
            position=position,
            can_open=self._can_open(report),
        ))
        if decision.action is Action.HOLD:
            return

        with self.orders.position_lock(symbol):
            position = self.store.get_position(symbol)
            if decision.action is Action.CLOSE:
                if position is not None:
                    self.close_position(position, CloseReason.MANUAL, indicators.price, report)
                return

            side = decision.action.side
            if position is not None:
                if position.side is side:
                    report.skipped[symbol] = f"already {side.value}"
                    return
                if not self.close_position(position, CloseReason.MANUAL, indicators.price, report):
                    return
            self.open_position(symbol, side, decision, indicators, report)

    def _can_open(self, report: CycleReport) -> bool:
        if report.drawdown is not None and not report.drawdown.allows_new_positions:
            return False
        return len(self.store.list_positions()) < self.config.risk.max_positions

    # ==================== Open Position Management ====================

    def _manage_position(self, position: Position, indicators: Indicators,
                         report: CycleReport) -> Optional[Position]:
        """Protection, partial take-profit and trailing stop for one position."""
        symbol = position.symbol
        price = indicators.price
        position.mark_price = price
        contract = self.registry.resolve(symbol)

        self._ensure_protection(position, indicators, report)

        for trigger in self.engine.stage_triggers(position, price, contract):
            if not self._execute_stage(position, trigger, price, contract, report):
                break
        if self.store.get_position(symbol) is None:
            return None

        new_stop = self.engine.update_trailing(position, price)
        if new_stop is not None and self.orders.move_stop(position, new_stop, reason="trailing"):
            report.stops_moved.append(symbol)
        else:
            self.store.save_position(position)
        return position

    def _ensure_protection(self, position: Position, indicators: Indicators,
                           report: CycleReport) -> None:
        """Place whichever of stop-loss and take-profit the position lacks."""
        if position.stop_loss_order_ref and position.take_profit_order_ref:
            return

        plan = self.engine.plan_from_position(position)
        if plan is None:
            plan = self.engine.protective_stop(
                position.symbol, position.side, position.entry_price, indicators.atr
            )
            position.initial_risk = plan.distance

        stop = position.stop_loss_price if position.stop_loss_price is not None else plan.stop_price
        take_profit = position.take_profit_price
        if take_profit is None:
            take_profit = self.engine.compute_take_profit(plan)

        try:
            self.orders.protect(position, stop, take_profit)
        except TradingError as e:
            report.errors[position.symbol] = str(e)
            self.logger.panic(
                f"{position.symbol} {position.side.value} {position.quantity} unprotected: "
                f"stop {stop} / take-profit {take_profit} rejected: {e}"
            )
            return
        report.protected.append(position.symbol)

    def _execute_stage(self, position: Position, trigger: StageTrigger, price: float,
                       contract: Contract, report: CycleReport) -> bool:
        """
        Close one partial take-profit stage at market.

        Any attempt, successful or not, is recorded so the stage never fires
        twice. Returns False when later stages must not run this cycle.
        """
        symbol = position.symbol
        stage = trigger.stage
        record = PartialTakeProfitRecord(
            symbol=symbol,
            position_opened_at=position.opened_at,
            stage=stage.stage,
            r_multiple=stage.r_multiple,
            trigger_price=trigger.trigger_price,
            close_percent=stage.close_percent,
            closed_quantity=trigger.close_quantity,
            remaining_quantity=trigger.remaining_quantity,
            new_stop_loss_price=trigger.new_stop_price,
        )

        if not trigger.executable:
            record.status = "skipped"
            record.remaining_quantity = position.quantity
            record.notes = f"close quantity floors to zero at step {contract.size_precision}"
            self.store.record_partial_take_profit(record)
            position.fired_stages.add(stage.stage)
            self.logger.risk(
                "BLOCKED", f"{symbol}: partial take-profit stage {stage.stage} too small to execute",
                quantity=position.quantity, close_pct=stage.close_percent,
                step=contract.size_precision, min_size=contract.size_min,
            )
            return True

        try:
            result = self.client.place_order(
                symbol, position.side.exit_order_side, trigger.close_quantity, reduce_only=True
            )
        except TradingError as e:
            result = OrderResult(success=False, error=str(e))

        if not result.success:
            record.status = "failed"
            record.closed_quantity = 0.0
            record.remaining_quantity = position.quantity
            record.new_stop_loss_price = None
            record.notes = result.error or "order rejected"
            self.store.record_partial_take_profit(record)
            report.errors[symbol] = f"stage {stage.stage}: {record.notes}"
            self.logger.error(
                f"{symbol}: partial take-profit stage {stage.stage} failed closing "
                f"{trigger.close_quantity} of {position.quantity}: {record.notes}"
            )
            return False

        fill_price = result.price or price
        gross, fee, net = self._realized(position, fill_price, trigger.close_quantity, contract)
        self.store.record_trade(Trade(
            type=TradeType.CLOSE,
            symbol=symbol,
            side=position.side,
            price=fill_price,
            quantity=trigger.close_quantity,
            pnl=net,
            fee=fee,
            order_id=result.order_id,
            leverage=position.leverage,
        ))
        record.pnl = net
        self.store.record_partial_take_profit(record)
        position.fired_stages.add(stage.stage)
        self.engine.note_partial_close(symbol)
        report.partial_closes.append(f"{symbol}#{stage.stage}")
        self.logger.trade(
            "PARTIAL_TAKE_PROFIT", symbol, position.side.value, trigger.close_quantity,
            price=fill_price, pnl=net, stage=stage.stage, r=stage.r_multiple,
            remaining=trigger.remaining_quantity,
        )

        if trigger.remaining_quantity <= 0:
            self._finalize_close(position, CloseReason.TAKE_PROFIT_TRIGGERED, fill_price,
                                 net, result.order_id, report, trigger_price=trigger.trigger_price)
            return False

        position.quantity = trigger.remaining_quantity
        self.orders.resize(position)
        if trigger.new_stop_price is not None and self.orders.move_stop(
                position, trigger.new_stop_price, reason=f"stage {stage.stage}"):
            report.stops_moved.append(symbol)
        self.store.save_position(position)
        return True

    # ==================== Open / Close ====================

    def open_position(self, symbol: str, side: Side, decision: Decision,
                      indicators: Indicators, report: CycleReport) -> Optional[Position]:
        """
        Open and protect a new position.

        Refused when the drawdown guard blocks new positions, when
        max_positions is reached, when the stop would sit closer than the
        profile minimum, or when the amount buys less than one contract step.
        """
        symbol = symbol.upper()
        side = Side(side)
        drawdown = report.drawdown
        if drawdown is not None and not drawdown.allows_new_positions:
            report.skipped[symbol] = f"drawdown {drawdown.state.value}"
            self.logger.risk(
                "BLOCKED", f"{symbol}: new {side.value} refused by drawdown guard",
                state=drawdown.state.value, drawdown_pct=f"{drawdown.drawdown_percent:.2f}",
            )
            return None

        open_count = len(self.store.list_positions())
        if open_count >= self.config.risk.max_positions:
            report.skipped[symbol] = "max positions"
            self.logger.risk(
                "BLOCKED", f"{symbol}: new {side.value} refused, position limit reached",
                open=open_count, max=self.config.risk.max_positions,
            )
            return None

        contract = self.registry.resolve(symbol)
        requested = decision.leverage or self.config.risk.default_leverage
        leverage = self.client.clamp_leverage(requested, contract, self.config.risk.max_leverage)
        if leverage != requested:
            self.logger.risk(
                "WARNING", f"{symbol}: leverage clamped",
                requested=requested, applied=leverage,
                contract_min=contract.leverage_min, contract_max=contract.leverage_max,
                max_leverage=self.config.risk.max_leverage,
            )

        price = indicators.price
        try:
            plan = self.engine.compute_initial_stop(symbol, side, price, indicators.atr)
        except InsufficientStopDistanceError as e:
            report.skipped[symbol] = str(e)
            return None

        amount = decision.size or self.config.trading.default_order_amount
        quantity = self.client.calculate_quantity(amount, price, leverage, contract)
        if quantity <= 0:
            report.skipped[symbol] = "amount below contract minimum"
            self.logger.risk(
                "BLOCKED", f"{symbol}: order amount buys less than one contract step",
                amount=amount, price=price, leverage=leverage,
                multiplier=contract.size_multiplier, step=contract.size_precision,
                min_size=contract.size_min,
            )
            return None

        self.client.set_leverage(symbol, leverage)
        result = self.client.place_order(symbol, side.entry_order_side, quantity)
        if not result.success:
            report.errors[symbol] = result.error or "entry order rejected"
            self.logger.error(
                f"{symbol}: {side.value} entry of {quantity} @ ~{price} rejected: {result.error}"
            )
            return None

        entry_price, filled = self._entry_fill(symbol, side, quantity, result.price or price)
        plan = replace(plan, entry_price=entry_price,
                       stop_price=entry_price - side.sign * plan.distance)
        fee = self.client.estimate_fee(entry_price, filled, contract)
        self.store.record_trade(Trade(
            type=TradeType.OPEN,
            symbol=symbol,
            side=side,
            price=entry_price,
            quantity=filled,
            fee=fee,
            order_id=result.order_id,
            leverage=leverage,
        ))
        position = Position(
            symbol=symbol,
            side=side,
            quantity=filled,
            entry_price=entry_price,
            leverage=leverage,
            initial_risk=plan.distance,
            mark_price=price,
        )
        self.store.save_position(position)
        report.opened.append(symbol)
        self.logger.trade(
            "POSITION_OPENED", symbol, side.value, filled,
            price=entry_price, leverage=leverage, stop=f"{plan.stop_price:.6f}",
            order_id=result.order_id,
        )

        try:
            self.orders.protect(position, plan.stop_price, self.engine.compute_take_profit(plan))
        except TradingError as e:
            report.errors[symbol] = str(e)
            self.logger.panic(f"{symbol} opened without protection, next cycle retries: {e}")
            return position
        report.protected.append(symbol)
        return position

    def _entry_fill(self, symbol: str, side: Side, quantity: float,
                    fallback_price: float) -> Tuple[float, float]:
        """(entry_price, quantity) as the exchange reports them after the fill."""
        try:
            for remote in self.client.get_positions():
                if remote.symbol.upper() == symbol and remote.side is side and remote.entry_price > 0:
                    return remote.entry_price, remote.quantity
        except TradingError as e:
            self.logger.warning(f"{symbol}: fill not confirmed from positions: {e}")
        try:
            return self.client.get_ticker_price(symbol), quantity
        except TradingError as e:
            self.logger.warning(f"{symbol}: using decision price as entry: {e}")
            return fallback_price, quantity

    def close_position(self, position: Position, reason: CloseReason, price: float,
                       report: Optional[CycleReport] = None) -> bool:
        """
        Close a position at market and cancel its protective orders.

        Returns:
            True when the close order was accepted.
        """
        symbol = position.symbol
        with self.orders.position_lock(symbol):
            result = self.client.place_order(
                symbol, position.side.exit_order_side, position.quantity, reduce_only=True
            )
            if not result.success:
                if report is not None:
                    report.errors[symbol] = result.error or "close order rejected"
                self.logger.error(
                    f"{symbol}: close of {position.side.value} {position.quantity} rejected: {result.error}"
                )
                return False

            self.orders.cancel_all(position)
            contract = self.registry.resolve(symbol)
            exit_price = result.price or price
            _, fee, net = self._realized(position, exit_price, position.quantity, contract)
            self.store.record_trade(Trade(
                type=TradeType.CLOSE,
                symbol=symbol,
                side=position.side,
                price=exit_price,
                quantity=position.quantity,
                pnl=net,
                fee=fee,
                order_id=result.order_id,
                leverage=position.leverage,
            ))
            self._finalize_close(position, reason, exit_price, net, result.order_id, report)
            return True

    def close_all(self, reason: CloseReason, report: Optional[CycleReport] = None) -> int:
        """Close every local position; returns how many closed."""
        closed = 0
        for position in self.store.list_positions():
            try:
                price = self.client.get_ticker_price(position.symbol)
                if self.close_position(position, reason, price, report):
                    closed += 1
            except TradingError as e:
                if report is not None:
                    report.errors[position.symbol] = str(e)
                self.logger.panic(
                    f"{position.symbol}: {reason.value} close of {position.side.value} "
                    f"{position.quantity} failed: {e}"
                )
        if closed:
            self.logger.warning(f"Closed {closed} position(s): {reason.value}")
        return closed

    def _realized(self, position: Position, exit_price: float, quantity: float,
                  contract: Contract) -> Tuple[float, float, float]:
        """(gross, fees of both legs, net) for closing `quantity` at exit_price."""
        gross = self.client.calculate_pnl(
            position.entry_price, exit_price, quantity, position.side, contract
        )
        fee = (self.client.estimate_fee(position.entry_price, quantity, contract)
               + self.client.estimate_fee(exit_price, quantity, contract))
        return gross, fee, gross - fee

    def _finalize_close(self, position: Position, reason: CloseReason, exit_price: float,
                        pnl: float, order_id: Optional[str], report: Optional[CycleReport],
                        trigger_price: Optional[float] = None) -> None:
        margin = position.entry_price * position.quantity / max(1, position.leverage)
        contract = self.registry.cached(position.symbol)
        if contract is not None:
            margin *= contract.size_multiplier
        if reason is CloseReason.TAKE_PROFIT_TRIGGERED:
            self.orders.cancel_all(position)
        self.store.record_close_event(CloseEvent(
            symbol=position.symbol,
            side=position.side,
            close_reason=reason,
            close_price=exit_price,
            entry_price=position.entry_price,
            quantity=position.quantity,
            pnl=pnl,
            trigger_price=trigger_price,
            pnl_percent=pnl / margin * 100 if margin > 0 else None,
            trigger_order_id=order_id,
        ))
        self.store.delete_position(position.symbol)
        if report is not None:
            report.closed.append(position.symbol)
        self.logger.trade(
            "POSITION_CLOSED", position.symbol, position.side.value, position.quantity,
            price=exit_price, pnl=pnl, reason=reason.value,
        )
