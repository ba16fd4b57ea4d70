"""
Application lifecycle manager.

Single entry point for:
- Configuration validation (FatalConfigError aborts startup)
- Component wiring in dependency order
- Startup reconciliation against the exchange
- The periodic trading loop
- Graceful shutdown on stop() or SIGINT/SIGTERM

Usage:
    from perpguard.core.application import Application

    with Application(feed=my_feed, decide=my_strategy) as app:
        app.run()
"""

import signal
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..config.config import Config, get_config
from ..data.store import TradeStore
from ..errors import FatalConfigError, TradingError
from ..exchanges.base import ExchangeClient
from ..exchanges.factory import create_exchange_client
from ..utils.logger import get_logger, setup_logger
from .contracts import ContractRegistry
from .drawdown import DrawdownGuard
from .interfaces import DecisionFunction, MarketDataFeed
from .order_monitor import ConditionalOrderMonitor
from .pnl_auditor import PnLAuditor
from .protective_orders import ProtectiveOrderManager
from .reconciler import PositionReconciler, ReconcileReport
from .risk_engine import RiskEngine
from .trading_cycle import CycleReport, TradingCycle


@dataclass
class ApplicationStatus:
    """Application status snapshot."""
    initialized: bool = False
    running: bool = False
    exchange: str = ""
    contract_type: str = ""
    symbols: List[str] = field(default_factory=list)
    cycles: int = 0
    drawdown_state: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "initialized": self.initialized,
            "running": self.running,
            "exchange": self.exchange,
            "contract_type": self.contract_type,
            "symbols": self.symbols,
            "cycles": self.cycles,
            "drawdown_state": self.drawdown_state,
            "error": self.error,
        }


class Application:
    """
    Central application lifecycle manager.

    Args:
        feed: Market-data collaborator
        decide: Decision collaborator
        config: Configuration instance (uses global if None)
        client: Exchange client (built by the factory if None)
        store: Trade store (opened from config if None)
    """

    def __init__(self, feed: MarketDataFeed, decide: DecisionFunction,
                 config: Config = None, client: ExchangeClient = None,
                 store: TradeStore = None):
        self.config = config or get_config()
        self.logger = get_logger()
        self.feed = feed
        self.decide = decide

        self.client = client
        self.store = store
        self.registry: Optional[ContractRegistry] = None
        self.guard: Optional[DrawdownGuard] = None
        self.engine: Optional[RiskEngine] = None
        self.orders: Optional[ProtectiveOrderManager] = None
        self.monitor: Optional[ConditionalOrderMonitor] = None
        self.reconciler: Optional[PositionReconciler] = None
        self.auditor: Optional[PnLAuditor] = None
        self.cycle: Optional[TradingCycle] = None

        self._initialized = False
        self._stop_event = threading.Event()
        self._running = False
        self._cycles = 0
        self._last_report: Optional[CycleReport] = None
        self._last_error: Optional[str] = None
        self._shutdown_callbacks: List[Callable] = []
        self._original_handlers = {}

    # ==================== Context Manager ====================

    def __enter__(self) -> "Application":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        self.close()
        return False

    # ==================== Lifecycle ====================

    def initialize(self) -> ReconcileReport:
        """
        Validate config, wire components and reconcile with the exchange.

        Order:
        1. Config validation
        2. Logger
        3. Store
        4. Exchange client
        5. Contract registry (preloaded)
        6. Drawdown guard (peak restored from the store)
        7. Risk engine, order manager, monitor, reconciler, auditor
        8. Startup reconciliation

        Raises:
            FatalConfigError: invalid configuration or credentials
        """
        try:
            self.config.require_valid()
        except FatalConfigError as e:
            self._last_error = str(e)
            raise

        setup_logger(self.config.log.log_dir, self.config.log.level)
        self.logger = get_logger()
        self.logger.info("Initializing application...")

        if self.store is None:
            self.store = TradeStore(self.config.store.db_path)
        if self.client is None:
            self.client = create_exchange_client(self.config)

        self.registry = ContractRegistry(self.client)
        loaded = self.registry.preload(self.config.trading.symbols)
        self.logger.info(
            f"Contracts: {loaded}/{len(self.config.trading.symbols)} loaded from "
            f"{self.config.exchange.name} ({self.client.get_contract_type().value})"
        )

        peak = self.store.get_peak_balance()
        self.guard = DrawdownGuard.from_config(
            self.config.risk, peak_balance=peak, on_peak_change=self.store.set_peak_balance
        )
        self.engine = RiskEngine(self.config.strategy_profile, self.config.risk)
        self.orders = ProtectiveOrderManager(self.client, self.store)
        self.monitor = ConditionalOrderMonitor(self.client, self.store, self.registry)
        self.reconciler = PositionReconciler(
            self.client, self.store, self.registry, policy=self.config.risk.reconcile_policy
        )
        self.auditor = PnLAuditor(self.client, self.store, self.registry)
        self.cycle = TradingCycle(
            client=self.client,
            store=self.store,
            registry=self.registry,
            engine=self.engine,
            guard=self.guard,
            orders=self.orders,
            monitor=self.monitor,
            reconciler=self.reconciler,
            feed=self.feed,
            decide=self.decide,
            config=self.config,
        )

        report = self.reconciler.reconcile()
        self.logger.info(
            f"Startup reconcile: {report.corrections} correction(s), "
            f"{len(report.needs_audit)} need audit"
        )

        self._register_signal_handlers()
        self._initialized = True
        self.logger.info(f"Application initialized: {self.config.summary()}")
        return report

    def run_cycle(self) -> CycleReport:
        """Run a single trading cycle."""
        if not self._initialized:
            raise RuntimeError("Application not initialized - call initialize() first")
        report = self.cycle.run_once()
        self._cycles += 1
        self._last_report = report
        return report

    def run(self, max_cycles: Optional[int] = None) -> None:
        """
        Run cycles every loop_interval_minutes until stop() is called.

        Cancellation is cooperative: stop() takes effect between cycles,
        never in the middle of order placement.
        """
        if not self._initialized:
            self.initialize()

        interval = self.config.trading.loop_interval_minutes * 60
        self._stop_event.clear()
        self._running = True
        self.logger.info(f"Trading loop started (interval {interval:.0f}s)")
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_cycle()
                except TradingError as e:
                    self._last_error = str(e)
                    self.logger.error(f"Cycle failed: {e}")
                if max_cycles is not None and self._cycles >= max_cycles:
                    break
                self._stop_event.wait(interval)
        finally:
            self._running = False
            self.logger.info(f"Trading loop stopped after {self._cycles} cycle(s)")

    def stop(self) -> None:
        """Request the loop to stop after the current cycle. Safe to call multiple times."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self.logger.info("Stopping application...")
        for callback in self._shutdown_callbacks:
            try:
                callback()
            except Exception as e:
                self.logger.warning(f"Shutdown callback error: {e}")

    def close(self) -> None:
        """Release the store and restore signal handlers."""
        self._restore_signal_handlers()
        if self.store is not None:
            self.store.close()
            self.store = None

    # ==================== Signal Handling ====================

    def _register_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            self.logger.debug("Not in main thread, signal handlers not registered")
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._original_handlers[signum] = signal.signal(signum, self._signal_handler)
        self.logger.debug("Signal handlers registered")

    def _restore_signal_handlers(self):
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()

    def _signal_handler(self, signum, frame):
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name} - stopping after current cycle")
        self.stop()

    # ==================== Callbacks & Status ====================

    def on_shutdown(self, callback: Callable) -> None:
        """Register a callback to be called on stop()."""
        self._shutdown_callbacks.append(callback)

    def get_status(self) -> ApplicationStatus:
        drawdown = self._last_report.drawdown if self._last_report else None
        return ApplicationStatus(
            initialized=self._initialized,
            running=self._running,
            exchange=self.config.exchange.name,
            contract_type=self.client.get_contract_type().value if self.client else "",
            symbols=list(self.config.trading.symbols),
            cycles=self._cycles,
            drawdown_state=drawdown.state.value if drawdown else None,
            error=self._last_error,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self._last_report
