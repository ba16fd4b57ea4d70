"""
PnL auditor.

Recomputes realized PnL and fees for every recorded close using the current
contract multipliers, and corrects records that drifted (e.g. closes booked
while the registry was on a fallback multiplier). Corrections go through
TradeStore.correct_trade_pnl(), the only path that rewrites trade history.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..data.store import TradeStore
from ..errors import TradingError
from ..exchanges.base import ExchangeClient
from ..models import Trade, TradeType
from ..utils.logger import get_logger
from .contracts import ContractRegistry


PNL_TOLERANCE = 0.5
FEE_TOLERANCE = 0.1


@dataclass
class AuditCorrection:
    """Before/after values for one corrected close."""
    trade_id: int
    symbol: str
    old_pnl: Optional[float]
    new_pnl: float
    old_fee: float
    new_fee: float
    gross_pnl: float


@dataclass
class AuditReport:
    """Outcome of one audit pass."""
    checked: int = 0
    correct: int = 0
    skipped: int = 0
    corrections: List[AuditCorrection] = field(default_factory=list)
    total_net_pnl: float = 0.0
    dry_run: bool = False

    @property
    def fixed(self) -> int:
        return len(self.corrections)


class PnLAuditor:
    """
    Detects and corrects drift in historical trade PnL.

    Usage:
        auditor = PnLAuditor(client, store, registry)
        report = auditor.audit(dry_run=True)
    """

    def __init__(self, client: ExchangeClient, store: TradeStore, registry: ContractRegistry,
                 pnl_tolerance: float = PNL_TOLERANCE, fee_tolerance: float = FEE_TOLERANCE):
        self.client = client
        self.store = store
        self.registry = registry
        self.pnl_tolerance = pnl_tolerance
        self.fee_tolerance = fee_tolerance
        self.logger = get_logger()

    def expected_values(self, open_trade: Trade, close_trade: Trade) -> tuple[float, float, float]:
        """
        (gross_pnl, total_fee, net_pnl) for a close paired with its open.

        Uses the close's quantity, since partial closes share one open fill.
        """
        contract = self.registry.resolve(close_trade.symbol)
        gross = self.client.calculate_pnl(
            open_trade.price, close_trade.price, close_trade.quantity, close_trade.side, contract
        )
        fees = (self.client.estimate_fee(open_trade.price, close_trade.quantity, contract)
                + self.client.estimate_fee(close_trade.price, close_trade.quantity, contract))
        return gross, fees, gross - fees

    def audit(self, symbol: Optional[str] = None, dry_run: bool = False) -> AuditReport:
        """
        Check every close trade and correct those outside tolerance.

        Args:
            symbol: Limit the audit to one symbol
            dry_run: Report drift without writing corrections
        """
        report = AuditReport(dry_run=dry_run)
        closes = self.store.list_trades(symbol=symbol, trade_type=TradeType.CLOSE)

        for close_trade in closes:
            report.checked += 1
            open_trade = self.store.latest_open_trade_before(close_trade.symbol, close_trade.timestamp)
            if open_trade is None:
                report.skipped += 1
                self.logger.warning(
                    f"Audit: no open trade before close #{close_trade.id} "
                    f"({close_trade.symbol} @ {close_trade.timestamp})"
                )
                continue

            try:
                gross, fees, net = self.expected_values(open_trade, close_trade)
            except TradingError as e:
                report.skipped += 1
                self.logger.error(f"Audit: close #{close_trade.id} not recomputable: {e}")
                continue

            recorded_pnl = close_trade.pnl
            pnl_drift = abs((recorded_pnl if recorded_pnl is not None else float("inf")) - net)
            fee_drift = abs((close_trade.fee or 0.0) - fees)

            if pnl_drift <= self.pnl_tolerance and fee_drift <= self.fee_tolerance:
                report.correct += 1
                report.total_net_pnl += recorded_pnl
                continue

            correction = AuditCorrection(
                trade_id=close_trade.id,
                symbol=close_trade.symbol,
                old_pnl=recorded_pnl,
                new_pnl=net,
                old_fee=close_trade.fee or 0.0,
                new_fee=fees,
                gross_pnl=gross,
            )
            report.corrections.append(correction)
            report.total_net_pnl += net

            self.logger.reconcile(
                "PNL_DRIFT" if dry_run else "PNL_CORRECTED", close_trade.symbol,
                trade_id=close_trade.id,
                entry=open_trade.price, exit=close_trade.price, qty=close_trade.quantity,
                pnl_before=recorded_pnl, pnl_after=f"{net:.4f}",
                fee_before=f"{correction.old_fee:.4f}", fee_after=f"{fees:.4f}",
            )
            if not dry_run:
                self.store.correct_trade_pnl(close_trade.id, net, fees)

        self.logger.info(
            f"Audit{' (dry run)' if dry_run else ''}: checked={report.checked} "
            f"correct={report.correct} fixed={report.fixed} skipped={report.skipped} "
            f"net_pnl={report.total_net_pnl:.4f}"
        )
        return report
