"""
Core trading logic modules.

Contract registry, risk rules, drawdown protection, protective orders,
reconciliation, PnL audit, the trading cycle and the application lifecycle.
"""

from .application import Application, ApplicationStatus
from .contracts import ContractRegistry
from .drawdown import DrawdownDecision, DrawdownGuard, DrawdownState
from .interfaces import Action, Decision, DecisionFunction, Indicators, MarketDataFeed, MarketSnapshot
from .order_monitor import ConditionalOrderMonitor, MonitorReport
from .pnl_auditor import AuditCorrection, AuditReport, PnLAuditor
from .protective_orders import ProtectiveOrderManager
from .reconciler import PositionReconciler, ReconcileReport
from .risk_engine import RiskEngine, StageTrigger, StopLossPlan, is_better_stop
from .trading_cycle import CycleReport, TradingCycle

__all__ = [
    # Application Lifecycle
    "Application",
    "ApplicationStatus",
    # Contracts
    "ContractRegistry",
    # Drawdown
    "DrawdownGuard",
    "DrawdownState",
    "DrawdownDecision",
    # Collaborators
    "Action",
    "Decision",
    "DecisionFunction",
    "Indicators",
    "MarketDataFeed",
    "MarketSnapshot",
    # Orders
    "ProtectiveOrderManager",
    "ConditionalOrderMonitor",
    "MonitorReport",
    # Reconciliation & Audit
    "PositionReconciler",
    "ReconcileReport",
    "PnLAuditor",
    "AuditReport",
    "AuditCorrection",
    # Risk
    "RiskEngine",
    "StopLossPlan",
    "StageTrigger",
    "is_better_stop",
    # Cycle
    "TradingCycle",
    "CycleReport",
]
