"""
Tests for PnLAuditor: drift detection, tolerances, dry run and corrections.
"""

from datetime import timedelta

import pytest

from perpguard.core.pnl_auditor import PnLAuditor
from perpguard.models import ContractType, Side, Trade, TradeType
from perpguard.core.contracts import ContractRegistry
from perpguard.utils.helpers import utc_now


@pytest.fixture
def auditor(client, store, registry):
    return PnLAuditor(client, store, registry)


def _round_trip(store, close_pnl, close_fee, symbol="BTC", entry=100.0, exit_=110.0,
                quantity=1.0, side=Side.LONG):
    opened = utc_now() - timedelta(hours=2)
    store.record_trade(Trade(
        type=TradeType.OPEN, symbol=symbol, side=side, price=entry, quantity=quantity,
        fee=entry * quantity * 0.0005, timestamp=opened,
    ))
    close = Trade(
        type=TradeType.CLOSE, symbol=symbol, side=side, price=exit_, quantity=quantity,
        pnl=close_pnl, fee=close_fee, timestamp=opened + timedelta(hours=1),
    )
    store.record_trade(close)
    return close


# gross 10, fees 0.05 + 0.055
EXPECTED_FEE = 0.105
EXPECTED_NET = 10.0 - EXPECTED_FEE


class TestAudit:
    """Recompute and correct close trades."""

    def test_drifted_record_corrected(self, store, auditor):
        close = _round_trip(store, close_pnl=9.0, close_fee=0.0)

        report = auditor.audit()

        assert report.checked == 1
        assert report.fixed == 1
        correction = report.corrections[0]
        assert correction.trade_id == close.id
        assert correction.old_pnl == 9.0
        assert correction.new_pnl == pytest.approx(EXPECTED_NET)
        assert correction.gross_pnl == pytest.approx(10.0)

        stored = store.list_trades("BTC", TradeType.CLOSE)[0]
        assert stored.pnl == pytest.approx(EXPECTED_NET)
        assert stored.fee == pytest.approx(EXPECTED_FEE)

    def test_within_tolerance_left_alone(self, store, auditor):
        _round_trip(store, close_pnl=EXPECTED_NET + 0.4, close_fee=EXPECTED_FEE + 0.05)

        report = auditor.audit()

        assert report.correct == 1
        assert report.fixed == 0
        assert store.list_trades("BTC", TradeType.CLOSE)[0].pnl == pytest.approx(EXPECTED_NET + 0.4)

    def test_fee_drift_alone_triggers_correction(self, store, auditor):
        _round_trip(store, close_pnl=EXPECTED_NET, close_fee=0.5)
        assert auditor.audit().fixed == 1

    def test_dry_run_writes_nothing(self, store, auditor):
        _round_trip(store, close_pnl=1.0, close_fee=0.0)

        report = auditor.audit(dry_run=True)

        assert report.dry_run
        assert report.fixed == 1
        assert store.list_trades("BTC", TradeType.CLOSE)[0].pnl == 1.0

    def test_missing_pnl_corrected(self, store, auditor):
        _round_trip(store, close_pnl=None, close_fee=0.0)
        assert auditor.audit().fixed == 1

    def test_close_without_open_skipped(self, store, auditor):
        store.record_trade(Trade(
            type=TradeType.CLOSE, symbol="BTC", side=Side.LONG, price=110, quantity=1, pnl=5,
        ))
        report = auditor.audit()
        assert report.skipped == 1
        assert report.fixed == 0

    def test_second_audit_finds_nothing(self, store, auditor):
        _round_trip(store, close_pnl=0.0, close_fee=0.0)
        auditor.audit()
        report = auditor.audit()
        assert report.fixed == 0
        assert report.correct == 1
        assert report.total_net_pnl == pytest.approx(EXPECTED_NET)

    def test_symbol_filter(self, store, auditor):
        _round_trip(store, close_pnl=0.0, close_fee=0.0, symbol="BTC")
        _round_trip(store, close_pnl=0.0, close_fee=0.0, symbol="ETH")
        report = auditor.audit(symbol="ETH")
        assert report.checked == 1


class TestInverseAudit:
    """Inverse contracts use the multiplier for both PnL and fees."""

    def test_inverse_close_recomputed(self, make_client, store):
        client = make_client(ContractType.INVERSE)
        client.add_contract("BTC", multiplier=0.0001, step=1)
        auditor = PnLAuditor(client, store, ContractRegistry(client))
        # Booked as if linear with multiplier 1: far off
        _round_trip(store, close_pnl=10000.0, close_fee=0.0, entry=50000, exit_=55000, quantity=10)

        report = auditor.audit()

        gross = 10 * 0.0001 * 5000 * 50000 / 55000
        fees = 0.0001 * 10 * 0.0005 * (50000 + 55000)
        assert report.corrections[0].new_pnl == pytest.approx(gross - fees)
