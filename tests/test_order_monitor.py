"""
Tests for ConditionalOrderMonitor: triggered and externally cancelled
protective orders.
"""

from datetime import timedelta

import pytest

from perpguard.core.order_monitor import ConditionalOrderMonitor
from perpguard.core.protective_orders import ProtectiveOrderManager
from perpguard.models import (
    CloseReason,
    OrderStatus,
    Position,
    PositionHistoryEntry,
    Side,
    TradeType,
)


@pytest.fixture
def orders(client, store):
    return ProtectiveOrderManager(client, store)


@pytest.fixture
def monitor(client, store, registry):
    return ConditionalOrderMonitor(client, store, registry)


@pytest.fixture
def protected(client, store, orders):
    """Long BTC 1 @ 100 with stop 95 and take-profit 110 on both sides."""
    client.open_remote("BTC", Side.LONG, 1.0, entry_price=100)
    position = Position(symbol="BTC", side=Side.LONG, quantity=1.0, entry_price=100, leverage=2)
    store.save_position(position)
    orders.protect(position, 95.0, 110.0)
    return position


class TestTriggered:
    """Order gone and position gone."""

    def test_stop_loss_fired(self, client, store, monitor, protected):
        client.trigger(protected.stop_loss_order_ref)

        report = monitor.poll()

        assert report.triggered == [protected.stop_loss_order_ref]
        assert report.cancelled == [protected.take_profit_order_ref]
        assert report.closed_symbols == ["BTC"]
        assert store.get_position("BTC") is None
        assert client.conditional == {}

        close = store.list_trades("BTC", TradeType.CLOSE)[0]
        assert close.price == 95.0
        assert close.fee == pytest.approx((100 + 95) * 0.0005)
        assert close.pnl == pytest.approx(-5.0 - (100 + 95) * 0.0005)

        event = store.list_close_events("BTC")[0]
        assert event.close_reason is CloseReason.STOP_LOSS_TRIGGERED
        assert event.trigger_price == 95.0
        assert event.trigger_order_id == protected.stop_loss_order_ref

        assert store.get_conditional_order(protected.stop_loss_order_ref).status is OrderStatus.TRIGGERED
        assert store.get_conditional_order(protected.take_profit_order_ref).status is OrderStatus.CANCELLED

    def test_take_profit_uses_exchange_exit_price(self, client, store, monitor, protected):
        client.trigger(protected.take_profit_order_ref)
        client.history.append(PositionHistoryEntry(
            symbol="BTC", side=Side.LONG, quantity=1, entry_price=100, exit_price=110.4,
            pnl=10.3, closed_at=protected.opened_at + timedelta(seconds=5),
        ))

        monitor.poll()

        event = store.list_close_events("BTC")[0]
        assert event.close_reason is CloseReason.TAKE_PROFIT_TRIGGERED
        assert event.close_price == 110.4
        assert event.pnl_percent == pytest.approx(event.pnl / 50.0 * 100)

    def test_poll_is_idempotent(self, client, store, monitor, protected):
        client.trigger(protected.stop_loss_order_ref)
        monitor.poll()

        second = monitor.poll()

        assert second.triggered == [] and second.cancelled == []
        assert len(store.list_trades("BTC", TradeType.CLOSE)) == 1

    def test_both_missing_picks_nearest_trigger(self, client, store, monitor, protected):
        client.conditional.clear()
        client.positions.clear()
        client.prices["BTC"] = 95.3

        report = monitor.poll()

        assert report.triggered == [protected.stop_loss_order_ref]
        assert store.list_close_events("BTC")[0].close_reason is CloseReason.STOP_LOSS_TRIGGERED


class TestCancelledExternally:
    """Order gone but position still open."""

    def test_reference_cleared_for_reprotection(self, client, store, monitor, protected):
        client.conditional.pop(protected.stop_loss_order_ref)

        report = monitor.poll()

        assert report.cancelled == [protected.stop_loss_order_ref]
        assert report.triggered == []
        local = store.get_position("BTC")
        assert local.stop_loss_order_ref is None
        assert local.stop_loss_price == 95.0
        assert local.take_profit_order_ref == protected.take_profit_order_ref
        assert store.list_trades("BTC", TradeType.CLOSE) == []

    def test_nothing_missing(self, monitor, protected):
        report = monitor.poll()
        assert report.triggered == [] and report.cancelled == []

    def test_no_active_orders_skips_exchange(self, client, monitor):
        client.get_positions = None
        assert monitor.poll().triggered == []
