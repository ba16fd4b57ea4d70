"""
Tests for ProtectiveOrderManager: placement, stop moves with restore on
failure, resizing and cancellation.
"""

import threading

import pytest

from perpguard.core.protective_orders import ProtectiveOrderManager
from perpguard.models import OrderKind, OrderStatus, Position, Side


@pytest.fixture
def orders(client, store):
    return ProtectiveOrderManager(client, store)


@pytest.fixture
def position(store):
    position = Position(symbol="BTC", side=Side.LONG, quantity=1.0, entry_price=100, leverage=3)
    store.save_position(position)
    return position


def _stops(client):
    return [o.trigger_price for o in client.active_conditional("BTC", OrderKind.STOP_LOSS)]


class TestProtect:
    """Initial placement."""

    def test_places_both_orders(self, client, store, orders, position):
        orders.protect(position, 95.0, 110.0)

        assert _stops(client) == [95.0]
        assert [o.trigger_price for o in client.active_conditional("BTC", OrderKind.TAKE_PROFIT)] == [110.0]
        saved = store.get_position("BTC")
        assert saved.stop_loss_order_ref == position.stop_loss_order_ref
        assert {o.id for o in store.active_orders("BTC")} == set(client.conditional)

    def test_second_call_places_nothing(self, client, orders, position):
        orders.protect(position, 95.0, 110.0)
        orders.protect(position, 96.0, 111.0)
        assert len(client.conditional) == 2
        assert position.stop_loss_price == 95.0

    def test_concurrent_protect_single_stop(self, client, orders, position):
        threads = [threading.Thread(target=orders.protect, args=(position, 95.0, 110.0))
                   for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(client.active_conditional("BTC", OrderKind.STOP_LOSS)) == 1
        assert len(client.active_conditional("BTC", OrderKind.TAKE_PROFIT)) == 1


class TestMoveStop:
    """Replacing the stop with a tighter one."""

    def test_tighter_stop_replaces_old(self, client, store, orders, position):
        orders.protect(position, 95.0, 110.0)
        old_ref = position.stop_loss_order_ref

        assert orders.move_stop(position, 99.0, reason="test")

        assert _stops(client) == [99.0]
        assert store.get_conditional_order(old_ref).status is OrderStatus.CANCELLED
        assert store.get_position("BTC").stop_loss_price == 99.0

    def test_looser_stop_rejected(self, client, orders, position):
        orders.protect(position, 95.0, 110.0)
        assert not orders.move_stop(position, 94.0)
        assert client.cancelled == []

    def test_rejected_placement_restores_old_stop(self, client, store, orders, position):
        orders.protect(position, 95.0, 110.0)
        client.reject_conditional = 1

        assert not orders.move_stop(position, 99.0)

        assert _stops(client) == [95.0]
        assert position.stop_loss_price == 95.0
        assert store.get_position("BTC").stop_loss_order_ref == position.stop_loss_order_ref

    def test_failed_restore_leaves_position_unprotected(self, client, store, orders, position):
        orders.protect(position, 95.0, 110.0)
        client.reject_conditional = 2

        assert not orders.move_stop(position, 99.0)

        assert _stops(client) == []
        assert store.get_position("BTC").stop_loss_order_ref is None


class TestResizeAndCancel:
    """Quantity changes and teardown."""

    def test_resize_replaces_orders_with_new_quantity(self, client, orders, position):
        orders.protect(position, 95.0, 110.0)
        position.quantity = 0.4

        orders.resize(position)

        assert len(client.conditional) == 2
        assert {o.quantity for o in client.conditional.values()} == {0.4}
        assert position.stop_loss_price == 95.0

    def test_resize_skipped_when_orders_close_whole_position(self, client, orders, position):
        client.PROTECTIVE_ORDERS_TRACK_SIZE = False
        orders.protect(position, 95.0, 110.0)
        refs = set(client.conditional)
        position.quantity = 0.4

        orders.resize(position)

        assert set(client.conditional) == refs
        assert client.cancelled == []

    def test_cancel_all(self, client, store, orders, position):
        orders.protect(position, 95.0, 110.0)

        orders.cancel_all(position)

        assert client.conditional == {}
        assert store.active_orders("BTC") == []
        assert position.stop_loss_order_ref is None and position.take_profit_order_ref is None
