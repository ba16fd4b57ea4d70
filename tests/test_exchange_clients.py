"""
Tests for the Bybit (pybit) and Gate (ccxt) clients against mocked
transports: payload parsing, order construction and error translation.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import ccxt
import pytest
import requests
from pybit.exceptions import FailedRequestError, InvalidRequestError

from perpguard.config.config import ExchangeConfig
from perpguard.errors import (
    ExchangeRequestError,
    FatalConfigError,
    InvalidContractError,
    InvalidResponseError,
    TransientNetworkError,
)
from perpguard.exchanges.bybit_linear import BybitLinearClient
from perpguard.exchanges.factory import create_exchange_client
from perpguard.exchanges.gate_inverse import GateInverseClient
from perpguard.models import ContractType, OrderKind, Side


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("perpguard.exchanges.retry.time.sleep") as mocked:
        yield mocked


def _ok(result):
    return {"retCode": 0, "retMsg": "OK", "result": result}


def _invalid(code, message="rejected"):
    return InvalidRequestError(request="req", message=message, status_code=code,
                               time="0", resp_headers={})


# ==================== Bybit ====================


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def bybit(session):
    return BybitLinearClient(session=session)


class TestBybitReads:
    """Parsing of V5 payloads."""

    def test_contract_info(self, bybit, session):
        session.get_instruments_info.return_value = _ok({"list": [{
            "symbol": "BTCUSDT",
            "contractType": "LinearPerpetual",
            "lotSizeFilter": {"qtyStep": "0.001", "minOrderQty": "0.001", "maxOrderQty": "100"},
            "leverageFilter": {"minLeverage": "1", "maxLeverage": "100.00"},
        }]})

        contract = bybit.get_contract_info("BTCUSDT")

        assert contract.symbol == "BTC"
        assert contract.contract_type is ContractType.LINEAR
        assert contract.size_multiplier == 1.0
        assert contract.size_precision == 0.001
        assert contract.leverage_max == 100
        session.get_instruments_info.assert_called_once_with(category="linear", symbol="BTCUSDT")

    def test_wrong_contract_type(self, bybit, session):
        session.get_instruments_info.return_value = _ok({"list": [{
            "symbol": "BTCUSD", "contractType": "InversePerpetual",
            "lotSizeFilter": {"qtyStep": "1"},
        }]})
        with pytest.raises(InvalidContractError):
            bybit.get_contract_info("BTCUSD")

    def test_unusable_step(self, bybit, session):
        session.get_instruments_info.return_value = _ok({"list": [{
            "symbol": "BTCUSDT", "lotSizeFilter": {"qtyStep": ""},
        }]})
        with pytest.raises(InvalidResponseError):
            bybit.get_contract_info("BTCUSDT")

    def test_positions_skip_empty(self, bybit, session):
        session.get_positions.return_value = _ok({"list": [
            {"symbol": "BTCUSDT", "side": "Sell", "size": "0.5", "avgPrice": "65000",
             "markPrice": "64000", "leverage": "5", "unrealisedPnl": "500", "liqPrice": ""},
            {"symbol": "ETHUSDT", "side": "", "size": "0", "avgPrice": "0"},
        ]})

        positions = bybit.get_positions()

        assert len(positions) == 1
        assert positions[0].symbol == "BTC"
        assert positions[0].side is Side.SHORT
        assert positions[0].quantity == 0.5
        assert positions[0].leverage == 5
        assert positions[0].liquidation_price is None

    def test_missing_result_is_invalid_response(self, bybit, session):
        session.get_wallet_balance.return_value = {"retCode": 0}
        with pytest.raises(InvalidResponseError):
            bybit.get_account()
        assert session.get_wallet_balance.call_count == 1

    def test_conditional_order_kinds(self, bybit, session):
        session.get_open_orders.return_value = _ok({"list": [
            {"orderId": "a", "side": "Sell", "triggerPrice": "95", "qty": "1",
             "orderLinkId": "pg-sl-abc", "createdTime": "1700000000000"},
            {"orderId": "b", "side": "Sell", "triggerPrice": "110", "qty": "1",
             "orderLinkId": "", "triggerDirection": 1, "createdTime": "1700000000000"},
            {"orderId": "c", "side": "Buy", "triggerPrice": "0", "qty": "1"},
        ]})

        orders = bybit.get_open_conditional_orders("BTC")

        assert [(o.id, o.kind, o.side) for o in orders] == [
            ("a", OrderKind.STOP_LOSS, Side.LONG),
            ("b", OrderKind.TAKE_PROFIT, Side.LONG),
        ]


class TestBybitOrders:
    """Order construction and error translation."""

    def test_long_stop_triggers_on_fall(self, bybit, session):
        session.place_order.return_value = _ok({"orderId": "o-1"})

        result = bybit.place_conditional_order("BTC", OrderKind.STOP_LOSS, Side.LONG, 95.5, 0.2)

        kwargs = session.place_order.call_args.kwargs
        assert kwargs["side"] == "Sell"
        assert kwargs["triggerDirection"] == 2
        assert kwargs["reduceOnly"] is True
        assert kwargs["triggerPrice"] == "95.5"
        assert kwargs["orderLinkId"].startswith("pg-sl-")
        assert result.order_id == "o-1"

    def test_short_take_profit_triggers_on_fall(self, bybit, session):
        session.place_order.return_value = _ok({"orderId": "o-2"})
        bybit.place_conditional_order("BTC", OrderKind.TAKE_PROFIT, Side.SHORT, 90, 0.2)
        kwargs = session.place_order.call_args.kwargs
        assert kwargs["side"] == "Buy"
        assert kwargs["triggerDirection"] == 2

    def test_rejection_carries_code_and_is_not_retried(self, bybit, session):
        session.place_order.side_effect = _invalid(110007, "ab not enough for new order")

        with pytest.raises(ExchangeRequestError) as exc:
            bybit.place_order("BTC", "buy", 0.1)

        assert exc.value.code == 110007
        assert session.place_order.call_count == 1

    def test_transient_code_retried(self, bybit, session, no_sleep):
        session.get_positions.side_effect = [_invalid(10006, "too many visits"), _ok({"list": []})]
        assert bybit.get_positions() == []
        assert session.get_positions.call_count == 2
        no_sleep.assert_called_once()

    def test_http_5xx_is_transient(self, bybit, session):
        session.get_tickers.side_effect = FailedRequestError(
            request="req", message="bad gateway", status_code=502, time="0", resp_headers={}
        )
        with pytest.raises(TransientNetworkError):
            bybit.get_ticker_price("BTC")
        assert session.get_tickers.call_count == 3

    def test_connection_error_is_transient(self, bybit, session):
        session.get_tickers.side_effect = requests.exceptions.ConnectionError("reset")
        with pytest.raises(TransientNetworkError):
            bybit.get_ticker_price("BTC")

    def test_cancel_missing_order(self, bybit, session):
        session.cancel_order.side_effect = _invalid(110001, "order not exists")
        assert bybit.cancel_order("BTC", "gone") is False

    def test_leverage_not_modified_is_success(self, bybit, session):
        session.set_leverage.side_effect = _invalid(110043, "leverage not modified")
        assert bybit.set_leverage("BTC", 5) is True


# ==================== Gate ====================


@pytest.fixture
def exchange():
    return MagicMock()


@pytest.fixture
def gate(exchange):
    return GateInverseClient(exchange=exchange)


class TestGateReads:
    """Contract metadata and positions in contract units."""

    def test_contract_info(self, gate, exchange):
        exchange.public_futures_get_settle_contracts_contract.return_value = {
            "name": "BTC_USDT", "quanto_multiplier": "0.0001", "leverage_min": "1",
            "leverage_max": "100", "order_size_min": 1, "order_size_max": 1000000,
        }

        contract = gate.get_contract_info("BTC_USDT")

        assert contract.contract_type is ContractType.INVERSE
        assert contract.size_multiplier == 0.0001
        assert contract.size_precision == 1.0
        assert contract.symbol == "BTC"
        exchange.public_futures_get_settle_contracts_contract.assert_called_once_with(
            {"settle": "usdt", "contract": "BTC_USDT"}
        )

    @pytest.mark.parametrize("payload", [{"name": "BTC_USDT"}, {"quanto_multiplier": "0"},
                                         {"quanto_multiplier": "abc"}, None])
    def test_bad_multiplier(self, gate, exchange, payload):
        exchange.public_futures_get_settle_contracts_contract.return_value = payload
        with pytest.raises(InvalidResponseError):
            gate.get_contract_info("BTC_USDT")

    def test_positions(self, gate, exchange):
        exchange.fetch_positions.return_value = [
            {"symbol": "BTC/USDT:USDT", "contracts": 10, "side": "short", "entryPrice": 60000,
             "markPrice": 59000, "leverage": 0, "info": {"contract": "BTC_USDT"}},
            {"symbol": "ETH/USDT:USDT", "contracts": 0, "side": "long"},
        ]

        positions = gate.get_positions()

        assert len(positions) == 1
        assert (positions[0].symbol, positions[0].side, positions[0].quantity) == ("BTC", Side.SHORT, 10)
        assert positions[0].leverage == 1

    def test_open_price_orders(self, gate, exchange):
        exchange.private_futures_get_settle_price_orders.return_value = [{
            "id": 77, "order_type": "close-long-position", "create_time": 1700000000,
            "initial": {"contract": "BTC_USDT", "size": 0, "text": "t-pg-sl"},
            "trigger": {"price": "58000", "rule": 2},
        }]

        orders = gate.get_open_conditional_orders("BTC")

        assert len(orders) == 1
        assert orders[0].id == "77"
        assert orders[0].kind is OrderKind.STOP_LOSS
        assert orders[0].side is Side.LONG
        assert orders[0].trigger_price == 58000


class TestGateOrders:
    """Order construction and ccxt error translation."""

    def test_market_order_in_whole_contracts(self, gate, exchange):
        exchange.create_order.return_value = {"id": "9", "average": 60100}

        result = gate.place_order("BTC", "sell", 10.0, reduce_only=True)

        exchange.create_order.assert_called_once_with(
            "BTC/USDT:USDT", "market", "sell", 10, None, {"reduceOnly": True}
        )
        assert result.price == 60100
        assert result.quantity == 10

    def test_stop_closes_whole_position(self, gate, exchange):
        exchange.private_futures_post_settle_price_orders.return_value = {"id": 5}

        gate.place_conditional_order("BTC", OrderKind.STOP_LOSS, Side.LONG, 58000, 10)

        body = exchange.private_futures_post_settle_price_orders.call_args.args[0]
        assert body["initial"]["close"] is True
        assert body["initial"]["size"] == 0
        assert body["trigger"]["rule"] == 2
        assert body["trigger"]["price"] == "58000"

    def test_short_stop_fires_on_rise(self, gate, exchange):
        exchange.private_futures_post_settle_price_orders.return_value = {"id": 6}
        gate.place_conditional_order("BTC", OrderKind.STOP_LOSS, Side.SHORT, 62000, 10)
        body = exchange.private_futures_post_settle_price_orders.call_args.args[0]
        assert body["trigger"]["rule"] == 1

    def test_network_error_retried_then_raised(self, gate, exchange):
        exchange.fetch_ticker.side_effect = ccxt.NetworkError("timeout")
        with pytest.raises(TransientNetworkError):
            gate.get_ticker_price("BTC")
        assert exchange.fetch_ticker.call_count == 3

    def test_exchange_error_not_retried(self, gate, exchange):
        exchange.create_order.side_effect = ccxt.InsufficientFunds("margin")
        with pytest.raises(ExchangeRequestError):
            gate.place_order("BTC", "buy", 5)
        assert exchange.create_order.call_count == 1

    def test_cancel_missing_order(self, gate, exchange):
        exchange.private_futures_delete_settle_price_orders_order_id.side_effect = ccxt.OrderNotFound("gone")
        assert gate.cancel_order("BTC", "5") is False

    def test_no_resize_needed(self, gate):
        assert gate.PROTECTIVE_ORDERS_TRACK_SIZE is False


# ==================== Factory ====================


class TestFactory:
    """Client selection from configuration."""

    def test_bybit(self):
        config = SimpleNamespace(exchange=ExchangeConfig(bybit_api_key="k", bybit_api_secret="s"))
        with patch("perpguard.exchanges.bybit_linear.HTTP") as http:
            client = create_exchange_client(config)
        assert isinstance(client, BybitLinearClient)
        assert http.call_args.kwargs["demo"] is True

    def test_gate(self):
        config = SimpleNamespace(exchange=ExchangeConfig(
            name="gate", gate_api_key="k", gate_api_secret="s", taker_fee_rate=0.0004,
        ))
        with patch("perpguard.exchanges.gate_inverse.ccxt.gate") as gate_cls:
            client = create_exchange_client(config)
        assert isinstance(client, GateInverseClient)
        assert client.taker_fee_rate == 0.0004
        assert gate_cls.call_args.args[0]["apiKey"] == "k"

    @pytest.mark.parametrize("exchange_config", [
        ExchangeConfig(),
        ExchangeConfig(name="gate", bybit_api_key="k", bybit_api_secret="s"),
        ExchangeConfig(name="kraken", bybit_api_key="k", bybit_api_secret="s"),
    ])
    def test_rejected(self, exchange_config):
        with pytest.raises(FatalConfigError):
            create_exchange_client(SimpleNamespace(exchange=exchange_config))
