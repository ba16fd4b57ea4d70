"""
Tests for Application lifecycle: startup validation, wiring, the loop and
shutdown.
"""

from unittest.mock import MagicMock

import pytest

from perpguard.config.config import Config
from perpguard.core.application import Application
from perpguard.core.interfaces import Action, Decision, Indicators
from perpguard.data.store import TradeStore
from perpguard.errors import FatalConfigError
from perpguard.models import Side


@pytest.fixture
def env(clean_env):
    clean_env.setenv("BYBIT_API_KEY", "key")
    clean_env.setenv("BYBIT_API_SECRET", "secret")
    clean_env.setenv("TRADING_SYMBOLS", "BTC")
    clean_env.setenv("TRADING_INTERVAL_MINUTES", "0.0001")
    return clean_env


@pytest.fixture
def app(env, client):
    client.prices["BTC"] = 100.0
    feed = MagicMock()
    feed.get_indicators.return_value = Indicators(price=100.0, atr=1.0)
    decide = MagicMock(return_value=Decision(Action.HOLD))
    application = Application(feed, decide, config=Config(), client=client,
                              store=TradeStore(":memory:"))
    yield application
    application.stop()
    application.close()


class TestStartup:
    """initialize() wiring and startup reconciliation."""

    def test_startup_reconciles_exchange_positions(self, app, client):
        client.open_remote("BTC", Side.LONG, 0.2, entry_price=100)

        report = app.initialize()

        assert report.inserted == ["BTC"]
        assert app.is_initialized
        assert app.store.get_position("BTC").quantity == 0.2
        assert app.registry.cached("BTC") is not None

    def test_peak_restored_from_store(self, app):
        app.store.set_peak_balance(2000)
        app.initialize()
        assert app.guard.peak_balance == 2000

    def test_invalid_config_aborts(self, clean_env, client):
        application = Application(MagicMock(), MagicMock(), config=Config(), client=client,
                                  store=TradeStore(":memory:"))
        with pytest.raises(FatalConfigError):
            application.initialize()
        assert application.get_status().error.startswith("Invalid configuration")
        application.close()

    def test_run_cycle_requires_initialize(self, app):
        with pytest.raises(RuntimeError):
            app.run_cycle()


class TestLoop:
    """run(), stop() and status."""

    def test_run_bounded_cycles(self, app):
        app.run(max_cycles=2)

        status = app.get_status().to_dict()
        assert status["cycles"] == 2
        assert status["exchange"] == "bybit"
        assert status["contract_type"] == "linear"
        assert status["drawdown_state"] == "normal"
        assert not app.is_running
        assert app.store.get_peak_balance() == 1000
        assert app.decide.call_count == 2

    def test_stop_runs_callbacks_once(self, app):
        callback = MagicMock()
        app.on_shutdown(callback)

        app.stop()
        app.stop()

        callback.assert_called_once()

    def test_stop_ends_loop_after_current_cycle(self, app):
        app.initialize()
        original = app.run_cycle

        def cycle_then_stop():
            report = original()
            app.stop()
            return report

        app.run_cycle = cycle_then_stop
        app.run()

        assert app.get_status().cycles == 1
