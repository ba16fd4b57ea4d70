"""
Tests for DrawdownGuard state transitions, latching and peak persistence.
"""

import pytest

from perpguard.core.drawdown import DrawdownGuard, DrawdownState
from perpguard.errors import FatalConfigError
from perpguard.models import AccountSnapshot


@pytest.fixture
def guard():
    return DrawdownGuard(20, 30, 50)


def _at(guard, balance):
    return guard.evaluate(AccountSnapshot(balance=balance))


class TestStates:
    """Drawdown percent to state."""

    def test_thirty_percent_blocks_new_positions(self, guard):
        _at(guard, 1000)
        decision = _at(guard, 700)

        assert decision.state is DrawdownState.NO_NEW_POSITION
        assert decision.drawdown_percent == pytest.approx(30.0)
        assert not decision.allows_new_positions
        assert not decision.must_force_close

    @pytest.mark.parametrize("balance,state", [
        (1000, DrawdownState.NORMAL),
        (801, DrawdownState.NORMAL),
        (800, DrawdownState.WARNING),
        (701, DrawdownState.WARNING),
        (500, DrawdownState.FORCE_CLOSE),
    ])
    def test_thresholds(self, guard, balance, state):
        _at(guard, 1000)
        assert _at(guard, balance).state is state

    def test_warning_still_allows_new_positions(self, guard):
        _at(guard, 1000)
        assert _at(guard, 750).allows_new_positions

    def test_recovery_returns_to_normal(self, guard):
        _at(guard, 1000)
        _at(guard, 690)
        assert _at(guard, 950).state is DrawdownState.NORMAL

    def test_peak_only_rises(self, guard):
        _at(guard, 1000)
        _at(guard, 900)
        snapshot = AccountSnapshot(balance=1200)
        guard.evaluate(snapshot)
        assert guard.peak_balance == 1200
        assert snapshot.peak_balance == 1200
        assert _at(guard, 960).drawdown_percent == pytest.approx(20.0)


class TestForceCloseLatch:
    """FORCE_CLOSE holds until reset()."""

    def test_latched_after_recovery(self, guard):
        _at(guard, 1000)
        _at(guard, 400)
        assert _at(guard, 990).state is DrawdownState.FORCE_CLOSE

    def test_reset_clears_latch_and_lowers_peak(self, guard):
        _at(guard, 1000)
        _at(guard, 400)
        guard.reset(400)

        assert guard.state is DrawdownState.NORMAL
        assert guard.peak_balance == 400
        assert _at(guard, 400).state is DrawdownState.NORMAL


class TestConfiguration:
    """Threshold ordering and peak callbacks."""

    @pytest.mark.parametrize("thresholds", [(30, 20, 50), (20, 20, 50), (20, 30, 30), (0, 30, 50)])
    def test_thresholds_must_ascend(self, thresholds):
        with pytest.raises(FatalConfigError):
            DrawdownGuard(*thresholds)

    def test_peak_change_callback(self):
        seen = []
        guard = DrawdownGuard(20, 30, 50, peak_balance=500, on_peak_change=seen.append)
        _at(guard, 400)
        _at(guard, 600)
        _at(guard, 550)
        guard.reset(300)
        assert seen == [600, 300]

    def test_restored_peak_used_immediately(self):
        guard = DrawdownGuard(20, 30, 50, peak_balance=1000)
        assert _at(guard, 700).state is DrawdownState.NO_NEW_POSITION

    def test_from_config(self, risk_config):
        guard = DrawdownGuard.from_config(risk_config, peak_balance=100)
        assert (guard.warning_percent, guard.no_new_position_percent,
                guard.force_close_percent) == (20.0, 30.0, 50.0)
        assert guard.peak_balance == 100
