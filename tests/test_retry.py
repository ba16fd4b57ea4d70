"""
Tests for the bounded retry decorator used on exchange reads.
"""

from unittest.mock import MagicMock, patch

import pytest

from perpguard.errors import ExchangeRequestError, InvalidResponseError, TransientNetworkError
from perpguard.exchanges.retry import backoff_delay, with_retry


@pytest.fixture
def sleep():
    with patch("perpguard.exchanges.retry.time.sleep") as mocked:
        yield mocked


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n) for n in (1, 2, 3)] == pytest.approx([0.3, 0.6, 1.2])
    assert backoff_delay(10) == 5.0


def test_succeeds_after_transient_failures(sleep):
    call = MagicMock(side_effect=[TransientNetworkError("reset"), TransientNetworkError("reset"), 42])
    call.__name__ = "get_positions"

    assert with_retry()(call)() == 42
    assert call.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.3, 0.6])


def test_gives_up_after_max_attempts(sleep):
    call = MagicMock(side_effect=TransientNetworkError("timeout"))
    call.__name__ = "get_account"

    with pytest.raises(TransientNetworkError):
        with_retry(max_attempts=3)(call)()
    assert call.call_count == 3
    assert sleep.call_count == 2


@pytest.mark.parametrize("error", [
    InvalidResponseError("no result"),
    ExchangeRequestError("bad symbol", code=10001),
])
def test_non_transient_errors_not_retried(sleep, error):
    call = MagicMock(side_effect=error)
    call.__name__ = "get_ticker_price"

    with pytest.raises(type(error)):
        with_retry()(call)()
    assert call.call_count == 1
    sleep.assert_not_called()
