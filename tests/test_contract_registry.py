"""
Tests for ContractRegistry: caching, fallback and single-flight resolution.
"""

import threading
import time

import pytest

from perpguard.core.contracts import ContractRegistry
from perpguard.errors import ExchangeRequestError, TransientNetworkError
from perpguard.models import Contract, ContractType


class TestResolve:
    """Cache and fallback behaviour."""

    def test_authoritative_contract_cached(self, client, registry):
        first = registry.resolve("btc")
        second = registry.resolve("BTC")

        assert first is second
        assert first.is_fallback is False
        assert client.contract_calls == ["BTCUSDT"]

    def test_fallback_cached_after_one_failed_call(self, client):
        client.contracts["SOLUSDT"] = TransientNetworkError("timeout")
        registry = ContractRegistry(client)

        first = registry.resolve("SOL")
        second = registry.resolve("SOL")

        assert first.is_fallback and second.is_fallback
        assert first.size_multiplier == client.FALLBACK_SIZE_MULTIPLIER
        assert client.contract_calls == ["SOLUSDT"]

    def test_fallback_uses_static_table(self, make_client):
        client = make_client(ContractType.INVERSE)
        client.contracts["BTCUSDT"] = ExchangeRequestError("contract not found", code=404)
        registry = ContractRegistry(client)

        contract = registry.resolve("BTC")

        assert contract.size_multiplier == 0.0001
        assert contract.contract_type is ContractType.INVERSE

    @pytest.mark.parametrize("multiplier", [0.0, -1.0, float("nan"), float("inf")])
    def test_unusable_multiplier_falls_back(self, client, multiplier):
        client.contracts["ETHUSDT"] = Contract(
            symbol="ETH", exchange_contract_id="ETHUSDT",
            contract_type=ContractType.LINEAR, size_multiplier=multiplier,
        )
        contract = ContractRegistry(client).resolve("ETH")

        assert contract.is_fallback
        assert contract.size_multiplier == 0.01

    def test_wrong_contract_type_falls_back(self, client):
        client.contracts["ETHUSDT"] = Contract(
            symbol="ETH", exchange_contract_id="ETHUSDT",
            contract_type=ContractType.INVERSE, size_multiplier=0.01,
        )
        contract = ContractRegistry(client).resolve("ETH")

        assert contract.is_fallback
        assert contract.contract_type is ContractType.LINEAR

    def test_invalidate_forces_refetch(self, client, registry):
        registry.resolve("BTC")
        registry.invalidate("BTC")
        registry.resolve("BTC")
        assert client.contract_calls == ["BTCUSDT", "BTCUSDT"]

    def test_invalidate_all(self, registry):
        registry.resolve("BTC")
        registry.resolve("ETH")
        registry.invalidate()
        assert registry.size == 0
        assert registry.cached("BTC") is None


class TestSingleFlight:
    """Concurrent first lookups share one network call."""

    def test_concurrent_resolution_calls_exchange_once(self, client):
        release = threading.Event()
        original = client.get_contract_info

        def slow_info(contract_id):
            release.wait(timeout=2)
            return original(contract_id)

        client.get_contract_info = slow_info
        registry = ContractRegistry(client)
        results = []

        threads = [threading.Thread(target=lambda: results.append(registry.resolve("BTC")))
                   for _ in range(8)]
        for t in threads:
            t.start()
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(timeout=5)

        assert len(results) == 8
        assert all(r is results[0] for r in results)
        assert client.contract_calls == ["BTCUSDT"]


class TestPreload:
    """Parallel warm-up."""

    def test_counts_authoritative_only(self, client):
        client.contracts["SOLUSDT"] = TransientNetworkError("down")
        registry = ContractRegistry(client)

        loaded = registry.preload(["BTC", "ETH", "SOL", "btc"])

        assert loaded == 2
        assert registry.size == 3
        assert registry.cached("SOL").is_fallback

    def test_empty(self, registry):
        assert registry.preload([]) == 0
