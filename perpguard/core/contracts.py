"""
Contract registry.

Resolves per-symbol contract metadata once per session and shares it with
every component that does contract arithmetic. When the exchange cannot
provide usable metadata the registry falls back to the client's static
multiplier table and caches that too, so a failing endpoint costs one call
per symbol rather than one per lookup.

Concurrent first lookups of the same symbol coalesce onto a single in-flight
request; the registry lock only guards the dictionaries and is never held
while the exchange is being called.
"""

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
import threading
from typing import Dict, Iterable, Optional

from ..errors import (
    ExchangeRequestError,
    InvalidContractError,
    InvalidResponseError,
    TradingError,
    TransientNetworkError,
)
from ..exchanges.base import ExchangeClient
from ..models import Contract
from ..utils.helpers import is_positive_finite
from ..utils.logger import get_logger


# Failures that justify serving the static default instead of erroring
FALLBACK_ERRORS = (
    TransientNetworkError,
    InvalidResponseError,
    InvalidContractError,
    ExchangeRequestError,
)


class ContractRegistry:
    """
    Session cache of Contract objects keyed by base symbol.

    Usage:
        registry = ContractRegistry(client)
        registry.preload(["BTC", "ETH"])
        contract = registry.resolve("BTC")
    """

    def __init__(self, client: ExchangeClient, max_workers: int = 4):
        self._client = client
        self._max_workers = max_workers
        self._cache: Dict[str, Contract] = {}
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.logger = get_logger()

    def resolve(self, symbol: str) -> Contract:
        """
        Contract metadata for `symbol`, fetched at most once per session.

        Never raises for exchange failures: those produce a fallback contract
        (is_fallback=True) which is cached like an authoritative one.
        """
        key = symbol.upper()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            future = self._inflight.get(key)
            is_leader = future is None
            if is_leader:
                future = Future()
                self._inflight[key] = future

        if not is_leader:
            return future.result()

        try:
            contract = self._fetch(key)
        except Exception as e:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._cache[key] = contract
            self._inflight.pop(key, None)
        future.set_result(contract)
        return contract

    def _fetch(self, symbol: str) -> Contract:
        contract_id = self._client.normalize_contract(symbol)
        try:
            contract = self._client.get_contract_info(contract_id)
            if not is_positive_finite(contract.size_multiplier):
                raise InvalidContractError(
                    f"{contract_id}: multiplier {contract.size_multiplier!r} is not a positive number"
                )
            if contract.contract_type != self._client.get_contract_type():
                raise InvalidContractError(
                    f"{contract_id}: {contract.contract_type.value} contract on "
                    f"{self._client.get_contract_type().value} client"
                )
        except FALLBACK_ERRORS as e:
            fallback = self._client.fallback_contract(symbol)
            self.logger.warning(
                f"[CONTRACT:FALLBACK] symbol={symbol} | contract={contract_id} | "
                f"multiplier={fallback.size_multiplier} | reason={e}"
            )
            return fallback

        self.logger.debug(
            f"[CONTRACT:RESOLVED] symbol={symbol} | contract={contract_id} | "
            f"multiplier={contract.size_multiplier} | step={contract.size_precision}"
        )
        return contract

    def invalidate(self, symbol: Optional[str] = None) -> None:
        """Drop one cached contract, or all of them when symbol is None."""
        with self._lock:
            if symbol is None:
                self._cache.clear()
            else:
                self._cache.pop(symbol.upper(), None)

    def preload(self, symbols: Iterable[str]) -> int:
        """
        Resolve many symbols in parallel, best effort.

        Returns:
            Number of symbols resolved from authoritative exchange metadata.
            Fallbacks and unexpected failures are logged but do not raise.
        """
        unique = sorted({s.upper() for s in symbols})
        if not unique:
            return 0

        loaded = 0
        fallbacks = 0
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(unique))) as pool:
            futures = {pool.submit(self.resolve, s): s for s in unique}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    contract = future.result()
                except TradingError as e:
                    self.logger.error(f"Contract preload failed for {symbol}: {e}")
                    continue
                if contract.is_fallback:
                    fallbacks += 1
                else:
                    loaded += 1

        self.logger.info(
            f"Contract preload: {loaded}/{len(unique)} loaded from exchange, {fallbacks} fallback"
        )
        return loaded

    def cached(self, symbol: str) -> Optional[Contract]:
        """Cached contract without triggering a fetch."""
        with self._lock:
            return self._cache.get(symbol.upper())

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._cache)
