"""
Bybit USDT perpetual client (linear settlement) using the official pybit library.

Contracts are `{SYMBOL}USDT` in category "linear". Quantity is expressed in
base coin, so the size multiplier is 1 and PnL is linear in price.

Protective orders are reduce-only conditional market orders
(`triggerPrice` + `triggerDirection`), tagged through orderLinkId so they can
be told apart from other conditional orders on the account.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from pybit.exceptions import FailedRequestError, InvalidRequestError
from pybit.unified_trading import HTTP

from ..errors import (
    ExchangeRequestError,
    InvalidContractError,
    InvalidResponseError,
    TransientNetworkError,
)
from ..models import (
    AccountSnapshot,
    ConditionalOrder,
    Contract,
    ContractType,
    ExchangePosition,
    OrderKind,
    OrderResult,
    PositionHistoryEntry,
    SettlementEntry,
    Side,
)
from ..utils.helpers import from_millis, is_positive_finite, safe_float, safe_int, safe_str
from ..utils.logger import get_logger
from ..utils.rate_limiter import create_bybit_limiters
from .base import ExchangeClient
from .retry import with_retry


CATEGORY = "linear"
QUOTE = "USDT"

# retCodes that indicate a temporary condition on Bybit's side
TRANSIENT_RET_CODES = {10000, 10002, 10006, 10016}
ORDER_NOT_FOUND_CODES = {110001, 110008}
LEVERAGE_NOT_MODIFIED = 110043

# Bybit triggerDirection values
TRIGGER_RISE = 1
TRIGGER_FALL = 2

LINK_PREFIX = {OrderKind.STOP_LOSS: "pg-sl-", OrderKind.TAKE_PROFIT: "pg-tp-"}


class BybitLinearClient(ExchangeClient):
    """
    Bybit client for USDT-margined perpetuals.

    Usage:
        client = BybitLinearClient(api_key="...", api_secret="...", use_demo=True)
        positions = client.get_positions()
    """

    name = "bybit"
    CONTRACT_TYPE = ContractType.LINEAR
    FALLBACK_SIZE_MULTIPLIER = 1.0
    FALLBACK_SIZE_STEP = 0.001
    FALLBACK_LEVERAGE_MAX = 25

    def __init__(
        self,
        api_key: str = None,
        api_secret: str = None,
        use_demo: bool = True,
        recv_window: int = 20000,
        taker_fee_rate: float = 0.0005,
        session: Optional[HTTP] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: API key for authentication
            api_secret: API secret for authentication
            use_demo: True for DEMO (fake money), False for LIVE (real money)
            recv_window: Request timeout window in milliseconds
            taker_fee_rate: Fee rate used by estimate_fee
            session: Pre-built pybit session (tests inject a mock)
        """
        super().__init__(taker_fee_rate=taker_fee_rate)
        self.use_demo = use_demo
        self.logger = get_logger()
        self._session = session or HTTP(
            testnet=False,
            demo=use_demo,
            api_key=api_key,
            api_secret=api_secret,
            recv_window=recv_window,
        )
        self._limiters = create_bybit_limiters()

        mode_str = "DEMO" if use_demo else "LIVE"
        self.logger.info(f"BybitLinearClient initialized: mode={mode_str}, category={CATEGORY}")

    # ==================== Transport Helpers ====================

    def _call(self, method: str, limiter: str = "private", **kwargs) -> Dict[str, Any]:
        """
        Invoke a pybit session method and return its `result` payload.

        pybit exceptions are translated into the package error taxonomy here
        and nowhere else.
        """
        self._limiters[limiter].acquire(timeout=10.0)
        try:
            response = getattr(self._session, method)(**kwargs)
        except InvalidRequestError as e:
            code = safe_int(getattr(e, "status_code", None), default=-1)
            message = safe_str(getattr(e, "message", None), str(e))
            if code in TRANSIENT_RET_CODES:
                raise TransientNetworkError(f"Bybit {method}: [{code}] {message}", e) from e
            raise ExchangeRequestError(message, code=code, original=e) from e
        except FailedRequestError as e:
            status = getattr(e, "status_code", None)
            message = safe_str(getattr(e, "message", None), str(e))
            if status is None or safe_int(status) >= 500 or safe_int(status) == 429:
                raise TransientNetworkError(f"Bybit {method}: HTTP {status} {message}", e) from e
            raise ExchangeRequestError(message, code=safe_int(status), original=e) from e
        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(f"Bybit {method}: {e}", e) from e

        return self._extract_result(response, method)

    @staticmethod
    def _extract_result(response: Any, method: str) -> Dict[str, Any]:
        """Pull `result` out of a pybit response (dict, or tuple when headers are returned)."""
        if isinstance(response, tuple):
            response = response[0]
        if not isinstance(response, dict):
            raise InvalidResponseError(f"Bybit {method}: unexpected response type", response)
        result = response.get("result")
        if not isinstance(result, dict):
            raise InvalidResponseError(f"Bybit {method}: response has no result object", response)
        return result

    @staticmethod
    def _result_list(result: Dict[str, Any], method: str) -> List[Dict[str, Any]]:
        items = result.get("list")
        if not isinstance(items, list):
            raise InvalidResponseError(f"Bybit {method}: result.list missing", result)
        return items

    # ==================== Contract Identity ====================

    def normalize_contract(self, symbol: str) -> str:
        symbol = symbol.upper()
        return symbol if symbol.endswith(QUOTE) else f"{symbol}{QUOTE}"

    def extract_symbol(self, contract_id: str) -> str:
        contract_id = contract_id.upper()
        return contract_id[:-len(QUOTE)] if contract_id.endswith(QUOTE) else contract_id

    @with_retry()
    def get_contract_info(self, contract_id: str) -> Contract:
        """Instrument metadata from /v5/market/instruments-info."""
        result = self._call("get_instruments_info", category=CATEGORY, symbol=contract_id)
        items = self._result_list(result, "get_instruments_info")
        if not items:
            raise InvalidResponseError(f"Bybit: no instrument named {contract_id}", result)
        info = items[0]

        contract_type = safe_str(info.get("contractType"))
        if contract_type and contract_type != "LinearPerpetual":
            raise InvalidContractError(f"{contract_id} is {contract_type}, not LinearPerpetual")

        lot = info.get("lotSizeFilter") or {}
        lev = info.get("leverageFilter") or {}
        qty_step = safe_float(lot.get("qtyStep"))
        if not is_positive_finite(qty_step):
            raise InvalidResponseError(f"Bybit: {contract_id} has no usable qtyStep", info)

        return Contract(
            symbol=self.extract_symbol(contract_id),
            exchange_contract_id=contract_id,
            contract_type=ContractType.LINEAR,
            size_multiplier=1.0,
            leverage_min=max(1, int(safe_float(lev.get("minLeverage"), 1.0))),
            leverage_max=max(1, int(safe_float(lev.get("maxLeverage"), self.FALLBACK_LEVERAGE_MAX))),
            size_precision=qty_step,
            size_min=safe_float(lot.get("minOrderQty")),
            size_max=safe_float(lot.get("maxOrderQty")),
        )

    # ==================== Account & Positions ====================

    @with_retry()
    def get_positions(self) -> List[ExchangePosition]:
        result = self._call("get_positions", category=CATEGORY, settleCoin=QUOTE)
        positions = []
        for item in self._result_list(result, "get_positions"):
            size = safe_float(item.get("size"))
            side = safe_str(item.get("side"))
            if size <= 0 or side not in ("Buy", "Sell"):
                continue
            contract_id = safe_str(item.get("symbol"))
            positions.append(ExchangePosition(
                symbol=self.extract_symbol(contract_id),
                contract_id=contract_id,
                side=Side.LONG if side == "Buy" else Side.SHORT,
                quantity=size,
                entry_price=safe_float(item.get("avgPrice")),
                mark_price=safe_float(item.get("markPrice")),
                leverage=max(1, safe_int(item.get("leverage"), 1)),
                unrealized_pnl=safe_float(item.get("unrealisedPnl")),
                liquidation_price=safe_float(item.get("liqPrice")) or None,
            ))
        return positions

    @with_retry()
    def get_account(self) -> AccountSnapshot:
        result = self._call("get_wallet_balance", accountType="UNIFIED")
        items = self._result_list(result, "get_wallet_balance")
        if not items:
            raise InvalidResponseError("Bybit: empty wallet balance", result)
        wallet = items[0]
        if wallet.get("totalEquity") in (None, ""):
            raise InvalidResponseError("Bybit: wallet balance has no totalEquity", wallet)
        return AccountSnapshot(
            balance=safe_float(wallet.get("totalEquity")),
            unrealized_pnl=safe_float(wallet.get("totalPerpUPL")),
            available=safe_float(wallet.get("totalAvailableBalance")),
        )

    @with_retry()
    def get_ticker_price(self, symbol: str) -> float:
        contract_id = self.normalize_contract(symbol)
        result = self._call("get_tickers", limiter="private", category=CATEGORY, symbol=contract_id)
        items = self._result_list(result, "get_tickers")
        price = safe_float(items[0].get("lastPrice")) if items else 0.0
        if not is_positive_finite(price):
            raise InvalidResponseError(f"Bybit: no last price for {contract_id}", result)
        return price

    # ==================== Orders ====================

    def place_order(self, symbol: str, side: str, quantity: float,
                    reduce_only: bool = False) -> OrderResult:
        contract_id = self.normalize_contract(symbol)
        kwargs = {
            "category": CATEGORY,
            "symbol": contract_id,
            "side": "Buy" if side.lower() == "buy" else "Sell",
            "orderType": "Market",
            "qty": str(quantity),
            "positionIdx": 0,
        }
        if reduce_only:
            kwargs["reduceOnly"] = True

        result = self._call("place_order", limiter="orders", **kwargs)
        order_id = safe_str(result.get("orderId"))
        if not order_id:
            raise InvalidResponseError(f"Bybit: order for {contract_id} returned no orderId", result)
        return OrderResult(
            success=True,
            order_id=order_id,
            symbol=symbol.upper(),
            side=side.lower(),
            quantity=quantity,
            reduce_only=reduce_only,
            raw_response=result,
        )

    def place_conditional_order(self, symbol: str, kind: OrderKind, position_side: Side,
                                trigger_price: float, quantity: float) -> OrderResult:
        """
        Reduce-only conditional market order closing (part of) a position.

        A long's stop triggers on a fall, its take-profit on a rise; mirrored
        for shorts.
        """
        kind = OrderKind(kind)
        position_side = Side(position_side)
        contract_id = self.normalize_contract(symbol)
        protects_on_fall = (kind is OrderKind.STOP_LOSS) == (position_side is Side.LONG)
        kwargs = {
            "category": CATEGORY,
            "symbol": contract_id,
            "side": "Sell" if position_side is Side.LONG else "Buy",
            "orderType": "Market",
            "qty": str(quantity),
            "triggerPrice": str(trigger_price),
            "triggerDirection": TRIGGER_FALL if protects_on_fall else TRIGGER_RISE,
            "triggerBy": "MarkPrice",
            "reduceOnly": True,
            "closeOnTrigger": True,
            "positionIdx": 0,
            "orderLinkId": f"{LINK_PREFIX[kind]}{uuid.uuid4().hex[:20]}",
        }
        result = self._call("place_order", limiter="orders", **kwargs)
        order_id = safe_str(result.get("orderId"))
        if not order_id:
            raise InvalidResponseError(f"Bybit: conditional order for {contract_id} returned no orderId", result)
        return OrderResult(
            success=True,
            order_id=order_id,
            symbol=symbol.upper(),
            side=position_side.exit_order_side,
            quantity=quantity,
            trigger_price=trigger_price,
            reduce_only=True,
            raw_response=result,
        )

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            self._call(
                "cancel_order", limiter="orders",
                category=CATEGORY, symbol=self.normalize_contract(symbol), orderId=order_id,
            )
        except ExchangeRequestError as e:
            if e.code in ORDER_NOT_FOUND_CODES:
                self.logger.debug(f"Bybit: order {order_id} already gone ({e.code})")
                return False
            raise
        return True

    @with_retry()
    def get_open_conditional_orders(self, symbol: str) -> List[ConditionalOrder]:
        result = self._call(
            "get_open_orders",
            category=CATEGORY, symbol=self.normalize_contract(symbol), orderFilter="StopOrder",
        )
        orders = []
        for item in self._result_list(result, "get_open_orders"):
            trigger_price = safe_float(item.get("triggerPrice"))
            if trigger_price <= 0:
                continue
            # Closing side Sell protects a long
            position_side = Side.LONG if safe_str(item.get("side")) == "Sell" else Side.SHORT
            orders.append(ConditionalOrder(
                id=safe_str(item.get("orderId")),
                symbol=symbol.upper(),
                kind=self._order_kind(item, position_side),
                trigger_price=trigger_price,
                side=position_side,
                quantity=safe_float(item.get("qty")),
                created_at=from_millis(item.get("createdTime")),
            ))
        return orders

    @staticmethod
    def _order_kind(item: Dict[str, Any], position_side: Side) -> OrderKind:
        link_id = safe_str(item.get("orderLinkId"))
        for kind, prefix in LINK_PREFIX.items():
            if link_id.startswith(prefix):
                return kind
        falls = safe_int(item.get("triggerDirection")) == TRIGGER_FALL
        if falls == (position_side is Side.LONG):
            return OrderKind.STOP_LOSS
        return OrderKind.TAKE_PROFIT

    def set_leverage(self, symbol: str, leverage: int) -> bool:
        try:
            self._call(
                "set_leverage",
                category=CATEGORY,
                symbol=self.normalize_contract(symbol),
                buyLeverage=str(leverage),
                sellLeverage=str(leverage),
            )
        except ExchangeRequestError as e:
            if e.code == LEVERAGE_NOT_MODIFIED:
                return True
            raise
        return True

    # ==================== History ====================

    @with_retry()
    def get_position_history(self, symbol: Optional[str] = None,
                             since: Optional[datetime] = None,
                             limit: int = 50) -> List[PositionHistoryEntry]:
        kwargs: Dict[str, Any] = {"category": CATEGORY, "limit": limit}
        if symbol:
            kwargs["symbol"] = self.normalize_contract(symbol)
        if since:
            kwargs["startTime"] = int(since.timestamp() * 1000)
        result = self._call("get_closed_pnl", **kwargs)

        entries = []
        for item in self._result_list(result, "get_closed_pnl"):
            # side is the closing order's side
            closing_side = safe_str(item.get("side"))
            entries.append(PositionHistoryEntry(
                symbol=self.extract_symbol(safe_str(item.get("symbol"))),
                side=Side.LONG if closing_side == "Sell" else Side.SHORT,
                quantity=safe_float(item.get("qty")),
                entry_price=safe_float(item.get("avgEntryPrice")),
                exit_price=safe_float(item.get("avgExitPrice")),
                pnl=safe_float(item.get("closedPnl")),
                closed_at=from_millis(item.get("updatedTime")),
            ))
        return entries

    @with_retry()
    def get_settlement_history(self, symbol: Optional[str] = None,
                               limit: int = 50) -> List[SettlementEntry]:
        kwargs: Dict[str, Any] = {
            "accountType": "UNIFIED",
            "category": CATEGORY,
            "type": "SETTLEMENT",
            "limit": limit,
        }
        if symbol:
            kwargs["symbol"] = self.normalize_contract(symbol)
        result = self._call("get_transaction_log", **kwargs)
        return [
            SettlementEntry(
                symbol=self.extract_symbol(safe_str(item.get("symbol"))),
                amount=safe_float(item.get("change")),
                settled_at=from_millis(item.get("transactionTime")),
                kind=safe_str(item.get("type"), "SETTLEMENT").lower(),
                raw=item,
            )
            for item in self._result_list(result, "get_transaction_log")
        ]
