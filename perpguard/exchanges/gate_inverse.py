"""
Gate.io futures client (contract-unit, quanto multiplier) using ccxt.

Positions and orders are counted in integer contracts; one contract is worth
`quanto_multiplier` units of the base asset. Contract ids are `{SYMBOL}_USDT`.

Unified ccxt methods cover market orders, balances, tickers and positions.
Contract metadata, price-triggered orders and history go through ccxt's
implicit Gate endpoints because the unified layer hides the multiplier and
the close-position flag these need.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import ccxt

from ..errors import (
    ExchangeRequestError,
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
from ..utils.helpers import is_positive_finite, safe_float, safe_int, safe_str, utc_now
from ..utils.logger import get_logger
from .base import ExchangeClient
from .retry import with_retry


SETTLE = "usdt"
QUOTE = "USDT"

# Gate price-trigger rules: 1 fires when price >= trigger, 2 when price <= trigger
RULE_AT_OR_ABOVE = 1
RULE_AT_OR_BELOW = 2
PRICE_TYPE_MARK = 1


def _to_datetime(seconds: Any) -> datetime:
    value = safe_float(seconds)
    if value <= 0:
        return utc_now()
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


class GateInverseClient(ExchangeClient):
    """
    Gate.io futures client.

    Usage:
        client = GateInverseClient(api_key="...", api_secret="...")
        contract = client.get_contract_info("BTC_USDT")
    """

    name = "gate"
    CONTRACT_TYPE = ContractType.INVERSE
    DEFAULT_SIZE_MULTIPLIERS = {
        "BTC": 0.0001,
        "ETH": 0.01,
        "SOL": 1.0,
        "XRP": 10.0,
        "BNB": 0.001,
        "BCH": 0.01,
        "POL": 1.0,
    }
    FALLBACK_SIZE_MULTIPLIER = 0.01
    FALLBACK_SIZE_STEP = 1.0
    FALLBACK_LEVERAGE_MAX = 20
    PROTECTIVE_ORDERS_TRACK_SIZE = False

    def __init__(
        self,
        api_key: str = None,
        api_secret: str = None,
        use_testnet: bool = False,
        taker_fee_rate: float = 0.0005,
        exchange: Optional[ccxt.Exchange] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: API key for authentication
            api_secret: API secret for authentication
            use_testnet: Route requests to Gate's futures testnet
            taker_fee_rate: Fee rate used by estimate_fee
            exchange: Pre-built ccxt exchange (tests inject a mock)
        """
        super().__init__(taker_fee_rate=taker_fee_rate)
        self.logger = get_logger()
        if exchange is None:
            exchange = ccxt.gate({
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
                "options": {"defaultType": "swap"},
            })
            if use_testnet:
                exchange.set_sandbox_mode(True)
        self._exchange = exchange

        mode_str = "TESTNET" if use_testnet else "LIVE"
        self.logger.info(f"GateInverseClient initialized: mode={mode_str}, settle={SETTLE}")

    # ==================== Transport Helpers ====================

    def _call(self, func: Callable, *args, **kwargs) -> Any:
        """Invoke a ccxt method, translating ccxt exceptions into the package taxonomy."""
        name = getattr(func, "__name__", "call")
        try:
            return func(*args, **kwargs)
        except ccxt.NetworkError as e:
            raise TransientNetworkError(f"Gate {name}: {e}", e) from e
        except ccxt.BadResponse as e:
            raise InvalidResponseError(f"Gate {name}: {e}") from e
        except ccxt.ExchangeError as e:
            raise ExchangeRequestError(f"Gate {name}: {e}", original=e) from e

    def _unified_symbol(self, symbol: str) -> str:
        return f"{self.extract_symbol(symbol)}/{QUOTE}:{QUOTE}"

    # ==================== Contract Identity ====================

    def normalize_contract(self, symbol: str) -> str:
        symbol = symbol.upper()
        return symbol if "_" in symbol else f"{symbol}_{QUOTE}"

    def extract_symbol(self, contract_id: str) -> str:
        contract_id = contract_id.upper()
        if "/" in contract_id:
            return contract_id.split("/")[0]
        return contract_id.split("_")[0]

    @with_retry()
    def get_contract_info(self, contract_id: str) -> Contract:
        """Contract metadata from /futures/usdt/contracts/{contract}."""
        info = self._call(
            self._exchange.public_futures_get_settle_contracts_contract,
            {"settle": SETTLE, "contract": contract_id},
        )
        if not isinstance(info, dict) or "quanto_multiplier" not in info:
            raise InvalidResponseError(f"Gate: contract {contract_id} has no quanto_multiplier", info)

        multiplier = safe_float(info.get("quanto_multiplier"), default=float("nan"))
        if not is_positive_finite(multiplier):
            raise InvalidResponseError(
                f"Gate: contract {contract_id} multiplier {info.get('quanto_multiplier')!r} unusable", info
            )

        return Contract(
            symbol=self.extract_symbol(contract_id),
            exchange_contract_id=contract_id,
            contract_type=ContractType.INVERSE,
            size_multiplier=multiplier,
            leverage_min=max(1, safe_int(info.get("leverage_min"), 1)),
            leverage_max=max(1, safe_int(info.get("leverage_max"), self.FALLBACK_LEVERAGE_MAX)),
            size_precision=1.0,
            size_min=safe_float(info.get("order_size_min"), 1.0),
            size_max=safe_float(info.get("order_size_max")),
        )

    # ==================== Account & Positions ====================

    @with_retry()
    def get_positions(self) -> List[ExchangePosition]:
        raw_positions = self._call(self._exchange.fetch_positions)
        if not isinstance(raw_positions, list):
            raise InvalidResponseError("Gate: fetch_positions did not return a list", raw_positions)

        positions = []
        for item in raw_positions:
            quantity = abs(safe_float(item.get("contracts")))
            side = safe_str(item.get("side")).lower()
            if quantity <= 0 or side not in ("long", "short"):
                continue
            info = item.get("info") or {}
            contract_id = safe_str(info.get("contract")) or self.normalize_contract(
                self.extract_symbol(safe_str(item.get("symbol")))
            )
            positions.append(ExchangePosition(
                symbol=self.extract_symbol(contract_id),
                contract_id=contract_id,
                side=Side(side),
                quantity=quantity,
                entry_price=safe_float(item.get("entryPrice")),
                mark_price=safe_float(item.get("markPrice")),
                # Gate reports 0 for cross margin
                leverage=max(1, safe_int(item.get("leverage"), 1)),
                unrealized_pnl=safe_float(item.get("unrealizedPnl")),
                liquidation_price=safe_float(item.get("liquidationPrice")) or None,
            ))
        return positions

    @with_retry()
    def get_account(self) -> AccountSnapshot:
        balance = self._call(self._exchange.fetch_balance)
        total = (balance or {}).get("total") or {}
        if QUOTE not in total:
            raise InvalidResponseError("Gate: balance has no USDT total", balance)
        free = (balance.get("free") or {}).get(QUOTE)
        unrealized = 0.0
        info = balance.get("info")
        if isinstance(info, list) and info:
            unrealized = safe_float(info[0].get("unrealised_pnl"))
        elif isinstance(info, dict):
            unrealized = safe_float(info.get("unrealised_pnl"))
        return AccountSnapshot(
            balance=safe_float(total.get(QUOTE)),
            unrealized_pnl=unrealized,
            available=safe_float(free) if free is not None else None,
        )

    @with_retry()
    def get_ticker_price(self, symbol: str) -> float:
        ticker = self._call(self._exchange.fetch_ticker, self._unified_symbol(symbol))
        price = safe_float((ticker or {}).get("last"))
        if not is_positive_finite(price):
            raise InvalidResponseError(f"Gate: no last price for {symbol}", ticker)
        return price

    # ==================== Orders ====================

    def place_order(self, symbol: str, side: str, quantity: float,
                    reduce_only: bool = False) -> OrderResult:
        params = {"reduceOnly": True} if reduce_only else {}
        order = self._call(
            self._exchange.create_order,
            self._unified_symbol(symbol), "market", side.lower(), int(quantity), None, params,
        )
        order_id = safe_str((order or {}).get("id"))
        if not order_id:
            raise InvalidResponseError(f"Gate: order for {symbol} returned no id", order)
        return OrderResult(
            success=True,
            order_id=order_id,
            symbol=symbol.upper(),
            side=side.lower(),
            quantity=int(quantity),
            price=safe_float(order.get("average")) or None,
            reduce_only=reduce_only,
            raw_response=order,
        )

    def place_conditional_order(self, symbol: str, kind: OrderKind, position_side: Side,
                                trigger_price: float, quantity: float) -> OrderResult:
        """
        Price-triggered order that closes the whole position.

        Gate's close flag closes whatever size is open when the trigger fires,
        so `quantity` is informational and partial closes need no resize.
        """
        kind = OrderKind(kind)
        position_side = Side(position_side)
        contract_id = self.normalize_contract(symbol)
        fires_on_fall = (kind is OrderKind.STOP_LOSS) == (position_side is Side.LONG)
        body = {
            "settle": SETTLE,
            "initial": {
                "contract": contract_id,
                "size": 0,
                "price": "0",
                "tif": "ioc",
                "close": True,
                "text": f"t-pg-{'sl' if kind is OrderKind.STOP_LOSS else 'tp'}",
            },
            "trigger": {
                "strategy_type": 0,
                "price_type": PRICE_TYPE_MARK,
                "price": str(trigger_price),
                "rule": RULE_AT_OR_BELOW if fires_on_fall else RULE_AT_OR_ABOVE,
            },
        }
        response = self._call(self._exchange.private_futures_post_settle_price_orders, body)
        order_id = safe_str((response or {}).get("id"))
        if not order_id:
            raise InvalidResponseError(f"Gate: price order for {contract_id} returned no id", response)
        return OrderResult(
            success=True,
            order_id=order_id,
            symbol=symbol.upper(),
            side=position_side.exit_order_side,
            quantity=quantity,
            trigger_price=trigger_price,
            reduce_only=True,
            raw_response=response,
        )

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            self._call(
                self._exchange.private_futures_delete_settle_price_orders_order_id,
                {"settle": SETTLE, "order_id": order_id},
            )
        except ExchangeRequestError as e:
            if isinstance(e.original, ccxt.OrderNotFound):
                self.logger.debug(f"Gate: price order {order_id} already gone")
                return False
            raise
        return True

    @with_retry()
    def get_open_conditional_orders(self, symbol: str) -> List[ConditionalOrder]:
        contract_id = self.normalize_contract(symbol)
        items = self._call(
            self._exchange.private_futures_get_settle_price_orders,
            {"settle": SETTLE, "status": "open", "contract": contract_id},
        )
        if not isinstance(items, list):
            raise InvalidResponseError("Gate: price order listing is not a list", items)

        orders = []
        for item in items:
            trigger = item.get("trigger") or {}
            initial = item.get("initial") or {}
            position_side = self._protected_side(item, initial)
            fires_on_fall = safe_int(trigger.get("rule")) == RULE_AT_OR_BELOW
            if "pg-sl" in safe_str(initial.get("text")):
                kind = OrderKind.STOP_LOSS
            elif "pg-tp" in safe_str(initial.get("text")):
                kind = OrderKind.TAKE_PROFIT
            else:
                kind = (OrderKind.STOP_LOSS if fires_on_fall == (position_side is Side.LONG)
                        else OrderKind.TAKE_PROFIT)
            orders.append(ConditionalOrder(
                id=safe_str(item.get("id")),
                symbol=self.extract_symbol(contract_id),
                kind=kind,
                trigger_price=safe_float(trigger.get("price")),
                side=position_side,
                quantity=abs(safe_float(initial.get("size"))),
                created_at=_to_datetime(item.get("create_time")),
            ))
        return orders

    @staticmethod
    def _protected_side(item: Dict[str, Any], initial: Dict[str, Any]) -> Side:
        size = safe_float(initial.get("size"))
        if size < 0:
            return Side.LONG
        if size > 0:
            return Side.SHORT
        order_type = safe_str(item.get("order_type"))
        return Side.SHORT if "short" in order_type else Side.LONG

    def set_leverage(self, symbol: str, leverage: int) -> bool:
        self._call(self._exchange.set_leverage, int(leverage), self._unified_symbol(symbol))
        return True

    # ==================== History ====================

    @with_retry()
    def get_position_history(self, symbol: Optional[str] = None,
                             since: Optional[datetime] = None,
                             limit: int = 50) -> List[PositionHistoryEntry]:
        params: Dict[str, Any] = {"settle": SETTLE, "limit": limit}
        if symbol:
            params["contract"] = self.normalize_contract(symbol)
        if since:
            params["from"] = int(since.timestamp())
        items = self._call(self._exchange.private_futures_get_settle_position_close, params)
        if not isinstance(items, list):
            raise InvalidResponseError("Gate: position_close is not a list", items)

        entries = []
        for item in items:
            side = Side(safe_str(item.get("side"), "long"))
            long_price = safe_float(item.get("long_price"))
            short_price = safe_float(item.get("short_price"))
            entries.append(PositionHistoryEntry(
                symbol=self.extract_symbol(safe_str(item.get("contract"))),
                side=side,
                quantity=abs(safe_float(item.get("max_size") or item.get("accum_size"))),
                entry_price=long_price if side is Side.LONG else short_price,
                exit_price=short_price if side is Side.LONG else long_price,
                pnl=safe_float(item.get("pnl")),
                closed_at=_to_datetime(item.get("time")),
            ))
        return entries

    @with_retry()
    def get_settlement_history(self, symbol: Optional[str] = None,
                               limit: int = 50) -> List[SettlementEntry]:
        params: Dict[str, Any] = {"settle": SETTLE, "type": "fund", "limit": limit}
        if symbol:
            params["contract"] = self.normalize_contract(symbol)
        items = self._call(self._exchange.private_futures_get_settle_account_book, params)
        if not isinstance(items, list):
            raise InvalidResponseError("Gate: account_book is not a list", items)
        return [
            SettlementEntry(
                symbol=self.extract_symbol(safe_str(item.get("contract"))) if item.get("contract") else "",
                amount=safe_float(item.get("change")),
                settled_at=_to_datetime(item.get("time")),
                kind=safe_str(item.get("type"), "fund"),
                raw=item,
            )
            for item in items
        ]
