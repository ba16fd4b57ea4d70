"""
DuckDB-backed persisted store.

Holds the durable mirror of exchange state (positions, conditional orders),
the append-only trade history and the audit trail (close events, partial
take-profit history, reconciliation flags, account state).

Table layout:
- positions: one row per open position, keyed by symbol
- trades: append-only fills; pnl/fee only change through correct_trade_pnl()
- conditional_orders: protective orders and their lifecycle status
- close_events: why and where each position was closed
- partial_take_profit_history: take-profit stage attempts per position
- account_state: key/value numbers such as the drawdown peak balance
- reconciliation_flags: mismatches left for manual audit

The connection is shared between threads, so every statement runs under a
store-local lock.
"""

from datetime import datetime
from pathlib import Path
import threading
from typing import Dict, List, Optional, Set

import duckdb

from ..models import (
    CloseEvent,
    ConditionalOrder,
    OrderStatus,
    PartialTakeProfitRecord,
    Position,
    Trade,
    TradeType,
    TrailingState,
)
from ..utils.helpers import utc_now
from ..utils.logger import get_logger


PEAK_BALANCE_KEY = "peak_balance"

POSITION_COLUMNS = (
    "symbol, side, quantity, entry_price, leverage, opened_at, "
    "stop_loss_order_ref, take_profit_order_ref, stop_loss_price, take_profit_price, "
    "initial_risk, trailing_extreme, trailing_activated, mark_price"
)
TRADE_COLUMNS = (
    "id, type, symbol, side, price, quantity, pnl, fee, timestamp, order_id, status, leverage"
)
ORDER_COLUMNS = "id, symbol, kind, trigger_price, side, quantity, status, created_at"
CLOSE_EVENT_COLUMNS = (
    "symbol, side, close_reason, close_price, entry_price, quantity, pnl, "
    "trigger_price, pnl_percent, trigger_order_id, created_at"
)
PARTIAL_COLUMNS = (
    "symbol, position_opened_at, stage, r_multiple, trigger_price, close_percent, "
    "closed_quantity, remaining_quantity, pnl, new_stop_loss_price, status, notes, timestamp"
)


class TradeStore:
    """
    Persisted store for positions, trades and protective orders.

    Usage:
        store = TradeStore("data/perpguard.duckdb")
        store.save_position(position)
        store.close()

    Pass ":memory:" for an in-process database (tests).
    """

    def __init__(self, db_path: str = "data/perpguard.duckdb"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = duckdb.connect(str(db_path))
        self._lock = threading.RLock()
        self.logger = get_logger()
        self._init_schema()
        self.logger.debug(f"TradeStore initialized: db={db_path}")

    def _init_schema(self):
        """Create tables, sequences and indexes if missing."""
        with self._lock:
            for seq in ("trades_id_seq", "close_events_id_seq", "partial_tp_id_seq", "flags_id_seq"):
                self.conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {seq} START 1")

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    symbol VARCHAR NOT NULL,
                    side VARCHAR NOT NULL,
                    quantity DOUBLE NOT NULL,
                    entry_price DOUBLE NOT NULL,
                    leverage INTEGER NOT NULL,
                    opened_at TIMESTAMP NOT NULL,
                    stop_loss_order_ref VARCHAR,
                    take_profit_order_ref VARCHAR,
                    stop_loss_price DOUBLE,
                    take_profit_price DOUBLE,
                    initial_risk DOUBLE,
                    trailing_extreme DOUBLE,
                    trailing_activated BOOLEAN DEFAULT FALSE,
                    mark_price DOUBLE,
                    updated_at TIMESTAMP
                )
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id BIGINT DEFAULT nextval('trades_id_seq'),
                    type VARCHAR NOT NULL,
                    symbol VARCHAR NOT NULL,
                    side VARCHAR NOT NULL,
                    price DOUBLE NOT NULL,
                    quantity DOUBLE NOT NULL,
                    pnl DOUBLE,
                    fee DOUBLE DEFAULT 0,
                    timestamp TIMESTAMP NOT NULL,
                    order_id VARCHAR,
                    status VARCHAR DEFAULT 'filled',
                    leverage INTEGER DEFAULT 1
                )
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS conditional_orders (
                    id VARCHAR NOT NULL,
                    symbol VARCHAR NOT NULL,
                    kind VARCHAR NOT NULL,
                    trigger_price DOUBLE NOT NULL,
                    side VARCHAR NOT NULL,
                    quantity DOUBLE NOT NULL,
                    status VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP
                )
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS close_events (
                    id BIGINT DEFAULT nextval('close_events_id_seq'),
                    symbol VARCHAR NOT NULL,
                    side VARCHAR NOT NULL,
                    close_reason VARCHAR NOT NULL,
                    close_price DOUBLE NOT NULL,
                    entry_price DOUBLE NOT NULL,
                    quantity DOUBLE NOT NULL,
                    pnl DOUBLE NOT NULL,
                    trigger_price DOUBLE,
                    pnl_percent DOUBLE,
                    trigger_order_id VARCHAR,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS partial_take_profit_history (
                    id BIGINT DEFAULT nextval('partial_tp_id_seq'),
                    symbol VARCHAR NOT NULL,
                    position_opened_at TIMESTAMP NOT NULL,
                    stage INTEGER NOT NULL,
                    r_multiple DOUBLE NOT NULL,
                    trigger_price DOUBLE NOT NULL,
                    close_percent DOUBLE NOT NULL,
                    closed_quantity DOUBLE NOT NULL,
                    remaining_quantity DOUBLE NOT NULL,
                    pnl DOUBLE DEFAULT 0,
                    new_stop_loss_price DOUBLE,
                    status VARCHAR NOT NULL,
                    notes VARCHAR,
                    timestamp TIMESTAMP NOT NULL
                )
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS account_state (
                    key VARCHAR NOT NULL,
                    value DOUBLE NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS reconciliation_flags (
                    id BIGINT DEFAULT nextval('flags_id_seq'),
                    symbol VARCHAR NOT NULL,
                    kind VARCHAR NOT NULL,
                    detail VARCHAR,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            self.conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_trades_symbol_ts ON trades (symbol, timestamp)
            """)
            self.conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_symbol ON conditional_orders (symbol)
            """)

    # ==================== Positions ====================

    def _fired_stages(self, symbol: str, opened_at: datetime) -> Set[int]:
        # Failed orders stay eligible; skipped stages are too small to ever fill
        rows = self.conn.execute("""
            SELECT DISTINCT stage FROM partial_take_profit_history
            WHERE symbol = ? AND position_opened_at = ?
              AND status IN ('completed', 'skipped')
        """, [symbol, opened_at]).fetchall()
        return {int(r[0]) for r in rows}

    def _row_to_position(self, row) -> Position:
        (symbol, side, quantity, entry_price, leverage, opened_at, sl_ref, tp_ref,
         sl_price, tp_price, initial_risk, trailing_extreme, trailing_activated, mark_price) = row
        return Position(
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            leverage=leverage,
            opened_at=opened_at,
            stop_loss_order_ref=sl_ref,
            take_profit_order_ref=tp_ref,
            stop_loss_price=sl_price,
            take_profit_price=tp_price,
            initial_risk=initial_risk,
            trailing_state=TrailingState(
                highest_favorable_price=trailing_extreme,
                activated=bool(trailing_activated),
            ),
            fired_stages=self._fired_stages(symbol, opened_at),
            mark_price=mark_price,
        )

    def save_position(self, position: Position) -> None:
        """Insert or replace the row for position.symbol."""
        with self._lock:
            self.conn.execute("DELETE FROM positions WHERE symbol = ?", [position.symbol])
            self.conn.execute(f"""
                INSERT INTO positions ({POSITION_COLUMNS}, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                position.symbol,
                position.side.value,
                position.quantity,
                position.entry_price,
                int(position.leverage),
                position.opened_at,
                position.stop_loss_order_ref,
                position.take_profit_order_ref,
                position.stop_loss_price,
                position.take_profit_price,
                position.initial_risk,
                position.trailing_state.highest_favorable_price,
                position.trailing_state.activated,
                position.mark_price,
                utc_now(),
            ])

    def get_position(self, symbol: str) -> Optional[Position]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {POSITION_COLUMNS} FROM positions WHERE symbol = ?", [symbol.upper()]
            ).fetchone()
            return self._row_to_position(row) if row else None

    def list_positions(self) -> List[Position]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {POSITION_COLUMNS} FROM positions ORDER BY symbol"
            ).fetchall()
            return [self._row_to_position(r) for r in rows]

    def delete_position(self, symbol: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM positions WHERE symbol = ?", [symbol.upper()])

    # ==================== Trades ====================

    def _row_to_trade(self, row) -> Trade:
        (trade_id, trade_type, symbol, side, price, quantity, pnl, fee,
         timestamp, order_id, status, leverage) = row
        return Trade(
            id=int(trade_id),
            type=trade_type,
            symbol=symbol,
            side=side,
            price=price,
            quantity=quantity,
            pnl=pnl,
            fee=fee or 0.0,
            timestamp=timestamp,
            order_id=order_id,
            status=status,
            leverage=leverage or 1,
        )

    def record_trade(self, trade: Trade) -> int:
        """Append a trade and return its id."""
        with self._lock:
            row = self.conn.execute("""
                INSERT INTO trades (type, symbol, side, price, quantity, pnl, fee,
                                    timestamp, order_id, status, leverage)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
            """, [
                trade.type.value,
                trade.symbol,
                trade.side.value,
                trade.price,
                trade.quantity,
                trade.pnl,
                trade.fee,
                trade.timestamp,
                trade.order_id,
                trade.status,
                int(trade.leverage),
            ]).fetchone()
        trade.id = int(row[0])
        return trade.id

    def list_trades(self, symbol: Optional[str] = None,
                    trade_type: Optional[TradeType] = None) -> List[Trade]:
        """Trades in chronological order, optionally filtered."""
        clauses = []
        params: list = []
        if symbol:
            clauses.append("symbol = ?")
            params.append(symbol.upper())
        if trade_type:
            clauses.append("type = ?")
            params.append(TradeType(trade_type).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {TRADE_COLUMNS} FROM trades {where} ORDER BY timestamp, id", params
            ).fetchall()
        return [self._row_to_trade(r) for r in rows]

    def latest_open_trade_before(self, symbol: str, before: datetime) -> Optional[Trade]:
        """Most recent open trade for symbol with timestamp strictly before `before`."""
        with self._lock:
            row = self.conn.execute(f"""
                SELECT {TRADE_COLUMNS} FROM trades
                WHERE symbol = ? AND type = 'open' AND timestamp < ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
            """, [symbol.upper(), before]).fetchone()
        return self._row_to_trade(row) if row else None

    def closed_quantity_since(self, symbol: str, since: datetime) -> float:
        """Total quantity of close trades for symbol at or after `since`."""
        with self._lock:
            row = self.conn.execute("""
                SELECT COALESCE(SUM(quantity), 0) FROM trades
                WHERE symbol = ? AND type = 'close' AND timestamp >= ?
            """, [symbol.upper(), since]).fetchone()
        return float(row[0])

    def correct_trade_pnl(self, trade_id: int, pnl: float, fee: float) -> None:
        """
        Overwrite pnl and fee of one trade.

        The only sanctioned mutation of trade history; callers log the
        before/after values.
        """
        with self._lock:
            self.conn.execute(
                "UPDATE trades SET pnl = ?, fee = ? WHERE id = ?", [pnl, fee, trade_id]
            )

    # ==================== Conditional Orders ====================

    def _row_to_order(self, row) -> ConditionalOrder:
        order_id, symbol, kind, trigger_price, side, quantity, status, created_at = row
        return ConditionalOrder(
            id=order_id,
            symbol=symbol,
            kind=kind,
            trigger_price=trigger_price,
            side=side,
            quantity=quantity,
            status=status,
            created_at=created_at,
        )

    def save_conditional_order(self, order: ConditionalOrder) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM conditional_orders WHERE id = ?", [order.id])
            self.conn.execute(f"""
                INSERT INTO conditional_orders ({ORDER_COLUMNS}, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                order.id,
                order.symbol,
                order.kind.value,
                order.trigger_price,
                order.side.value,
                order.quantity,
                order.status.value,
                order.created_at,
                utc_now(),
            ])

    def get_conditional_order(self, order_id: str) -> Optional[ConditionalOrder]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM conditional_orders WHERE id = ?", [order_id]
            ).fetchone()
        return self._row_to_order(row) if row else None

    def active_orders(self, symbol: Optional[str] = None) -> List[ConditionalOrder]:
        params: list = [OrderStatus.ACTIVE.value]
        where = "status = ?"
        if symbol:
            where += " AND symbol = ?"
            params.append(symbol.upper())
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM conditional_orders WHERE {where} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._row_to_order(r) for r in rows]

    def set_order_status(self, order_id: str, status: OrderStatus) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE conditional_orders SET status = ?, updated_at = ? WHERE id = ?",
                [OrderStatus(status).value, utc_now(), order_id],
            )

    # ==================== Close Events & Partial TP ====================

    def record_close_event(self, event: CloseEvent) -> None:
        with self._lock:
            self.conn.execute(f"""
                INSERT INTO close_events ({CLOSE_EVENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                event.symbol,
                event.side.value,
                event.close_reason.value,
                event.close_price,
                event.entry_price,
                event.quantity,
                event.pnl,
                event.trigger_price,
                event.pnl_percent,
                event.trigger_order_id,
                event.created_at,
            ])

    def list_close_events(self, symbol: Optional[str] = None) -> List[CloseEvent]:
        where, params = ("WHERE symbol = ?", [symbol.upper()]) if symbol else ("", [])
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {CLOSE_EVENT_COLUMNS} FROM close_events {where} ORDER BY created_at, id",
                params,
            ).fetchall()
        return [
            CloseEvent(
                symbol=r[0], side=r[1], close_reason=r[2], close_price=r[3],
                entry_price=r[4], quantity=r[5], pnl=r[6], trigger_price=r[7],
                pnl_percent=r[8], trigger_order_id=r[9], created_at=r[10],
            )
            for r in rows
        ]

    def record_partial_take_profit(self, record: PartialTakeProfitRecord) -> None:
        with self._lock:
            self.conn.execute(f"""
                INSERT INTO partial_take_profit_history ({PARTIAL_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                record.symbol,
                record.position_opened_at,
                record.stage,
                record.r_multiple,
                record.trigger_price,
                record.close_percent,
                record.closed_quantity,
                record.remaining_quantity,
                record.pnl,
                record.new_stop_loss_price,
                record.status,
                record.notes,
                record.timestamp,
            ])

    def partial_take_profit_history(self, symbol: Optional[str] = None) -> List[PartialTakeProfitRecord]:
        where, params = ("WHERE symbol = ?", [symbol.upper()]) if symbol else ("", [])
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {PARTIAL_COLUMNS} FROM partial_take_profit_history {where} "
                f"ORDER BY timestamp, id",
                params,
            ).fetchall()
        return [PartialTakeProfitRecord(*r) for r in rows]

    # ==================== Account State & Flags ====================

    def get_state(self, key: str, default: float = 0.0) -> float:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM account_state WHERE key = ?", [key]
            ).fetchone()
        return float(row[0]) if row else default

    def set_state(self, key: str, value: float) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM account_state WHERE key = ?", [key])
            self.conn.execute(
                "INSERT INTO account_state (key, value, updated_at) VALUES (?, ?, ?)",
                [key, float(value), utc_now()],
            )

    def get_peak_balance(self) -> float:
        return self.get_state(PEAK_BALANCE_KEY, 0.0)

    def set_peak_balance(self, value: float) -> None:
        self.set_state(PEAK_BALANCE_KEY, value)

    def flag_for_audit(self, symbol: str, kind: str, detail: str) -> bool:
        """Record a flag unless an identical one exists. Returns True when inserted."""
        with self._lock:
            existing = self.conn.execute(
                "SELECT 1 FROM reconciliation_flags WHERE symbol = ? AND kind = ? AND detail = ?",
                [symbol.upper(), kind, detail],
            ).fetchone()
            if existing:
                return False
            self.conn.execute(
                "INSERT INTO reconciliation_flags (symbol, kind, detail, created_at) VALUES (?, ?, ?, ?)",
                [symbol.upper(), kind, detail, utc_now()],
            )
        return True

    def list_flags(self, symbol: Optional[str] = None) -> List[Dict[str, object]]:
        where, params = ("WHERE symbol = ?", [symbol.upper()]) if symbol else ("", [])
        with self._lock:
            rows = self.conn.execute(
                f"SELECT symbol, kind, detail, created_at FROM reconciliation_flags {where} "
                f"ORDER BY created_at, id",
                params,
            ).fetchall()
        return [
            {"symbol": r[0], "kind": r[1], "detail": r[2], "created_at": r[3]}
            for r in rows
        ]

    # ==================== Lifecycle ====================

    def close(self):
        """Close the database connection."""
        with self._lock:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
