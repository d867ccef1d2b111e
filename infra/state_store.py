"""
gridtrader Infrastructure: Ledger Store

SQLite-backed persistence for cycles, positions, risk state, crash events,
the trade log, the notification log and metrics snapshots.

Multi-row mutations go through ``run_unit_of_work``: the store reads a
``ReadSet`` inside an immediate transaction, hands it to a pure planner, and
commits the returned ``WriteSet`` atomically (or rolls the whole unit back).
Decimals are stored as TEXT to keep exact values; timestamps as ISO-8601.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from core.exceptions import LedgerError
from core.models import (
    BotState,
    BotStateType,
    CrashEvent,
    Cycle,
    CycleStatus,
    MetricsSnapshot,
    NotificationRecord,
    Position,
    PositionStatus,
    TradeRecord,
    utc_now,
)
from core.numeric import to_decimal

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS cycles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    status TEXT NOT NULL,
    buy_count INTEGER NOT NULL DEFAULT 0,
    max_buys INTEGER NOT NULL,
    grid_percent TEXT NOT NULL,
    entry_percent TEXT NOT NULL,
    total_invested TEXT NOT NULL,
    total_quantity TEXT NOT NULL,
    remaining_quantity TEXT NOT NULL,
    average_price TEXT NOT NULL,
    next_buy_price TEXT,
    target_sell_price TEXT,
    initial_balance TEXT NOT NULL,
    max_exposure TEXT NOT NULL,
    partial_sell_done INTEGER NOT NULL DEFAULT 0,
    trailing_high_price TEXT,
    trailing_stop_price TEXT,
    realized_proceeds TEXT NOT NULL,
    entry_rsi REAL,
    entry_ema200 REAL,
    entry_atr REAL,
    total_profit TEXT,
    profit_percent TEXT,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    closed_at TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_cycles_symbol_status ON cycles(symbol, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_cycles_one_open_per_symbol
    ON cycles(symbol) WHERE status != 'COMPLETED';

CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id INTEGER NOT NULL REFERENCES cycles(id),
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    quantity TEXT NOT NULL,
    remaining_quantity TEXT NOT NULL,
    entry_price TEXT NOT NULL,
    invested_amount TEXT NOT NULL,
    buy_number INTEGER NOT NULL,
    order_id TEXT,
    fee TEXT NOT NULL,
    fee_currency TEXT,
    realized_proceeds TEXT NOT NULL,
    exit_price TEXT,
    exit_order_id TEXT,
    profit TEXT,
    profit_percent TEXT,
    status TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    closed_at TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_positions_cycle ON positions(cycle_id);

CREATE TABLE IF NOT EXISTS bot_states (
    scope TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    peak_balance TEXT NOT NULL,
    current_balance TEXT NOT NULL,
    max_drawdown_hit TEXT NOT NULL,
    paused_until TIMESTAMP,
    crash_detected_at TIMESTAMP,
    consecutive_low_profit_cycles INTEGER NOT NULL DEFAULT 0,
    drawdown_warning_active INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS crash_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    drop_percent TEXT NOT NULL,
    time_window_minutes INTEGER NOT NULL,
    price_at_detection TEXT NOT NULL,
    detected_at TIMESTAMP NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    resolved_at TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_crash_events_symbol ON crash_events(symbol, resolved);

CREATE TABLE IF NOT EXISTS trade_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    quantity TEXT NOT NULL,
    price TEXT NOT NULL,
    cost TEXT NOT NULL,
    order_id TEXT,
    cycle_id INTEGER,
    position_id INTEGER,
    reason TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_trade_log_symbol ON trade_log(symbol);

CREATE TABLE IF NOT EXISTS notification_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    symbol TEXT,
    message TEXT NOT NULL,
    sent INTEGER NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT,
    total_cycles INTEGER NOT NULL,
    winning_cycles INTEGER NOT NULL,
    losing_cycles INTEGER NOT NULL,
    win_rate TEXT NOT NULL,
    net_profit TEXT NOT NULL,
    max_drawdown TEXT NOT NULL,
    max_exposure_hit TEXT NOT NULL,
    avg_cycle_duration_minutes TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);
"""


@dataclass
class ReadSet:
    """Snapshot handed to a unit-of-work planner."""
    cycle: Optional[Cycle] = None
    positions: List[Position] = field(default_factory=list)
    bot_states: Dict[str, BotState] = field(default_factory=dict)
    unresolved_crash_events: List[CrashEvent] = field(default_factory=list)


@dataclass
class WriteSet:
    """
    Rows a planner wants committed together.

    A cycle or position with ``id=None`` is inserted, otherwise updated.
    Positions and trades without a cycle_id inherit the cycle's id after
    insert; trades without a position_id are linked to the written position
    carrying the same order_id.
    """
    cycle: Optional[Cycle] = None
    positions: List[Position] = field(default_factory=list)
    trades: List[TradeRecord] = field(default_factory=list)
    bot_states: List[BotState] = field(default_factory=list)
    crash_events: List[CrashEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.cycle or self.positions or self.trades or self.bot_states or self.crash_events)


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


def _parse_dec(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def _parse_ts(value: Any) -> Optional[datetime]:
    return None if value is None else datetime.fromisoformat(value)


class LedgerStore:
    """
    Durable ledger on a single SQLite connection.

    The connection runs in autocommit mode; every write path opens an
    explicit ``BEGIN IMMEDIATE`` transaction under an RLock, so a unit of
    work observes and writes a consistent view.
    """

    def __init__(self, path: str = "data/gridtrader.db", busy_timeout_seconds: float = 10.0):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            path, timeout=busy_timeout_seconds, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._in_transaction = False
        logger.info(f"Initialized LedgerStore at {path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.info("LedgerStore closed")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Immediate transaction; nested use joins the outer one."""
        with self._lock:
            if self._in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self._conn
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error:
                    # A failed COMMIT leaves the transaction open
                    self._rollback()
                    raise
            finally:
                self._in_transaction = False

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def run_unit_of_work(
        self,
        plan: Callable[[ReadSet], WriteSet],
        *,
        cycle_id: Optional[int] = None,
        scopes: Sequence[str] = (),
        crash_symbol: Optional[str] = None,
    ) -> WriteSet:
        """
        Read, plan and commit atomically.

        Args:
            plan: pure function ReadSet -> WriteSet
            cycle_id: cycle (and its positions) to load into the read set
            scopes: bot state scopes to load
            crash_symbol: load unresolved crash events for this symbol

        Returns:
            The committed WriteSet with generated ids filled in

        Raises:
            LedgerError: storage failure; nothing from the unit was written
        """
        try:
            with self.transaction():
                read_set = ReadSet()
                if cycle_id is not None:
                    read_set.cycle = self.get_cycle(cycle_id)
                    if read_set.cycle is None:
                        raise LedgerError(f"Cycle {cycle_id} not found")
                    read_set.positions = self.get_positions(cycle_id)
                for scope in scopes:
                    state = self.get_bot_state(scope)
                    if state is not None:
                        read_set.bot_states[scope] = state
                if crash_symbol is not None:
                    read_set.unresolved_crash_events = self.get_unresolved_crash_events(crash_symbol)

                write_set = plan(read_set)
                self._apply(write_set)
                return write_set
        except sqlite3.Error as exc:
            logger.error(f"Ledger unit of work rolled back: {exc}")
            raise LedgerError(str(exc)) from exc

    def _apply(self, write_set: WriteSet) -> None:
        cycle_id = None
        if write_set.cycle is not None:
            cycle_id = self._save_cycle(write_set.cycle)

        position_ids_by_order: Dict[str, int] = {}
        for position in write_set.positions:
            if position.cycle_id is None and cycle_id is not None:
                position.cycle_id = cycle_id
            pid = self._save_position(position)
            if position.order_id:
                position_ids_by_order[position.order_id] = pid

        for trade in write_set.trades:
            if trade.cycle_id is None:
                trade.cycle_id = cycle_id
            if trade.position_id is None and trade.order_id in position_ids_by_order:
                trade.position_id = position_ids_by_order[trade.order_id]
            self._insert_trade(trade)

        for state in write_set.bot_states:
            self.save_bot_state(state)

        for event in write_set.crash_events:
            self.save_crash_event(event)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _save_cycle(self, cycle: Cycle) -> int:
        cycle.updated_at = utc_now()
        values = (
            cycle.symbol, cycle.status.value, cycle.buy_count, cycle.max_buys,
            _dec(cycle.grid_percent), _dec(cycle.entry_percent),
            _dec(cycle.total_invested), _dec(cycle.total_quantity), _dec(cycle.remaining_quantity),
            _dec(cycle.average_price), _dec(cycle.next_buy_price), _dec(cycle.target_sell_price),
            _dec(cycle.initial_balance), _dec(cycle.max_exposure), int(cycle.partial_sell_done),
            _dec(cycle.trailing_high_price), _dec(cycle.trailing_stop_price), _dec(cycle.realized_proceeds),
            cycle.entry_rsi, cycle.entry_ema200, cycle.entry_atr,
            _dec(cycle.total_profit), _dec(cycle.profit_percent),
            _ts(cycle.created_at), _ts(cycle.updated_at), _ts(cycle.closed_at),
        )
        with self.transaction() as conn:
            if cycle.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO cycles (
                        symbol, status, buy_count, max_buys, grid_percent, entry_percent,
                        total_invested, total_quantity, remaining_quantity, average_price,
                        next_buy_price, target_sell_price, initial_balance, max_exposure,
                        partial_sell_done, trailing_high_price, trailing_stop_price,
                        realized_proceeds, entry_rsi, entry_ema200, entry_atr,
                        total_profit, profit_percent, created_at, updated_at, closed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                cycle.id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE cycles SET
                        symbol = ?, status = ?, buy_count = ?, max_buys = ?, grid_percent = ?,
                        entry_percent = ?, total_invested = ?, total_quantity = ?,
                        remaining_quantity = ?, average_price = ?, next_buy_price = ?,
                        target_sell_price = ?, initial_balance = ?, max_exposure = ?,
                        partial_sell_done = ?, trailing_high_price = ?, trailing_stop_price = ?,
                        realized_proceeds = ?, entry_rsi = ?, entry_ema200 = ?, entry_atr = ?,
                        total_profit = ?, profit_percent = ?, created_at = ?, updated_at = ?,
                        closed_at = ?
                    WHERE id = ?
                    """,
                    values + (cycle.id,),
                )
        return cycle.id

    def save_cycle(self, cycle: Cycle) -> Cycle:
        try:
            self._save_cycle(cycle)
        except sqlite3.Error as exc:
            raise LedgerError(str(exc)) from exc
        return cycle

    @staticmethod
    def _cycle_from_row(row: sqlite3.Row) -> Cycle:
        return Cycle(
            id=row["id"],
            symbol=row["symbol"],
            status=CycleStatus(row["status"]),
            buy_count=row["buy_count"],
            max_buys=row["max_buys"],
            grid_percent=to_decimal(row["grid_percent"]),
            entry_percent=to_decimal(row["entry_percent"]),
            total_invested=to_decimal(row["total_invested"]),
            total_quantity=to_decimal(row["total_quantity"]),
            remaining_quantity=to_decimal(row["remaining_quantity"]),
            average_price=to_decimal(row["average_price"]),
            next_buy_price=_parse_dec(row["next_buy_price"]),
            target_sell_price=_parse_dec(row["target_sell_price"]),
            initial_balance=to_decimal(row["initial_balance"]),
            max_exposure=to_decimal(row["max_exposure"]),
            partial_sell_done=bool(row["partial_sell_done"]),
            trailing_high_price=_parse_dec(row["trailing_high_price"]),
            trailing_stop_price=_parse_dec(row["trailing_stop_price"]),
            realized_proceeds=to_decimal(row["realized_proceeds"]),
            entry_rsi=row["entry_rsi"],
            entry_ema200=row["entry_ema200"],
            entry_atr=row["entry_atr"],
            total_profit=_parse_dec(row["total_profit"]),
            profit_percent=_parse_dec(row["profit_percent"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            closed_at=_parse_ts(row["closed_at"]),
        )

    def get_cycle(self, cycle_id: int) -> Optional[Cycle]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM cycles WHERE id = ?", (cycle_id,)).fetchone()
        return self._cycle_from_row(row) if row else None

    def get_active_cycle(self, symbol: str) -> Optional[Cycle]:
        """The symbol's non-terminal cycle, if any."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM cycles WHERE symbol = ? AND status != ? ORDER BY id DESC LIMIT 1",
                (symbol, CycleStatus.COMPLETED.value),
            ).fetchone()
        return self._cycle_from_row(row) if row else None

    def get_completed_cycles(self, symbol: Optional[str] = None, limit: Optional[int] = None) -> List[Cycle]:
        """Completed cycles, most recently closed first."""
        query = "SELECT * FROM cycles WHERE status = ?"
        params: List[Any] = [CycleStatus.COMPLETED.value]
        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol)
        query += " ORDER BY closed_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._cycle_from_row(row) for row in rows]

    def get_cycles(self, symbol: Optional[str] = None) -> List[Cycle]:
        query = "SELECT * FROM cycles"
        params: List[Any] = []
        if symbol is not None:
            query += " WHERE symbol = ?"
            params.append(symbol)
        query += " ORDER BY id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._cycle_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def _save_position(self, position: Position) -> int:
        values = (
            position.cycle_id, position.symbol, position.side,
            _dec(position.quantity), _dec(position.remaining_quantity), _dec(position.entry_price),
            _dec(position.invested_amount), position.buy_number, position.order_id,
            _dec(position.fee), position.fee_currency, _dec(position.realized_proceeds),
            _dec(position.exit_price), position.exit_order_id, _dec(position.profit),
            _dec(position.profit_percent), position.status.value,
            _ts(position.created_at), _ts(position.closed_at),
        )
        with self.transaction() as conn:
            if position.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO positions (
                        cycle_id, symbol, side, quantity, remaining_quantity, entry_price,
                        invested_amount, buy_number, order_id, fee, fee_currency,
                        realized_proceeds, exit_price, exit_order_id, profit, profit_percent,
                        status, created_at, closed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                position.id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE positions SET
                        cycle_id = ?, symbol = ?, side = ?, quantity = ?, remaining_quantity = ?,
                        entry_price = ?, invested_amount = ?, buy_number = ?, order_id = ?,
                        fee = ?, fee_currency = ?, realized_proceeds = ?, exit_price = ?,
                        exit_order_id = ?, profit = ?, profit_percent = ?, status = ?,
                        created_at = ?, closed_at = ?
                    WHERE id = ?
                    """,
                    values + (position.id,),
                )
        return position.id

    @staticmethod
    def _position_from_row(row: sqlite3.Row) -> Position:
        return Position(
            id=row["id"],
            cycle_id=row["cycle_id"],
            symbol=row["symbol"],
            side=row["side"],
            quantity=to_decimal(row["quantity"]),
            remaining_quantity=to_decimal(row["remaining_quantity"]),
            entry_price=to_decimal(row["entry_price"]),
            invested_amount=to_decimal(row["invested_amount"]),
            buy_number=row["buy_number"],
            order_id=row["order_id"],
            fee=to_decimal(row["fee"]),
            fee_currency=row["fee_currency"],
            realized_proceeds=to_decimal(row["realized_proceeds"]),
            exit_price=_parse_dec(row["exit_price"]),
            exit_order_id=row["exit_order_id"],
            profit=_parse_dec(row["profit"]),
            profit_percent=_parse_dec(row["profit_percent"]),
            status=PositionStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            closed_at=_parse_ts(row["closed_at"]),
        )

    def get_positions(self, cycle_id: int, open_only: bool = False) -> List[Position]:
        query = "SELECT * FROM positions WHERE cycle_id = ?"
        params: List[Any] = [cycle_id]
        if open_only:
            query += " AND status != ?"
            params.append(PositionStatus.CLOSED.value)
        query += " ORDER BY buy_number, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._position_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Bot state
    # ------------------------------------------------------------------

    def get_bot_state(self, scope: str) -> Optional[BotState]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM bot_states WHERE scope = ?", (scope,)).fetchone()
        if not row:
            return None
        return BotState(
            scope=row["scope"],
            state=BotStateType(row["state"]),
            peak_balance=to_decimal(row["peak_balance"]),
            current_balance=to_decimal(row["current_balance"]),
            max_drawdown_hit=to_decimal(row["max_drawdown_hit"]),
            paused_until=_parse_ts(row["paused_until"]),
            crash_detected_at=_parse_ts(row["crash_detected_at"]),
            consecutive_low_profit_cycles=row["consecutive_low_profit_cycles"],
            drawdown_warning_active=bool(row["drawdown_warning_active"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def get_bot_states(self) -> List[BotState]:
        with self._lock:
            scopes = [row["scope"] for row in self._conn.execute("SELECT scope FROM bot_states ORDER BY scope")]
        return [state for state in (self.get_bot_state(scope) for scope in scopes) if state is not None]

    def save_bot_state(self, state: BotState) -> BotState:
        state.updated_at = utc_now()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO bot_states (
                    scope, state, peak_balance, current_balance, max_drawdown_hit,
                    paused_until, crash_detected_at, consecutive_low_profit_cycles,
                    drawdown_warning_active, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope) DO UPDATE SET
                    state = excluded.state,
                    peak_balance = excluded.peak_balance,
                    current_balance = excluded.current_balance,
                    max_drawdown_hit = excluded.max_drawdown_hit,
                    paused_until = excluded.paused_until,
                    crash_detected_at = excluded.crash_detected_at,
                    consecutive_low_profit_cycles = excluded.consecutive_low_profit_cycles,
                    drawdown_warning_active = excluded.drawdown_warning_active,
                    updated_at = excluded.updated_at
                """,
                (
                    state.scope, state.state.value, _dec(state.peak_balance), _dec(state.current_balance),
                    _dec(state.max_drawdown_hit), _ts(state.paused_until), _ts(state.crash_detected_at),
                    state.consecutive_low_profit_cycles, int(state.drawdown_warning_active),
                    _ts(state.updated_at),
                ),
            )
        return state

    # ------------------------------------------------------------------
    # Crash events
    # ------------------------------------------------------------------

    def save_crash_event(self, event: CrashEvent) -> CrashEvent:
        with self.transaction() as conn:
            if event.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO crash_events (
                        symbol, drop_percent, time_window_minutes, price_at_detection,
                        detected_at, resolved, resolved_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.symbol, _dec(event.drop_percent), event.time_window_minutes,
                        _dec(event.price_at_detection), _ts(event.detected_at),
                        int(event.resolved), _ts(event.resolved_at),
                    ),
                )
                event.id = cursor.lastrowid
            else:
                conn.execute(
                    "UPDATE crash_events SET resolved = ?, resolved_at = ? WHERE id = ?",
                    (int(event.resolved), _ts(event.resolved_at), event.id),
                )
        return event

    def _crash_events(self, query: str, params: Sequence[Any]) -> List[CrashEvent]:
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            CrashEvent(
                id=row["id"],
                symbol=row["symbol"],
                drop_percent=to_decimal(row["drop_percent"]),
                time_window_minutes=row["time_window_minutes"],
                price_at_detection=to_decimal(row["price_at_detection"]),
                detected_at=_parse_ts(row["detected_at"]),
                resolved=bool(row["resolved"]),
                resolved_at=_parse_ts(row["resolved_at"]),
            )
            for row in rows
        ]

    def get_unresolved_crash_events(self, symbol: str) -> List[CrashEvent]:
        return self._crash_events(
            "SELECT * FROM crash_events WHERE symbol = ? AND resolved = 0 ORDER BY id", (symbol,)
        )

    def get_crash_events(self, symbol: Optional[str] = None) -> List[CrashEvent]:
        if symbol is None:
            return self._crash_events("SELECT * FROM crash_events ORDER BY id", ())
        return self._crash_events("SELECT * FROM crash_events WHERE symbol = ? ORDER BY id", (symbol,))

    # ------------------------------------------------------------------
    # Trade log / notification log / metrics
    # ------------------------------------------------------------------

    def _insert_trade(self, trade: TradeRecord) -> TradeRecord:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO trade_log (
                    symbol, side, quantity, price, cost, order_id, cycle_id,
                    position_id, reason, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.symbol, trade.side, _dec(trade.quantity), _dec(trade.price), _dec(trade.cost),
                    trade.order_id, trade.cycle_id, trade.position_id, trade.reason, _ts(trade.created_at),
                ),
            )
            trade.id = cursor.lastrowid
        return trade

    def get_trades(self, symbol: Optional[str] = None, cycle_id: Optional[int] = None) -> List[TradeRecord]:
        query = "SELECT * FROM trade_log WHERE 1 = 1"
        params: List[Any] = []
        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol)
        if cycle_id is not None:
            query += " AND cycle_id = ?"
            params.append(cycle_id)
        query += " ORDER BY id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            TradeRecord(
                id=row["id"],
                symbol=row["symbol"],
                side=row["side"],
                quantity=to_decimal(row["quantity"]),
                price=to_decimal(row["price"]),
                cost=to_decimal(row["cost"]),
                order_id=row["order_id"],
                cycle_id=row["cycle_id"],
                position_id=row["position_id"],
                reason=row["reason"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    def log_notification(self, record: NotificationRecord) -> NotificationRecord:
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO notification_log (type, symbol, message, sent, created_at) VALUES (?, ?, ?, ?, ?)",
                (record.type, record.symbol, record.message, int(record.sent), _ts(record.created_at)),
            )
            record.id = cursor.lastrowid
        return record

    def get_notifications(self, limit: Optional[int] = None) -> List[NotificationRecord]:
        query = "SELECT * FROM notification_log ORDER BY id"
        params: List[Any] = []
        if limit is not None:
            query = "SELECT * FROM (SELECT * FROM notification_log ORDER BY id DESC LIMIT ?) ORDER BY id"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            NotificationRecord(
                id=row["id"],
                type=row["type"],
                symbol=row["symbol"],
                message=row["message"],
                sent=bool(row["sent"]),
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    def save_metrics_snapshot(self, snapshot: MetricsSnapshot) -> MetricsSnapshot:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO metrics_snapshots (
                    symbol, total_cycles, winning_cycles, losing_cycles, win_rate, net_profit,
                    max_drawdown, max_exposure_hit, avg_cycle_duration_minutes, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.symbol, snapshot.total_cycles, snapshot.winning_cycles, snapshot.losing_cycles,
                    _dec(snapshot.win_rate), _dec(snapshot.net_profit), _dec(snapshot.max_drawdown),
                    _dec(snapshot.max_exposure_hit), _dec(snapshot.avg_cycle_duration_minutes),
                    _ts(snapshot.created_at),
                ),
            )
            snapshot.id = cursor.lastrowid
        return snapshot

    def get_metrics_snapshots(self, symbol: Optional[str] = None) -> List[MetricsSnapshot]:
        if symbol is None:
            query, params = "SELECT * FROM metrics_snapshots WHERE symbol IS NULL ORDER BY id", ()
        else:
            query, params = "SELECT * FROM metrics_snapshots WHERE symbol = ? ORDER BY id", (symbol,)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            MetricsSnapshot(
                id=row["id"],
                symbol=row["symbol"],
                total_cycles=row["total_cycles"],
                winning_cycles=row["winning_cycles"],
                losing_cycles=row["losing_cycles"],
                win_rate=to_decimal(row["win_rate"]),
                net_profit=to_decimal(row["net_profit"]),
                max_drawdown=to_decimal(row["max_drawdown"]),
                max_exposure_hit=to_decimal(row["max_exposure_hit"]),
                avg_cycle_duration_minutes=to_decimal(row["avg_cycle_duration_minutes"]),
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]


def create_state_store_from_config(state_cfg: Optional[Dict[str, Any]]) -> LedgerStore:
    """Build the ledger from the ``state`` section of app.yaml."""
    cfg = state_cfg or {}
    path = cfg.get("path") or "data/gridtrader.db"
    return LedgerStore(str(path), busy_timeout_seconds=float(cfg.get("busy_timeout_seconds", 10.0)))
