"""
Domain records shared by the ledger, risk manager and strategy.

All money/price/quantity fields are Decimal. Records are plain dataclasses;
state transitions live in core.position_manager and core.risk, persistence
in infra.state_store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from core.numeric import ZERO

GLOBAL_SCOPE = "GLOBAL"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CycleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PARTIAL_SELL = "PARTIAL_SELL"
    TRAILING = "TRAILING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self is CycleStatus.COMPLETED


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    PARTIALLY_CLOSED = "PARTIALLY_CLOSED"
    CLOSED = "CLOSED"


class BotStateType(str, Enum):
    RUNNING = "RUNNING"
    PAUSED_DRAWDOWN = "PAUSED_DRAWDOWN"
    PAUSED_CRASH = "PAUSED_CRASH"
    PAUSED_LATERAL = "PAUSED_LATERAL"


class TradeReason(str, Enum):
    INITIAL_BUY = "INITIAL_BUY"
    DCA_BUY = "DCA_BUY"
    PARTIAL_SELL = "PARTIAL_SELL"
    TRAILING_SELL = "TRAILING_SELL"
    FULL_CLOSE = "FULL_CLOSE"


@dataclass
class Cycle:
    """
    One averaging campaign for a symbol, from first buy to full exit.

    Aggregates (total_invested, total_quantity, remaining_quantity,
    average_price, next_buy_price, target_sell_price, buy_count) are derived
    from the cycle's positions by ``core.position_manager.recalculate_cycle``
    and are never edited independently.
    """
    symbol: str
    grid_percent: Decimal
    entry_percent: Decimal
    max_buys: int
    id: Optional[int] = None
    status: CycleStatus = CycleStatus.ACTIVE
    buy_count: int = 0
    total_invested: Decimal = ZERO
    total_quantity: Decimal = ZERO
    remaining_quantity: Decimal = ZERO
    average_price: Decimal = ZERO
    next_buy_price: Optional[Decimal] = None
    target_sell_price: Optional[Decimal] = None
    initial_balance: Decimal = ZERO
    max_exposure: Decimal = ZERO
    partial_sell_done: bool = False
    trailing_high_price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    realized_proceeds: Decimal = ZERO
    entry_rsi: Optional[float] = None
    entry_ema200: Optional[float] = None
    entry_atr: Optional[float] = None
    total_profit: Optional[Decimal] = None
    profit_percent: Optional[Decimal] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal


@dataclass
class Position:
    """One executed buy inside a cycle."""
    cycle_id: int
    symbol: str
    quantity: Decimal
    entry_price: Decimal
    invested_amount: Decimal
    buy_number: int
    id: Optional[int] = None
    side: str = "buy"
    remaining_quantity: Optional[Decimal] = None
    order_id: Optional[str] = None
    fee: Decimal = ZERO
    fee_currency: Optional[str] = None
    realized_proceeds: Decimal = ZERO
    exit_price: Optional[Decimal] = None
    exit_order_id: Optional[str] = None
    profit: Optional[Decimal] = None
    profit_percent: Optional[Decimal] = None
    status: PositionStatus = PositionStatus.OPEN
    created_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.remaining_quantity is None:
            self.remaining_quantity = self.quantity

    @property
    def is_open(self) -> bool:
        return self.status is not PositionStatus.CLOSED


@dataclass
class BotState:
    """Risk state for one scope: GLOBAL or a symbol."""
    scope: str
    state: BotStateType = BotStateType.RUNNING
    peak_balance: Decimal = ZERO
    current_balance: Decimal = ZERO
    max_drawdown_hit: Decimal = ZERO
    paused_until: Optional[datetime] = None
    crash_detected_at: Optional[datetime] = None
    consecutive_low_profit_cycles: int = 0
    drawdown_warning_active: bool = False
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_running(self) -> bool:
        return self.state is BotStateType.RUNNING


@dataclass
class CrashEvent:
    symbol: str
    drop_percent: Decimal
    time_window_minutes: int
    price_at_detection: Decimal
    id: Optional[int] = None
    detected_at: datetime = field(default_factory=utc_now)
    resolved: bool = False
    resolved_at: Optional[datetime] = None


@dataclass
class TradeRecord:
    """One executed market order, as written to the trade log."""
    symbol: str
    side: str
    quantity: Decimal
    price: Decimal
    cost: Decimal
    reason: str
    order_id: Optional[str] = None
    cycle_id: Optional[int] = None
    position_id: Optional[int] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class NotificationRecord:
    type: str
    message: str
    sent: bool
    symbol: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class MetricsSnapshot:
    symbol: Optional[str]
    total_cycles: int
    winning_cycles: int
    losing_cycles: int
    win_rate: Decimal
    net_profit: Decimal
    max_drawdown: Decimal
    max_exposure_hit: Decimal
    avg_cycle_duration_minutes: Decimal
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class IndicatorSnapshot:
    """Indicator values for one symbol; any field may be None when unavailable."""
    symbol: str
    rsi_15m: Optional[float] = None
    rsi_1h: Optional[float] = None
    ema200_4h: Optional[float] = None
    atr14_4h: Optional[float] = None
    volume_ratio: Optional[float] = None
    fetched_at: datetime = field(default_factory=utc_now)

    @property
    def rsi(self) -> Optional[float]:
        """Short timeframe RSI, falling back to the hourly one."""
        return self.rsi_15m if self.rsi_15m is not None else self.rsi_1h


@dataclass
class OrderFill:
    """Normalized market order result. Decimal at the engine boundary."""
    symbol: str
    side: str
    price: Decimal
    filled: Decimal
    cost: Decimal
    order_id: str
    fee: Decimal = ZERO
    fee_currency: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class CycleSummary:
    cycle_id: int
    symbol: str
    status: CycleStatus
    buy_count: int
    max_buys: int
    total_invested: Decimal
    remaining_quantity: Decimal
    average_price: Decimal
    next_buy_price: Optional[Decimal]
    target_sell_price: Optional[Decimal]
    trailing_stop_price: Optional[Decimal]
    current_value: Optional[Decimal]
    unrealized_pnl: Optional[Decimal]
    total_profit: Optional[Decimal]
    profit_percent: Optional[Decimal]
    duration_minutes: Decimal
