"""
gridtrader Core: Risk Manager

Pause state machine per scope (GLOBAL and one per symbol), driven by three
detectors:
- drawdown from the peak account value (pauses GLOBAL)
- crash: a fast price drop inside a time window (pauses the symbol)
- lateral market: consecutive low-profit cycles (pauses the symbol for a while)

Transitions are pure functions ``(BotState, event) -> BotState``; the
RiskManager loads state from the ledger, applies them and persists the
result, sending one notification on pause entry and one on recovery.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from core.models import GLOBAL_SCOPE, BotState, BotStateType, CrashEvent, utc_now
from core.numeric import HUNDRED, ZERO, to_decimal
from infra.state_store import LedgerStore, ReadSet, WriteSet

logger = logging.getLogger(__name__)


class DrawdownOutcome(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    NEW_WARNING = "NEW_WARNING"
    NEW_PAUSE = "NEW_PAUSE"
    ALREADY_PAUSED = "ALREADY_PAUSED"


@dataclass
class DrawdownVerdict:
    outcome: DrawdownOutcome
    drawdown: Decimal

    @property
    def paused(self) -> bool:
        return self.outcome in (DrawdownOutcome.NEW_PAUSE, DrawdownOutcome.ALREADY_PAUSED)


@dataclass
class TradeGate:
    """Result of the per-tick trading gate"""
    allowed: bool
    reason: Optional[str] = None
    auto_resume: bool = False


# ----------------------------------------------------------------------
# Pure transitions
# ----------------------------------------------------------------------

def apply_balance_update(state: BotState, balance: Decimal) -> BotState:
    """Record the account value; the peak is a running maximum."""
    peak = state.peak_balance
    if balance > peak or peak == 0:
        peak = balance
    return replace(state, current_balance=balance, peak_balance=peak)


def current_drawdown(state: BotState) -> Decimal:
    if state.peak_balance <= 0:
        return ZERO
    return (state.peak_balance - state.current_balance) / state.peak_balance


def evaluate_drawdown(
    state: BotState,
    max_drawdown: Decimal,
    warning_ratio: Decimal = Decimal("0.75"),
) -> Tuple[BotState, DrawdownVerdict]:
    """
    Classify the current drawdown.

    max_drawdown_hit never decreases. A scope that is already paused stays
    paused without a new outcome, so repeated checks do not re-notify.
    """
    if state.peak_balance <= 0:
        return state, DrawdownVerdict(DrawdownOutcome.OK, ZERO)

    drawdown = current_drawdown(state)
    new_state = replace(state, max_drawdown_hit=max(state.max_drawdown_hit, drawdown))

    if not state.is_running:
        return new_state, DrawdownVerdict(DrawdownOutcome.ALREADY_PAUSED, drawdown)

    if drawdown >= max_drawdown:
        new_state = replace(new_state, state=BotStateType.PAUSED_DRAWDOWN, drawdown_warning_active=True)
        return new_state, DrawdownVerdict(DrawdownOutcome.NEW_PAUSE, drawdown)

    if drawdown >= max_drawdown * warning_ratio:
        if state.drawdown_warning_active:
            return new_state, DrawdownVerdict(DrawdownOutcome.WARNING, drawdown)
        new_state = replace(new_state, drawdown_warning_active=True)
        return new_state, DrawdownVerdict(DrawdownOutcome.NEW_WARNING, drawdown)

    new_state = replace(new_state, drawdown_warning_active=False)
    return new_state, DrawdownVerdict(DrawdownOutcome.OK, drawdown)


def apply_pause(state: BotState, reason: BotStateType, paused_until: Optional[datetime] = None) -> BotState:
    if reason is BotStateType.RUNNING:
        raise ValueError("RUNNING is not a pause reason")
    return replace(state, state=reason, paused_until=paused_until)


def apply_crash(state: BotState, now: datetime) -> BotState:
    return replace(state, state=BotStateType.PAUSED_CRASH, crash_detected_at=now)


def apply_resume(state: BotState) -> BotState:
    return replace(state, state=BotStateType.RUNNING, paused_until=None, crash_detected_at=None)


def apply_cycle_result(
    state: BotState,
    profit_percent: Decimal,
    threshold: Decimal,
    cycle_count: int,
    pause_hours: float,
    now: datetime,
) -> Tuple[BotState, bool]:
    """
    Count consecutive low-profit cycles; pause the symbol once the count is hit.

    ``profit_percent`` is in percent units (3 == 3%); ``threshold`` is a
    fraction (0.005 == 0.5%). Returns (state', lateral_triggered).
    """
    is_low_profit = abs(profit_percent) < threshold * HUNDRED
    count = state.consecutive_low_profit_cycles + 1 if is_low_profit else 0

    if count >= cycle_count:
        paused = replace(
            state,
            state=BotStateType.PAUSED_LATERAL,
            paused_until=now + timedelta(hours=pause_hours),
            consecutive_low_profit_cycles=0,
        )
        return paused, True

    return replace(state, consecutive_low_profit_cycles=count), False


def evaluate_trade_gate(global_state: BotState, symbol_state: BotState, now: datetime) -> TradeGate:
    """GLOBAL must be running; the symbol must be running or past its lateral pause."""
    if not global_state.is_running:
        return TradeGate(allowed=False, reason=f"Global bot paused: {global_state.state.value}")

    if not symbol_state.is_running:
        if (
            symbol_state.state is BotStateType.PAUSED_LATERAL
            and symbol_state.paused_until is not None
            and now > symbol_state.paused_until
        ):
            return TradeGate(allowed=True, auto_resume=True)
        return TradeGate(allowed=False, reason=f"{symbol_state.scope} paused: {symbol_state.state.value}")

    return TradeGate(allowed=True)


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------

class RiskManager:
    """
    Risk gate and pause bookkeeping over the ledger.

    Args:
        ledger: LedgerStore holding bot states and crash events
        broker: exposes fetch_recent_prices(symbol, window_minutes)
        policy: policy.yaml dict (reads ``risk`` and ``entry``)
        notifier: NotificationService or None
        clock: returns the current UTC datetime
    """

    def __init__(
        self,
        ledger: LedgerStore,
        broker,
        policy: Dict,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.broker = broker
        self.notifier = notifier
        self._now = clock or utc_now

        risk_cfg = policy.get("risk", {}) or {}
        entry_cfg = policy.get("entry", {}) or {}
        self.max_drawdown = to_decimal(risk_cfg.get("max_drawdown", "0.15"))
        self.drawdown_warning_ratio = to_decimal(risk_cfg.get("drawdown_warning_ratio", "0.75"))
        self.crash_drop = to_decimal(risk_cfg.get("crash_drop_percent", "0.08"))
        self.crash_window_minutes = int(risk_cfg.get("crash_time_window_minutes", 240))
        self.lateral_cycle_count = int(risk_cfg.get("lateral_cycle_count", 3))
        self.lateral_threshold = to_decimal(risk_cfg.get("lateral_profit_threshold", "0.005"))
        self.lateral_pause_hours = float(risk_cfg.get("lateral_pause_hours", 24))
        self.rsi_recovery = float(entry_cfg.get("rsi_recovery", 35))

        logger.info(
            f"RiskManager initialized: max_drawdown={self.max_drawdown}, crash={self.crash_drop} "
            f"in {self.crash_window_minutes}m, lateral={self.lateral_cycle_count}x<{self.lateral_threshold}"
        )

    # State access

    @staticmethod
    def _scope(symbol: Optional[str]) -> str:
        return symbol or GLOBAL_SCOPE

    def get_bot_state(self, symbol: Optional[str] = None) -> BotState:
        """State for GLOBAL (symbol=None) or a symbol, created RUNNING on first access."""
        scope = self._scope(symbol)
        state = self.ledger.get_bot_state(scope)
        if state is None:
            state = self.ledger.save_bot_state(BotState(scope=scope))
            logger.info(f"Created initial bot state for {scope}")
        return state

    def get_all_states(self) -> List[BotState]:
        return self.ledger.get_bot_states()

    def _commit(self, *states: BotState) -> None:
        self.ledger.run_unit_of_work(lambda _read: WriteSet(bot_states=list(states)))

    def _notify(self, method: str, *args) -> None:
        if self.notifier is None:
            return
        getattr(self.notifier, method)(*args)

    # Gate

    def can_trade(self, symbol: str) -> TradeGate:
        global_state = self.get_bot_state()
        symbol_state = self.get_bot_state(symbol)
        gate = evaluate_trade_gate(global_state, symbol_state, self._now())
        if gate.auto_resume:
            self._commit(apply_resume(symbol_state))
            logger.info(f"{symbol}: lateral pause expired, resuming")
            self._notify("notify_bot_resumed", symbol)
        return gate

    # Drawdown

    def update_balance(self, total_balance: Decimal) -> BotState:
        state = apply_balance_update(self.get_bot_state(), total_balance)
        self._commit(state)
        return state

    def check_drawdown(self) -> DrawdownVerdict:
        state, verdict = evaluate_drawdown(self.get_bot_state(), self.max_drawdown, self.drawdown_warning_ratio)
        self._commit(state)

        if verdict.outcome is DrawdownOutcome.NEW_PAUSE:
            logger.error(
                f"Max drawdown reached: {verdict.drawdown:.4f} (peak={state.peak_balance}, "
                f"current={state.current_balance}); pausing GLOBAL"
            )
            self._notify("notify_bot_paused", BotStateType.PAUSED_DRAWDOWN.value, GLOBAL_SCOPE)
            self._notify("notify_drawdown_warning", verdict.drawdown)
        elif verdict.outcome is DrawdownOutcome.NEW_WARNING:
            logger.warning(f"Drawdown approaching limit: {verdict.drawdown:.4f} (max {self.max_drawdown})")
            self._notify("notify_drawdown_warning", verdict.drawdown)
        elif verdict.outcome is DrawdownOutcome.WARNING:
            logger.debug(f"Drawdown still in warning zone: {verdict.drawdown:.4f}")
        return verdict

    def reset_peak(self, value: Optional[Decimal] = None) -> BotState:
        """Operator reset of the GLOBAL high-water mark (defaults to current balance)."""
        state = self.get_bot_state()
        new_peak = state.current_balance if value is None else to_decimal(value)
        updated = replace(state, peak_balance=new_peak, drawdown_warning_active=False)
        self._commit(updated)
        logger.warning(f"Peak balance reset: {state.peak_balance} -> {new_peak}")
        return updated

    # Crash

    def check_crash_condition(self, symbol: str, current_price: Decimal) -> bool:
        """
        Pause the symbol if price fell crash_drop or more inside the window.

        Returns True only when a new crash was recorded on this call.
        """
        try:
            recent = self.broker.fetch_recent_prices(symbol, self.crash_window_minutes)
        except Exception as e:
            logger.error(f"{symbol}: failed to check crash condition: {e}")
            return False

        if len(recent) < 2:
            return False

        oldest_price = recent[0][0]
        if oldest_price <= 0:
            return False
        change = (current_price - oldest_price) / oldest_price
        if change > -self.crash_drop:
            return False

        now = self._now()
        recorded: Dict[str, bool] = {"new": False}

        def plan(read: ReadSet) -> WriteSet:
            if read.unresolved_crash_events:
                return WriteSet()
            state = read.bot_states.get(symbol) or BotState(scope=symbol)
            event = CrashEvent(
                symbol=symbol,
                drop_percent=abs(change),
                time_window_minutes=self.crash_window_minutes,
                price_at_detection=current_price,
                detected_at=now,
            )
            recorded["new"] = True
            return WriteSet(bot_states=[apply_crash(state, now)], crash_events=[event])

        self.ledger.run_unit_of_work(plan, scopes=[symbol], crash_symbol=symbol)
        if not recorded["new"]:
            logger.debug(f"{symbol}: crash already recorded and unresolved")
            return False

        logger.error(
            f"{symbol}: crash detected, {abs(change) * HUNDRED:.2f}% drop in {self.crash_window_minutes}m "
            f"({oldest_price} -> {current_price})"
        )
        self._notify("notify_crash_detected", symbol, abs(change))
        return True

    def resolve_crash_if_recovered(self, symbol: str, rsi: Optional[float]) -> bool:
        """Resume a crash-paused symbol once RSI climbs above the recovery level."""
        if rsi is None or rsi <= self.rsi_recovery:
            return False

        now = self._now()

        def plan(read: ReadSet) -> WriteSet:
            state = read.bot_states.get(symbol) or BotState(scope=symbol)
            events = [replace(e, resolved=True, resolved_at=now) for e in read.unresolved_crash_events]
            return WriteSet(bot_states=[apply_resume(state)], crash_events=events)

        self.ledger.run_unit_of_work(plan, scopes=[symbol], crash_symbol=symbol)
        logger.info(f"{symbol}: crash condition resolved (RSI {rsi:.1f} > {self.rsi_recovery:g})")
        self._notify("notify_bot_resumed", symbol)
        return True

    # Lateral market

    def record_cycle_result(self, symbol: str, profit_percent: Decimal) -> bool:
        """Feed a completed cycle's profit; returns True if a lateral pause started."""
        state, triggered = apply_cycle_result(
            self.get_bot_state(symbol),
            to_decimal(profit_percent),
            self.lateral_threshold,
            self.lateral_cycle_count,
            self.lateral_pause_hours,
            self._now(),
        )
        self._commit(state)
        if triggered:
            logger.warning(
                f"{symbol}: lateral market detected, pausing until {state.paused_until.isoformat()}"
            )
            self._notify("notify_lateral_detected", symbol, self.lateral_pause_hours)
        else:
            logger.debug(f"{symbol}: consecutive low-profit cycles = {state.consecutive_low_profit_cycles}")
        return triggered

    # Manual control

    def pause(self, reason: BotStateType, symbol: Optional[str] = None, paused_until: Optional[datetime] = None) -> BotState:
        scope = self._scope(symbol)
        state = apply_pause(self.get_bot_state(symbol), reason, paused_until)
        self._commit(state)
        logger.warning(f"Bot paused: {reason.value} ({scope})")
        self._notify("notify_bot_paused", reason.value, scope)
        return state

    def resume(self, symbol: Optional[str] = None) -> BotState:
        """Resume a scope; any unresolved crash events for the symbol are closed."""
        scope = self._scope(symbol)
        self.get_bot_state(symbol)
        now = self._now()

        def plan(read: ReadSet) -> WriteSet:
            state = apply_resume(read.bot_states[scope])
            events = [replace(e, resolved=True, resolved_at=now) for e in read.unresolved_crash_events]
            return WriteSet(bot_states=[state], crash_events=events)

        write = self.ledger.run_unit_of_work(
            plan, scopes=[scope], crash_symbol=symbol if symbol else None
        )
        logger.info(f"Bot resumed ({scope})")
        self._notify("notify_bot_resumed", scope)
        return write.bot_states[0]
