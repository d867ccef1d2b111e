"""
Grid/DCA strategy engine, one instance per symbol.

A tick walks a fixed pipeline:
    risk gate -> price -> indicators -> balance & drawdown -> crash check
    -> active cycle -> decide one Action -> execute it -> status log

Decisions are pure reads of the current cycle state; every broker call and
its ledger write happen in the executor, individually guarded so a failed
order aborts only that action.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from threading import Lock
from typing import Dict, List, Optional, Tuple

from core.capital import CapitalManager
from core.exceptions import LedgerError, OrderExecutionError
from core.indicators import IndicatorService
from core.models import BotStateType, Cycle, CycleStatus, IndicatorSnapshot, OrderFill, TradeReason
from core.numeric import ZERO, to_decimal
from core.position_manager import PositionManager
from core.risk import RiskManager
from strategy.actions import (
    Action,
    ActivateTrailing,
    DcaBuy,
    FullClose,
    OpenCycle,
    PartialSell,
    TrailingSell,
    Wait,
    action_name,
)

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Outcome of one tick, consumed by the runner and metrics."""
    symbol: str
    action: str
    executed: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None


class GridStrategy:
    """
    Per-symbol decision engine.

    Args:
        symbol: market symbol, e.g. 'BTC/USDT'
        broker: CcxtBroker (or compatible)
        indicators: IndicatorService
        capital: CapitalManager
        positions: PositionManager
        risk: RiskManager
        policy: policy.yaml dict (reads ``grid``)
        notifier: NotificationService or None
        reporter: PerformanceReporter or None
        metrics: MetricsRecorder or None
        account_symbols: every traded symbol, used to value the account
    """

    def __init__(
        self,
        symbol: str,
        broker,
        indicators: IndicatorService,
        capital: CapitalManager,
        positions: PositionManager,
        risk: RiskManager,
        policy: Dict,
        notifier=None,
        reporter=None,
        metrics=None,
        account_symbols: Optional[List[str]] = None,
    ):
        self.symbol = symbol
        self.base_currency = symbol.split("/")[0]
        self.broker = broker
        self.indicators = indicators
        self.capital = capital
        self.positions = positions
        self.risk = risk
        self.notifier = notifier
        self.reporter = reporter
        self.metrics = metrics
        self.account_symbols = list(account_symbols or [symbol])
        self._lock = Lock()

        grid_cfg = policy.get("grid", {}) or {}
        self.partial_sell_percent = to_decimal(grid_cfg.get("partial_sell_percent", "0.50"))

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> TickResult:
        if not self._lock.acquire(blocking=False):
            logger.warning(f"[{self.symbol}] Previous tick still running, skipping")
            return TickResult(self.symbol, "SKIPPED", reason="tick in flight")

        started = time.monotonic()
        try:
            result = self._run_tick()
        except Exception as e:
            logger.error(f"[{self.symbol}] Error in strategy tick: {e}", exc_info=True)
            result = TickResult(self.symbol, "ERROR", error=str(e))
        finally:
            self._lock.release()

        if self.metrics is not None:
            self.metrics.record_tick(self.symbol, result.action, time.monotonic() - started)
        return result

    def _run_tick(self) -> TickResult:
        gate = self.risk.can_trade(self.symbol)
        if not gate.allowed:
            symbol_state = self.risk.get_bot_state(self.symbol)
            if symbol_state.state is BotStateType.PAUSED_CRASH:
                snapshot = self.indicators.get_snapshot(self.symbol)
                self.risk.resolve_crash_if_recovered(self.symbol, snapshot.rsi)
            logger.debug(f"[{self.symbol}] Trading not allowed: {gate.reason}")
            return TickResult(self.symbol, "WAIT", reason=gate.reason)

        price = self.broker.get_current_price(self.symbol)
        snapshot = self.indicators.get_snapshot(self.symbol)

        total_balance = self.capital.get_total_balance(self.account_symbols)
        self.risk.update_balance(total_balance)
        verdict = self.risk.check_drawdown()
        if self.metrics is not None:
            self.metrics.record_balance(total_balance, verdict.drawdown)
        if verdict.paused:
            return TickResult(self.symbol, "WAIT", reason=f"Drawdown pause ({verdict.drawdown:.4f})")

        if self.risk.check_crash_condition(self.symbol, price):
            return TickResult(self.symbol, "WAIT", reason="Crash detected")

        cycle = self.positions.get_active_cycle(self.symbol)
        action = self.evaluate(cycle, price, snapshot, total_balance)
        executed, error = self.execute(action)

        if cycle is not None and isinstance(action, Wait):
            self._log_status(cycle, price)

        reason = action.reason if isinstance(action, Wait) else None
        return TickResult(self.symbol, action_name(action), executed=executed, reason=reason, error=error)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate(
        self,
        cycle: Optional[Cycle],
        price: Decimal,
        snapshot: IndicatorSnapshot,
        total_balance: Decimal,
    ) -> Action:
        if cycle is None:
            return self._evaluate_searching(price, snapshot, total_balance)
        if cycle.status is CycleStatus.ACTIVE:
            return self._evaluate_active(cycle, price, snapshot, total_balance)
        if cycle.status is CycleStatus.PARTIAL_SELL:
            # Partial sell went through but the stop was never armed
            return ActivateTrailing(cycle_id=cycle.id, price=price)
        if cycle.status is CycleStatus.TRAILING:
            return self._evaluate_trailing(cycle, price)
        if cycle.status is CycleStatus.PAUSED:
            return Wait("Cycle paused")
        return Wait(f"Unexpected cycle status: {cycle.status.value}")

    def _evaluate_searching(self, price: Decimal, snapshot: IndicatorSnapshot, total_balance: Decimal) -> Action:
        evaluation = self.indicators.evaluate_entry(self.symbol, price, snapshot)
        if not evaluation.can_enter:
            return Wait("; ".join(evaluation.reasons))

        entry_size = self.capital.calculate_entry_size(total_balance)
        if entry_size < self.capital.min_order_value:
            return Wait(f"Entry size too small ({self.capital.format_currency(entry_size)})")

        check = self.capital.can_execute_buy(total_balance, ZERO, self.symbol)
        if not check.can_buy:
            return Wait(check.reason or "Cannot execute buy")

        return OpenCycle(
            amount=check.amount,
            total_balance=total_balance,
            grid_percent=self.indicators.adapt_grid_percent(snapshot.atr14_4h, price),
            price=price,
            indicators=snapshot,
        )

    def _evaluate_active(
        self,
        cycle: Cycle,
        price: Decimal,
        snapshot: IndicatorSnapshot,
        total_balance: Decimal,
    ) -> Action:
        # Sell before buy
        if cycle.target_sell_price is not None and price >= cycle.target_sell_price:
            return PartialSell(
                cycle_id=cycle.id,
                quantity=cycle.remaining_quantity * self.partial_sell_percent,
                sell_percent=self.partial_sell_percent,
                price=price,
            )

        if cycle.next_buy_price is not None and price <= cycle.next_buy_price:
            if cycle.buy_count >= cycle.max_buys:
                return Wait(f"Max buys reached ({cycle.buy_count}/{cycle.max_buys})")
            if not self.indicators.is_above_ema200(price, snapshot.ema200_4h):
                return Wait("Price below EMA200, DCA suspended")
            check = self.capital.can_execute_buy(total_balance, cycle.total_invested, self.symbol)
            if not check.can_buy:
                return Wait(check.reason or "Cannot execute buy")
            return DcaBuy(cycle_id=cycle.id, amount=check.amount, buy_number=cycle.buy_count + 1, price=price)

        return Wait("Waiting for price action")

    def _evaluate_trailing(self, cycle: Cycle, price: Decimal) -> Action:
        update = self.positions.update_trailing_stop(cycle.id, price)
        if update.triggered:
            return TrailingSell(
                cycle_id=cycle.id,
                quantity=update.cycle.remaining_quantity,
                price=price,
                stop_price=update.stop_price,
            )
        return Wait(f"Trailing active (stop: {update.stop_price:.2f})")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, action: Action) -> Tuple[bool, Optional[str]]:
        """
        Run one action. Returns (executed, error).

        Raises:
            TypeError: action is not one of the known variants
        """
        if isinstance(action, Wait):
            logger.info(f"[{self.symbol}] WAIT: {action.reason}")
            return False, None
        if isinstance(action, OpenCycle):
            handler = self._execute_open_cycle
        elif isinstance(action, DcaBuy):
            handler = self._execute_dca_buy
        elif isinstance(action, PartialSell):
            handler = self._execute_partial_sell
        elif isinstance(action, ActivateTrailing):
            handler = self._execute_activate_trailing
        elif isinstance(action, TrailingSell):
            handler = self._execute_trailing_sell
        elif isinstance(action, FullClose):
            handler = self._execute_full_close
        else:
            raise TypeError(f"Unknown action type: {type(action).__name__}")

        name = action_name(action)
        try:
            handler(action)
            return True, None
        except OrderExecutionError as e:
            logger.error(f"[{self.symbol}] {name} order failed: {e}")
            self._record_failure(name, e)
            return False, str(e)
        except Exception as e:
            logger.error(f"[{self.symbol}] {name} failed: {e}", exc_info=True)
            self._record_failure(name, e)
            return False, str(e)

    def _record_failure(self, name: str, error: Exception) -> None:
        if self.metrics is not None:
            self.metrics.record_order_failure(self.symbol, name)
        if self.notifier is not None and isinstance(error, OrderExecutionError):
            self.notifier.notify_order_failed(self.symbol, name, error)

    def _record_fill(self, fill: OrderFill, write):
        """Apply the ledger write for a filled order; a failure here leaves an unrecorded fill."""
        try:
            return write()
        except LedgerError:
            logger.critical(
                f"[{self.symbol}] {fill.side} order {fill.order_id} filled "
                f"({fill.filled} @ {fill.price}) but the ledger write failed"
            )
            raise

    def _execute_open_cycle(self, action: OpenCycle) -> None:
        logger.info(
            f"[{self.symbol}] Opening new cycle: entry={action.amount} price={action.price} "
            f"grid={action.grid_percent}"
        )
        fill = self.broker.create_market_buy_order(self.symbol, action.amount)
        cycle = self._record_fill(
            fill,
            lambda: self.positions.open_cycle(
                self.symbol, action.total_balance, action.indicators, action.grid_percent, fill
            ),
        )
        logger.info(f"[{self.symbol}] Initial buy executed: order={fill.order_id} cost={fill.cost} cycle={cycle.id}")
        if self.notifier is not None:
            rsi = action.indicators.rsi if action.indicators else None
            self.notifier.notify_buy(self.symbol, fill.price, fill.cost, 1)
            self.notifier.notify_cycle_start(self.symbol, fill.price, rsi)

    def _execute_dca_buy(self, action: DcaBuy) -> None:
        logger.info(f"[{self.symbol}] DCA buy #{action.buy_number}: {action.amount} at ~{action.price}")
        fill = self.broker.create_market_buy_order(self.symbol, action.amount)
        position = self._record_fill(
            fill, lambda: self.positions.add_position(action.cycle_id, fill, action.buy_number)
        )
        if self.notifier is not None:
            self.notifier.notify_buy(self.symbol, fill.price, fill.cost, position.buy_number)

    def _execute_partial_sell(self, action: PartialSell) -> None:
        quantity = self._sellable_quantity(action.quantity)
        logger.info(f"[{self.symbol}] Partial sell {action.sell_percent}: qty={quantity} at ~{action.price}")
        fill = self.broker.create_market_sell_order(self.symbol, quantity)
        cycle = self._record_fill(
            fill, lambda: self.positions.partial_close(action.cycle_id, action.sell_percent, fill)
        )
        if self.notifier is not None:
            self.notifier.notify_partial_sell(self.symbol, fill.price, fill.filled, action.sell_percent)

        if cycle.status is CycleStatus.COMPLETED:
            self._on_cycle_completed(cycle)
            return
        self.positions.activate_trailing_stop(action.cycle_id, action.price)

    def _execute_activate_trailing(self, action: ActivateTrailing) -> None:
        self.positions.activate_trailing_stop(action.cycle_id, action.price)
        logger.info(f"[{self.symbol}] Trailing stop activated for cycle {action.cycle_id}")

    def _execute_trailing_sell(self, action: TrailingSell) -> None:
        quantity = self._sellable_quantity(action.quantity)
        logger.info(f"[{self.symbol}] Trailing stop hit at {action.price} (stop {action.stop_price}); selling {quantity}")
        fill = self.broker.create_market_sell_order(self.symbol, quantity)
        cycle = self._record_fill(
            fill, lambda: self.positions.full_close(action.cycle_id, fill, TradeReason.TRAILING_SELL.value)
        )
        if self.notifier is not None:
            self.notifier.notify_trailing_sell(self.symbol, fill.price, fill.filled)
        self._on_cycle_completed(cycle)

    def _execute_full_close(self, action: FullClose) -> None:
        quantity = self._sellable_quantity(action.quantity)
        logger.warning(f"[{self.symbol}] Full close of cycle {action.cycle_id} ({action.reason}): qty={quantity}")
        fill = self.broker.create_market_sell_order(self.symbol, quantity)
        cycle = self._record_fill(
            fill, lambda: self.positions.full_close(action.cycle_id, fill, TradeReason.FULL_CLOSE.value)
        )
        self._on_cycle_completed(cycle)

    def _sellable_quantity(self, quantity: Decimal) -> Decimal:
        """Cap a sell at the free base balance (fees charged in base shrink holdings)."""
        free = self.broker.get_balance(self.base_currency)
        if ZERO < free < quantity:
            logger.warning(f"[{self.symbol}] Sell qty {quantity} exceeds free {self.base_currency} {free}; capping")
            return free
        return quantity

    def _on_cycle_completed(self, cycle: Cycle) -> None:
        if self.reporter is not None:
            self.reporter.record_cycle_completion(cycle)
        self.risk.record_cycle_result(self.symbol, cycle.profit_percent)
        if self.notifier is not None:
            self.notifier.notify_cycle_end(self.symbol, cycle.total_profit, cycle.profit_percent)

    # ------------------------------------------------------------------
    # Operator
    # ------------------------------------------------------------------

    def liquidate(self, reason: str = "manual") -> TickResult:
        """Sell everything held by the open cycle outside the normal tick."""
        with self._lock:
            cycle = self.positions.get_active_cycle(self.symbol)
            if cycle is None:
                logger.info(f"[{self.symbol}] Nothing to liquidate")
                return TickResult(self.symbol, "WAIT", reason="No open cycle")
            logger.warning(f"[{self.symbol}] Liquidating cycle {cycle.id}: {reason}")
            action = FullClose(cycle_id=cycle.id, quantity=cycle.remaining_quantity, reason=reason)
            executed, error = self.execute(action)
            return TickResult(self.symbol, action_name(action), executed=executed, reason=reason, error=error)

    def _log_status(self, cycle: Cycle, price: Decimal) -> None:
        summary = self.positions.get_cycle_summary(cycle.id, price)
        if summary is None:
            return
        logger.debug(
            f"[{self.symbol}] Cycle {summary.cycle_id} {summary.status.value}: buys={summary.buy_count}/"
            f"{summary.max_buys} avg={summary.average_price} price={price} next_buy={summary.next_buy_price} "
            f"target={summary.target_sell_price} pnl={summary.unrealized_pnl} ({summary.profit_percent:.2f}%)"
        )
