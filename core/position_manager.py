"""
Position Management: Cycle Lifecycle and Weighted-Average Ledger

A cycle moves ACTIVE -> PARTIAL_SELL -> TRAILING -> COMPLETED (with a PAUSED
side-state reachable from ACTIVE). Every mutation is planned by a pure
function over a ReadSet and committed by the ledger as one unit of work, so
positions and cycle aggregates are never observed out of step.
"""
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional

from core.models import (
    Cycle,
    CycleStatus,
    CycleSummary,
    IndicatorSnapshot,
    OrderFill,
    Position,
    PositionStatus,
    TradeReason,
    TradeRecord,
    utc_now,
)
from core.numeric import HUNDRED, ONE, ZERO, safe_divide, to_decimal
from infra.state_store import LedgerStore, ReadSet, WriteSet

logger = logging.getLogger(__name__)


@dataclass
class TrailingUpdate:
    """Result of feeding a price to an armed trailing stop."""
    cycle: Cycle
    triggered: bool
    stop_price: Optional[Decimal]
    moved: bool = False


# ----------------------------------------------------------------------
# Pure planners
# ----------------------------------------------------------------------

def position_status(position: Position) -> PositionStatus:
    """Status follows remaining quantity."""
    if position.remaining_quantity <= 0:
        return PositionStatus.CLOSED
    if position.remaining_quantity < position.quantity:
        return PositionStatus.PARTIALLY_CLOSED
    return PositionStatus.OPEN


def recalculate_cycle(cycle: Cycle, positions: List[Position], profit_target: Decimal) -> Cycle:
    """
    Derive cycle aggregates from its positions.

    total_invested/total_quantity/remaining_quantity sum the open positions,
    average_price = invested / quantity, next_buy_price is one grid step below
    the latest entry and target_sell_price is the profit target above the
    average. A cycle with no open quantity is returned unchanged.
    """
    open_positions = [p for p in positions if p.is_open]
    if not open_positions:
        return cycle

    total_invested = sum((p.invested_amount for p in open_positions), ZERO)
    total_quantity = sum((p.quantity for p in open_positions), ZERO)
    remaining_quantity = sum((p.remaining_quantity for p in open_positions), ZERO)
    if total_quantity <= 0:
        return cycle

    average_price = total_invested / total_quantity
    last_entry = max(positions, key=lambda p: p.buy_number).entry_price

    return replace(
        cycle,
        total_invested=total_invested,
        total_quantity=total_quantity,
        remaining_quantity=remaining_quantity,
        average_price=average_price,
        next_buy_price=last_entry * (ONE - cycle.grid_percent),
        target_sell_price=average_price * (ONE + profit_target),
        buy_count=len(positions),
    )


def _buy_reason(buy_number: int) -> str:
    if buy_number == 1:
        return TradeReason.INITIAL_BUY.value
    return f"{TradeReason.DCA_BUY.value}_{buy_number}"


def _position_from_fill(cycle_id: Optional[int], fill: OrderFill, buy_number: int) -> Position:
    return Position(
        cycle_id=cycle_id,
        symbol=fill.symbol,
        quantity=fill.filled,
        entry_price=fill.price,
        invested_amount=fill.cost,
        buy_number=buy_number,
        order_id=fill.order_id,
        fee=fill.fee,
        fee_currency=fill.fee_currency,
        created_at=fill.timestamp,
    )


def _trade_from_fill(fill: OrderFill, reason: str, cycle_id: Optional[int]) -> TradeRecord:
    return TradeRecord(
        symbol=fill.symbol,
        side=fill.side,
        quantity=fill.filled,
        price=fill.price,
        cost=fill.cost,
        reason=reason,
        order_id=fill.order_id,
        cycle_id=cycle_id,
        created_at=fill.timestamp,
    )


def plan_open_cycle(
    symbol: str,
    fill: OrderFill,
    total_balance: Decimal,
    indicators: Optional[IndicatorSnapshot],
    grid_percent: Decimal,
    entry_percent: Decimal,
    max_buys: int,
    max_exposure_percent: Decimal,
    profit_target: Decimal,
) -> WriteSet:
    """New cycle, its first position and the trade row, from a filled initial buy."""
    cycle = Cycle(
        symbol=symbol,
        grid_percent=grid_percent,
        entry_percent=entry_percent,
        max_buys=max_buys,
        initial_balance=total_balance,
        max_exposure=total_balance * max_exposure_percent,
        entry_rsi=indicators.rsi if indicators else None,
        entry_ema200=indicators.ema200_4h if indicators else None,
        entry_atr=indicators.atr14_4h if indicators else None,
    )
    position = _position_from_fill(None, fill, buy_number=1)
    cycle = recalculate_cycle(cycle, [position], profit_target)
    return WriteSet(
        cycle=cycle,
        positions=[position],
        trades=[_trade_from_fill(fill, _buy_reason(1), None)],
    )


def plan_add_position(
    read: ReadSet,
    fill: OrderFill,
    profit_target: Decimal,
    buy_number: Optional[int] = None,
) -> WriteSet:
    cycle = read.cycle
    if cycle.status is not CycleStatus.ACTIVE:
        raise ValueError(f"Cannot add position to cycle {cycle.id} in status {cycle.status.value}")
    if cycle.buy_count >= cycle.max_buys:
        raise ValueError(f"Cycle {cycle.id} already has {cycle.buy_count}/{cycle.max_buys} buys")

    number = buy_number or (len(read.positions) + 1)
    position = _position_from_fill(cycle.id, fill, number)
    updated = recalculate_cycle(cycle, read.positions + [position], profit_target)
    return WriteSet(
        cycle=updated,
        positions=[position],
        trades=[_trade_from_fill(fill, _buy_reason(number), cycle.id)],
    )


def _close_remaining(cycle: Cycle, positions: List[Position], exit_price: Decimal, order_id: Optional[str]) -> tuple:
    """Close every open position at exit_price; returns (cycle', touched positions)."""
    now = utc_now()
    touched = []
    sale_value = ZERO
    for position in positions:
        if not position.is_open:
            continue
        proceeds = position.realized_proceeds + position.remaining_quantity * exit_price
        sale_value += position.remaining_quantity * exit_price
        profit = proceeds - position.invested_amount
        touched.append(replace(
            position,
            remaining_quantity=ZERO,
            realized_proceeds=proceeds,
            exit_price=exit_price,
            exit_order_id=order_id,
            profit=profit,
            profit_percent=safe_divide(profit, position.invested_amount) * HUNDRED,
            status=PositionStatus.CLOSED,
            closed_at=now,
        ))

    realized = cycle.realized_proceeds + sale_value
    total_profit = realized - cycle.total_invested
    closed = replace(
        cycle,
        status=CycleStatus.COMPLETED,
        remaining_quantity=ZERO,
        realized_proceeds=realized,
        total_profit=total_profit,
        profit_percent=safe_divide(total_profit, cycle.total_invested) * HUNDRED,
        closed_at=now,
    )
    return closed, touched


def plan_partial_close(read: ReadSet, sell_percent: Decimal, fill: OrderFill) -> WriteSet:
    """
    Reduce every open position by sell_percent of its remaining quantity.

    Sale proceeds are banked on the positions and the cycle. If nothing is
    left afterwards the cycle completes in the same unit.
    """
    cycle = read.cycle
    if cycle.status is not CycleStatus.ACTIVE:
        raise ValueError(f"Cannot partially close cycle {cycle.id} in status {cycle.status.value}")
    if not (ZERO < sell_percent <= ONE):
        raise ValueError(f"sell_percent must be in (0, 1], got {sell_percent}")

    exit_price = fill.price
    now = utc_now()
    updated_positions = []
    banked = ZERO
    for position in read.positions:
        if not position.is_open:
            continue
        sold = position.remaining_quantity * sell_percent
        remaining = position.remaining_quantity - sold
        proceeds = sold * exit_price
        banked += proceeds
        updated = replace(
            position,
            remaining_quantity=remaining,
            realized_proceeds=position.realized_proceeds + proceeds,
        )
        updated.status = position_status(updated)
        if updated.status is PositionStatus.CLOSED:
            updated.exit_price = exit_price
            updated.exit_order_id = fill.order_id
            updated.profit = updated.realized_proceeds - updated.invested_amount
            updated.profit_percent = safe_divide(updated.profit, updated.invested_amount) * HUNDRED
            updated.closed_at = now
        updated_positions.append(updated)

    remaining_total = sum((p.remaining_quantity for p in updated_positions), ZERO)
    new_cycle = replace(
        cycle,
        status=CycleStatus.PARTIAL_SELL,
        remaining_quantity=remaining_total,
        partial_sell_done=True,
        realized_proceeds=cycle.realized_proceeds + banked,
    )
    if remaining_total <= 0:
        new_cycle, _ = _close_remaining(new_cycle, [], exit_price, fill.order_id)

    return WriteSet(
        cycle=new_cycle,
        positions=updated_positions,
        trades=[_trade_from_fill(fill, TradeReason.PARTIAL_SELL.value, cycle.id)],
    )


def plan_activate_trailing(cycle: Cycle, price: Decimal, trailing_percent: Decimal) -> Cycle:
    if cycle.status is not CycleStatus.PARTIAL_SELL:
        raise ValueError(f"Cannot arm trailing stop on cycle {cycle.id} in status {cycle.status.value}")
    return replace(
        cycle,
        status=CycleStatus.TRAILING,
        trailing_high_price=price,
        trailing_stop_price=price * (ONE - trailing_percent),
    )


def plan_trailing_update(cycle: Cycle, price: Decimal, trailing_percent: Decimal) -> TrailingUpdate:
    """Ratchet the high/stop upward and report whether price hit the stop."""
    if cycle.trailing_high_price is None or cycle.trailing_stop_price is None:
        return TrailingUpdate(cycle=cycle, triggered=False, stop_price=None)

    moved = False
    updated = cycle
    if price > cycle.trailing_high_price:
        candidate = price * (ONE - trailing_percent)
        updated = replace(
            cycle,
            trailing_high_price=price,
            trailing_stop_price=max(candidate, cycle.trailing_stop_price),
        )
        moved = True

    stop = updated.trailing_stop_price
    return TrailingUpdate(cycle=updated, triggered=price <= stop, stop_price=stop, moved=moved)


def plan_full_close(read: ReadSet, fill: OrderFill, reason: str) -> WriteSet:
    cycle = read.cycle
    if cycle.status is CycleStatus.COMPLETED:
        raise ValueError(f"Cycle {cycle.id} is already completed")
    closed, positions = _close_remaining(cycle, read.positions, fill.price, fill.order_id)
    return WriteSet(
        cycle=closed,
        positions=positions,
        trades=[_trade_from_fill(fill, reason, cycle.id)],
    )


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------

class PositionManager:
    """
    Cycle and position bookkeeping over the ledger.

    Responsibilities:
    - Open cycles from a filled initial buy
    - Record DCA buys and keep the weighted average current
    - Partial/full closes and trailing stop tracking
    - Cycle summaries and history queries
    """

    def __init__(self, ledger: LedgerStore, policy: Dict):
        """
        Args:
            ledger: LedgerStore used for every read and unit of work
            policy: policy.yaml dict (reads ``grid`` and ``capital``)
        """
        self.ledger = ledger
        grid_cfg = policy.get("grid", {}) or {}
        capital_cfg = policy.get("capital", {}) or {}

        self.max_buys = int(grid_cfg.get("max_buys", 4))
        self.profit_target = to_decimal(grid_cfg.get("profit_target", "0.03"))
        self.trailing_percent = to_decimal(grid_cfg.get("trailing_stop_percent", "0.015"))
        self.partial_sell_percent = to_decimal(grid_cfg.get("partial_sell_percent", "0.50"))
        self.entry_percent = to_decimal(capital_cfg.get("entry_percent", "0.10"))
        self.max_exposure_percent = to_decimal(capital_cfg.get("max_exposure", "0.30"))

        logger.info(
            f"PositionManager initialized: max_buys={self.max_buys}, target={self.profit_target}, "
            f"trailing={self.trailing_percent}, partial={self.partial_sell_percent}"
        )

    # Queries

    def get_active_cycle(self, symbol: str) -> Optional[Cycle]:
        return self.ledger.get_active_cycle(symbol)

    def get_open_positions(self, cycle_id: int) -> List[Position]:
        return self.ledger.get_positions(cycle_id, open_only=True)

    def get_recent_completed_cycles(self, symbol: str, count: int) -> List[Cycle]:
        return self.ledger.get_completed_cycles(symbol, limit=count)

    def get_cycle_summary(self, cycle_id: int, current_price: Optional[Decimal] = None) -> Optional[CycleSummary]:
        """
        Snapshot of a cycle. Completed cycles report persisted profit; open
        cycles report live PnL (banked proceeds + remaining x price - invested)
        when a price is given.
        """
        cycle = self.ledger.get_cycle(cycle_id)
        if cycle is None:
            return None

        current_value = None
        unrealized = None
        profit_percent = cycle.profit_percent
        if cycle.status is not CycleStatus.COMPLETED and current_price is not None:
            current_value = cycle.remaining_quantity * current_price
            unrealized = cycle.realized_proceeds + current_value - cycle.total_invested
            profit_percent = safe_divide(unrealized, cycle.total_invested) * HUNDRED

        end = cycle.closed_at or utc_now()
        duration = to_decimal((end - cycle.created_at).total_seconds()) / Decimal(60)

        return CycleSummary(
            cycle_id=cycle.id,
            symbol=cycle.symbol,
            status=cycle.status,
            buy_count=cycle.buy_count,
            max_buys=cycle.max_buys,
            total_invested=cycle.total_invested,
            remaining_quantity=cycle.remaining_quantity,
            average_price=cycle.average_price,
            next_buy_price=cycle.next_buy_price,
            target_sell_price=cycle.target_sell_price,
            trailing_stop_price=cycle.trailing_stop_price,
            current_value=current_value,
            unrealized_pnl=unrealized,
            total_profit=cycle.total_profit,
            profit_percent=profit_percent,
            duration_minutes=duration,
        )

    # Mutations

    def open_cycle(
        self,
        symbol: str,
        total_balance: Decimal,
        indicators: Optional[IndicatorSnapshot],
        grid_percent: Decimal,
        fill: OrderFill,
    ) -> Cycle:
        """Record a filled initial buy as a new ACTIVE cycle with buy #1."""
        write = self.ledger.run_unit_of_work(
            lambda _read: plan_open_cycle(
                symbol, fill, total_balance, indicators, grid_percent,
                self.entry_percent, self.max_buys, self.max_exposure_percent, self.profit_target,
            )
        )
        cycle = write.cycle
        logger.info(
            f"New cycle {cycle.id} for {symbol}: avg={cycle.average_price} next_buy={cycle.next_buy_price} "
            f"target={cycle.target_sell_price} grid={grid_percent} max_exposure={cycle.max_exposure}"
        )
        return cycle

    def add_position(self, cycle_id: int, fill: OrderFill, buy_number: Optional[int] = None) -> Position:
        write = self.ledger.run_unit_of_work(
            lambda read: plan_add_position(read, fill, self.profit_target, buy_number),
            cycle_id=cycle_id,
        )
        position = write.positions[0]
        cycle = write.cycle
        logger.info(
            f"Cycle {cycle_id} buy #{position.buy_number}: qty={position.quantity} @ {position.entry_price}; "
            f"avg={cycle.average_price} invested={cycle.total_invested} next_buy={cycle.next_buy_price} "
            f"target={cycle.target_sell_price}"
        )
        return position

    def partial_close(self, cycle_id: int, sell_percent: Decimal, fill: OrderFill) -> Cycle:
        write = self.ledger.run_unit_of_work(
            lambda read: plan_partial_close(read, sell_percent, fill),
            cycle_id=cycle_id,
        )
        cycle = write.cycle
        logger.info(
            f"Cycle {cycle_id} partial close {sell_percent} @ {fill.price}: "
            f"remaining={cycle.remaining_quantity} status={cycle.status.value}"
        )
        return cycle

    def activate_trailing_stop(
        self, cycle_id: int, price: Decimal, trailing_percent: Optional[Decimal] = None
    ) -> Cycle:
        percent = self.trailing_percent if trailing_percent is None else trailing_percent
        write = self.ledger.run_unit_of_work(
            lambda read: WriteSet(cycle=plan_activate_trailing(read.cycle, price, percent)),
            cycle_id=cycle_id,
        )
        cycle = write.cycle
        logger.info(
            f"Cycle {cycle_id} trailing stop armed: high={cycle.trailing_high_price} "
            f"stop={cycle.trailing_stop_price}"
        )
        return cycle

    def update_trailing_stop(self, cycle_id: int, price: Decimal) -> TrailingUpdate:
        result: Dict[str, TrailingUpdate] = {}

        def plan(read: ReadSet) -> WriteSet:
            update = plan_trailing_update(read.cycle, price, self.trailing_percent)
            result["update"] = update
            return WriteSet(cycle=update.cycle) if update.moved else WriteSet()

        self.ledger.run_unit_of_work(plan, cycle_id=cycle_id)
        update = result["update"]
        if update.moved:
            logger.debug(
                f"Cycle {cycle_id} trailing stop moved up: high={update.cycle.trailing_high_price} "
                f"stop={update.stop_price}"
            )
        if update.triggered:
            logger.info(f"Cycle {cycle_id} trailing stop triggered: price={price} stop={update.stop_price}")
        return update

    def full_close(self, cycle_id: int, fill: OrderFill, reason: str = TradeReason.TRAILING_SELL.value) -> Cycle:
        write = self.ledger.run_unit_of_work(
            lambda read: plan_full_close(read, fill, reason),
            cycle_id=cycle_id,
        )
        cycle = write.cycle
        logger.info(
            f"Cycle {cycle_id} closed ({reason}) @ {fill.price}: profit={cycle.total_profit} "
            f"({cycle.profit_percent:.2f}%)"
        )
        return cycle

    def pause_cycle(self, cycle_id: int) -> Cycle:
        def plan(read: ReadSet) -> WriteSet:
            if read.cycle.status is not CycleStatus.ACTIVE:
                raise ValueError(f"Only ACTIVE cycles can be paused (cycle {cycle_id} is {read.cycle.status.value})")
            return WriteSet(cycle=replace(read.cycle, status=CycleStatus.PAUSED))

        cycle = self.ledger.run_unit_of_work(plan, cycle_id=cycle_id).cycle
        logger.warning(f"Cycle {cycle_id} paused")
        return cycle

    def resume_cycle(self, cycle_id: int) -> Cycle:
        def plan(read: ReadSet) -> WriteSet:
            if read.cycle.status is not CycleStatus.PAUSED:
                raise ValueError(f"Cycle {cycle_id} is not paused ({read.cycle.status.value})")
            return WriteSet(cycle=replace(read.cycle, status=CycleStatus.ACTIVE))

        cycle = self.ledger.run_unit_of_work(plan, cycle_id=cycle_id).cycle
        logger.info(f"Cycle {cycle_id} resumed")
        return cycle
