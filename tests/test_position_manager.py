"""
Tests for the cycle lifecycle and weighted-average bookkeeping.

Covers:
- Opening a cycle from a filled initial buy
- DCA buys recomputing average / next buy / target
- Partial sell banking proceeds and arming the trailing stop
- Trailing stop ratchet and trigger
- Full close profit accounting
"""
from decimal import Decimal

import pytest

from core.models import CycleStatus, IndicatorSnapshot, PositionStatus, TradeReason
from core.position_manager import plan_trailing_update, recalculate_cycle
from tests.helpers import make_fill

SYMBOL = "BTC/USDT"
GRID = Decimal("0.03")


def open_cycle(positions, price="100", qty="1", balance="1000"):
    snapshot = IndicatorSnapshot(symbol=SYMBOL, rsi_15m=30.0, ema200_4h=90.0, atr14_4h=1.0)
    fill = make_fill(SYMBOL, "buy", price, qty, order_id="buy-1")
    return positions.open_cycle(SYMBOL, Decimal(balance), snapshot, GRID, fill)


class TestOpenCycle:
    def test_initial_buy_sets_grid_levels(self, positions, ledger):
        cycle = open_cycle(positions)

        assert cycle.id is not None
        assert cycle.status is CycleStatus.ACTIVE
        assert cycle.buy_count == 1
        assert cycle.average_price == Decimal("100")
        assert cycle.next_buy_price == Decimal("97")
        assert cycle.target_sell_price == Decimal("103")
        assert cycle.max_exposure == Decimal("300")
        assert cycle.entry_rsi == 30.0

        stored = ledger.get_active_cycle(SYMBOL)
        assert stored.id == cycle.id
        assert stored.next_buy_price == Decimal("97")

    def test_initial_trade_is_logged_and_linked(self, positions, ledger):
        cycle = open_cycle(positions)
        trades = ledger.get_trades(SYMBOL)
        assert len(trades) == 1
        assert trades[0].reason == TradeReason.INITIAL_BUY.value
        assert trades[0].cycle_id == cycle.id
        assert trades[0].position_id is not None

    def test_one_open_cycle_per_symbol(self, positions, ledger):
        open_cycle(positions)
        assert len([c for c in ledger.get_cycles(SYMBOL) if c.is_open]) == 1


class TestDcaBuy:
    def test_second_buy_updates_average_and_levels(self, positions):
        cycle = open_cycle(positions)
        position = positions.add_position(cycle.id, make_fill(SYMBOL, "buy", "95", "1", "buy-2"), 2)

        updated = positions.ledger.get_cycle(cycle.id)
        assert position.buy_number == 2
        assert updated.buy_count == 2
        assert updated.total_invested == Decimal("195")
        assert updated.total_quantity == Decimal("2")
        assert updated.average_price == Decimal("97.5")
        assert updated.next_buy_price == Decimal("92.15")
        assert updated.target_sell_price == Decimal("100.425")

    def test_dca_trade_reason_carries_buy_number(self, positions, ledger):
        cycle = open_cycle(positions)
        positions.add_position(cycle.id, make_fill(SYMBOL, "buy", "95", "1", "buy-2"), 2)
        assert ledger.get_trades(SYMBOL)[-1].reason == "DCA_BUY_2"

    def test_buy_beyond_max_buys_is_rejected(self, positions):
        cycle = open_cycle(positions)
        for n, price in enumerate(["97", "94", "91"], start=2):
            positions.add_position(cycle.id, make_fill(SYMBOL, "buy", price, "1", f"buy-{n}"), n)
        with pytest.raises(ValueError):
            positions.add_position(cycle.id, make_fill(SYMBOL, "buy", "88", "1", "buy-5"), 5)
        assert positions.ledger.get_cycle(cycle.id).buy_count == 4

    def test_rejected_buy_writes_nothing(self, positions, ledger):
        cycle = open_cycle(positions)
        positions.pause_cycle(cycle.id)
        with pytest.raises(ValueError):
            positions.add_position(cycle.id, make_fill(SYMBOL, "buy", "95", "1", "buy-2"), 2)
        assert len(ledger.get_positions(cycle.id)) == 1
        assert len(ledger.get_trades(SYMBOL)) == 1


class TestPartialSellAndTrailing:
    def test_partial_sell_halves_remaining(self, positions):
        cycle = open_cycle(positions, qty="2")
        after = positions.partial_close(cycle.id, Decimal("0.5"), make_fill(SYMBOL, "sell", "104", "1", "sell-1"))

        assert after.status is CycleStatus.PARTIAL_SELL
        assert after.partial_sell_done
        assert after.remaining_quantity == Decimal("1.0")
        assert after.realized_proceeds == Decimal("104")

        pos = positions.ledger.get_positions(cycle.id)[0]
        assert pos.status is PositionStatus.PARTIALLY_CLOSED
        assert pos.remaining_quantity == Decimal("1.0")

    def test_trailing_stop_armed_below_price(self, positions):
        cycle = open_cycle(positions, qty="2")
        positions.partial_close(cycle.id, Decimal("0.5"), make_fill(SYMBOL, "sell", "104", "1", "sell-1"))
        armed = positions.activate_trailing_stop(cycle.id, Decimal("104"))

        assert armed.status is CycleStatus.TRAILING
        assert armed.trailing_high_price == Decimal("104")
        assert armed.trailing_stop_price == Decimal("102.440")

    def test_trailing_stop_only_moves_up_and_triggers(self, positions):
        cycle = open_cycle(positions, qty="2")
        positions.partial_close(cycle.id, Decimal("0.5"), make_fill(SYMBOL, "sell", "104", "1", "sell-1"))
        positions.activate_trailing_stop(cycle.id, Decimal("104"))

        up = positions.update_trailing_stop(cycle.id, Decimal("110"))
        assert up.moved and not up.triggered
        assert up.stop_price == Decimal("108.350")

        dip = positions.update_trailing_stop(cycle.id, Decimal("109"))
        assert not dip.moved and not dip.triggered
        assert positions.ledger.get_cycle(cycle.id).trailing_stop_price == Decimal("108.350")

        hit = positions.update_trailing_stop(cycle.id, Decimal("108"))
        assert hit.triggered

    def test_partial_sell_of_everything_completes_cycle(self, positions):
        cycle = open_cycle(positions)
        closed = positions.partial_close(cycle.id, Decimal("1"), make_fill(SYMBOL, "sell", "104", "1", "sell-1"))
        assert closed.status is CycleStatus.COMPLETED
        assert closed.total_profit == Decimal("4")

    def test_partial_sell_requires_active_cycle(self, positions):
        cycle = open_cycle(positions, qty="2")
        positions.partial_close(cycle.id, Decimal("0.5"), make_fill(SYMBOL, "sell", "104", "1", "sell-1"))
        with pytest.raises(ValueError):
            positions.partial_close(cycle.id, Decimal("0.5"), make_fill(SYMBOL, "sell", "104", "0.5", "sell-2"))


class TestFullClose:
    def test_profit_includes_partial_proceeds(self, positions, ledger):
        cycle = open_cycle(positions, qty="2")  # invested 200
        positions.partial_close(cycle.id, Decimal("0.5"), make_fill(SYMBOL, "sell", "104", "1", "sell-1"))
        positions.activate_trailing_stop(cycle.id, Decimal("104"))
        closed = positions.full_close(cycle.id, make_fill(SYMBOL, "sell", "106", "1", "sell-2"))

        assert closed.status is CycleStatus.COMPLETED
        assert closed.total_profit == Decimal("10")
        assert closed.profit_percent == Decimal("5")
        assert closed.closed_at is not None
        assert ledger.get_active_cycle(SYMBOL) is None
        assert all(p.status is PositionStatus.CLOSED for p in ledger.get_positions(cycle.id))
        assert [t.reason for t in ledger.get_trades(SYMBOL)] == [
            "INITIAL_BUY", "PARTIAL_SELL", "TRAILING_SELL",
        ]

    def test_closing_completed_cycle_fails(self, positions):
        cycle = open_cycle(positions)
        positions.full_close(cycle.id, make_fill(SYMBOL, "sell", "99", "1", "sell-1"), TradeReason.FULL_CLOSE.value)
        with pytest.raises(ValueError):
            positions.full_close(cycle.id, make_fill(SYMBOL, "sell", "99", "1", "sell-2"))

    def test_summary_reports_live_pnl(self, positions):
        cycle = open_cycle(positions)
        summary = positions.get_cycle_summary(cycle.id, Decimal("110"))
        assert summary.current_value == Decimal("110")
        assert summary.unrealized_pnl == Decimal("10")
        assert summary.profit_percent == Decimal("10")


class TestPauseResume:
    def test_pause_and_resume_cycle(self, positions):
        cycle = open_cycle(positions)
        assert positions.pause_cycle(cycle.id).status is CycleStatus.PAUSED
        assert positions.resume_cycle(cycle.id).status is CycleStatus.ACTIVE

    def test_resume_requires_paused(self, positions):
        cycle = open_cycle(positions)
        with pytest.raises(ValueError):
            positions.resume_cycle(cycle.id)


def test_recalculate_ignores_empty_cycle(positions):
    cycle = open_cycle(positions)
    assert recalculate_cycle(cycle, [], Decimal("0.03")) is cycle


def test_trailing_update_without_stop_is_noop(positions):
    cycle = open_cycle(positions)
    update = plan_trailing_update(cycle, Decimal("120"), Decimal("0.015"))
    assert not update.triggered
    assert update.stop_price is None
