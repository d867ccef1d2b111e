"""
Tests for the per-symbol grid strategy.

Runs full ticks against the fake broker/indicator source and a real
in-memory ledger, then checks the resulting ledger state.
"""
from dataclasses import replace
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from analytics.performance_report import PerformanceReporter
from core.models import GLOBAL_SCOPE, BotState, BotStateType, CycleStatus, IndicatorSnapshot
from infra.metrics import MetricsRecorder
from strategy.actions import DcaBuy, OpenCycle, PartialSell, Wait, action_name
from strategy.grid_strategy import GridStrategy

SYMBOL = "BTC/USDT"


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def strategy(broker, indicators, capital, positions, risk, policy, ledger, notifier):
    risk.notifier = notifier
    return GridStrategy(
        SYMBOL,
        broker=broker,
        indicators=indicators,
        capital=capital,
        positions=positions,
        risk=risk,
        policy=policy,
        notifier=notifier,
        reporter=PerformanceReporter(ledger),
        metrics=MetricsRecorder(enabled=False),
    )


class TestSearching:
    def test_opens_cycle_when_entry_conditions_hold(self, strategy, ledger, broker, notifier):
        result = strategy.tick()

        assert result.action == "OPEN_CYCLE"
        assert result.executed
        cycle = ledger.get_active_cycle(SYMBOL)
        assert cycle.buy_count == 1
        assert cycle.total_invested == Decimal("100")
        assert cycle.next_buy_price == Decimal("97")
        assert len(broker.orders) == 1
        notifier.notify_cycle_start.assert_called_once()
        notifier.notify_buy.assert_called_once_with(SYMBOL, Decimal("100"), Decimal("100"), 1)

    def test_waits_when_rsi_not_oversold(self, strategy, indicator_source, ledger):
        indicator_source.values["rsi_15m"] = 55.0
        indicator_source.values["rsi_1h"] = 60.0

        result = strategy.tick()

        assert result.action == "WAIT"
        assert "RSI not oversold" in result.reason
        assert ledger.get_active_cycle(SYMBOL) is None

    def test_waits_when_entry_below_minimum(self, strategy, broker, ledger):
        broker.balances["USDT"] = Decimal("50")
        result = strategy.tick()
        assert result.action == "WAIT"
        assert "Entry size too small" in result.reason
        assert ledger.get_active_cycle(SYMBOL) is None

    def test_failed_order_leaves_no_cycle(self, strategy, broker, ledger, notifier):
        broker.fail_next_order = RuntimeError("rejected")

        result = strategy.tick()

        assert result.action == "OPEN_CYCLE"
        assert not result.executed
        assert "rejected" in result.error
        assert ledger.get_active_cycle(SYMBOL) is None
        notifier.notify_order_failed.assert_called_once()


class TestActiveCycle:
    def test_dca_buy_when_price_reaches_next_level(self, strategy, broker, ledger):
        strategy.tick()
        broker.set_price(SYMBOL, "97")

        result = strategy.tick()

        assert result.action == "DCA_BUY"
        cycle = ledger.get_active_cycle(SYMBOL)
        assert cycle.buy_count == 2
        assert cycle.average_price < Decimal("100")
        assert [p.buy_number for p in ledger.get_positions(cycle.id)] == [1, 2]

    def test_no_action_between_levels(self, strategy, broker):
        strategy.tick()
        broker.set_price(SYMBOL, "99")
        result = strategy.tick()
        assert result.action == "WAIT"
        assert result.reason == "Waiting for price action"

    def test_dca_suspended_below_ema(self, strategy, ledger):
        strategy.tick()
        cycle = ledger.get_active_cycle(SYMBOL)
        snapshot = IndicatorSnapshot(symbol=SYMBOL, ema200_4h=98.0, rsi_15m=25.0)

        action = strategy.evaluate(cycle, Decimal("96"), snapshot, Decimal("1000"))

        assert action == Wait("Price below EMA200, DCA suspended")

    def test_max_buys_blocks_dca(self, strategy, ledger):
        strategy.tick()
        cycle = replace(ledger.get_active_cycle(SYMBOL), buy_count=4)
        snapshot = IndicatorSnapshot(symbol=SYMBOL, ema200_4h=90.0)

        action = strategy.evaluate(cycle, Decimal("96"), snapshot, Decimal("1000"))

        assert isinstance(action, Wait)
        assert "Max buys reached" in action.reason

    def test_sell_checked_before_buy(self, strategy, ledger):
        strategy.tick()
        cycle = replace(ledger.get_active_cycle(SYMBOL), next_buy_price=Decimal("200"))
        snapshot = IndicatorSnapshot(symbol=SYMBOL, ema200_4h=90.0)

        action = strategy.evaluate(cycle, Decimal("104"), snapshot, Decimal("1000"))

        assert isinstance(action, PartialSell)
        assert action.quantity == Decimal("0.5")

    def test_paused_cycle_waits(self, strategy, ledger, positions):
        strategy.tick()
        positions.pause_cycle(ledger.get_active_cycle(SYMBOL).id)
        result = strategy.tick()
        assert result.reason == "Cycle paused"


class TestExit:
    def test_full_cycle_partial_then_trailing(self, strategy, broker, ledger, notifier):
        strategy.tick()

        broker.set_price(SYMBOL, "104")
        result = strategy.tick()
        assert result.action == "PARTIAL_SELL"
        cycle = ledger.get_active_cycle(SYMBOL)
        assert cycle.status is CycleStatus.TRAILING
        assert cycle.remaining_quantity == Decimal("0.5")
        assert cycle.trailing_stop_price == Decimal("102.440")

        broker.set_price(SYMBOL, "110")
        assert strategy.tick().action == "WAIT"
        assert ledger.get_active_cycle(SYMBOL).trailing_stop_price == Decimal("108.350")

        broker.set_price(SYMBOL, "108")
        result = strategy.tick()
        assert result.action == "TRAILING_SELL"
        assert ledger.get_active_cycle(SYMBOL) is None

        closed = ledger.get_completed_cycles(SYMBOL)[0]
        assert closed.total_profit == Decimal("6")
        assert closed.profit_percent == Decimal("6")
        notifier.notify_cycle_end.assert_called_once()
        notifier.notify_trailing_sell.assert_called_once()

    def test_sell_capped_at_free_base_balance(self, strategy, broker, ledger):
        strategy.tick()
        broker.balances["BTC"] = Decimal("0.4")
        broker.set_price(SYMBOL, "104")

        strategy.tick()

        assert broker.orders[-1].side == "sell"
        assert broker.orders[-1].filled == Decimal("0.4")

    def test_stale_partial_sell_cycle_gets_trailing_armed(self, strategy, ledger, positions, broker):
        from tests.helpers import make_fill

        strategy.tick()
        cycle = ledger.get_active_cycle(SYMBOL)
        positions.partial_close(cycle.id, Decimal("0.5"), make_fill(SYMBOL, "sell", "104", "0.5", "manual"))
        broker.set_price(SYMBOL, "105")

        result = strategy.tick()

        assert result.action == "ACTIVATE_TRAILING"
        assert ledger.get_active_cycle(SYMBOL).status is CycleStatus.TRAILING

    def test_liquidate_closes_open_cycle(self, strategy, ledger):
        strategy.tick()
        result = strategy.liquidate("test")
        assert result.action == "FULL_CLOSE"
        assert result.executed
        assert ledger.get_active_cycle(SYMBOL) is None
        assert ledger.get_trades(SYMBOL)[-1].reason == "FULL_CLOSE"

    def test_liquidate_without_cycle(self, strategy):
        assert strategy.liquidate().reason == "No open cycle"


class TestRiskGate:
    def test_drawdown_pause_blocks_trading(self, strategy, ledger, broker):
        ledger.save_bot_state(BotState(scope=GLOBAL_SCOPE, peak_balance=Decimal("2000")))

        result = strategy.tick()

        assert result.action == "WAIT"
        assert result.reason.startswith("Drawdown pause")
        assert ledger.get_bot_state(GLOBAL_SCOPE).state is BotStateType.PAUSED_DRAWDOWN
        assert broker.orders == []

        assert strategy.tick().reason.startswith("Global bot paused")

    def test_crash_blocks_entry(self, strategy, broker, ledger):
        broker.set_recent_prices(SYMBOL, ["120", "110"])
        result = strategy.tick()
        assert result.reason == "Crash detected"
        assert ledger.get_active_cycle(SYMBOL) is None

    def test_crash_pause_lifts_when_rsi_recovers(self, strategy, broker, ledger, indicator_source, indicators):
        broker.set_recent_prices(SYMBOL, ["120", "110"])
        strategy.tick()
        assert ledger.get_bot_state(SYMBOL).state is BotStateType.PAUSED_CRASH

        strategy.tick()
        assert ledger.get_bot_state(SYMBOL).state is BotStateType.PAUSED_CRASH

        indicator_source.values["rsi_15m"] = 45.0
        indicators.invalidate(SYMBOL)
        strategy.tick()
        assert ledger.get_bot_state(SYMBOL).is_running


class TestTickMechanics:
    def test_overlapping_tick_is_skipped(self, strategy):
        strategy._lock.acquire()
        try:
            result = strategy.tick()
        finally:
            strategy._lock.release()
        assert result.action == "SKIPPED"

    def test_unexpected_error_becomes_error_result(self, strategy, broker):
        broker.prices.clear()
        result = strategy.tick()
        assert result.action == "ERROR"
        assert strategy.tick().action == "ERROR"

    def test_unknown_action_type_raises(self, strategy):
        with pytest.raises(TypeError):
            strategy.execute(object())

    def test_metrics_see_each_tick(self, strategy):
        strategy.tick()
        assert strategy.metrics.last_actions() == {SYMBOL: "OPEN_CYCLE"}
        assert strategy.metrics.last_balance() == 1000.0


def test_action_names():
    assert action_name(Wait("x")) == "WAIT"
    assert action_name(DcaBuy(cycle_id=1, amount=Decimal("1"), buy_number=2, price=Decimal("1"))) == "DCA_BUY"
    assert action_name(OpenCycle(
        amount=Decimal("1"), total_balance=Decimal("10"), grid_percent=Decimal("0.03"), price=Decimal("1"),
    )) == "OPEN_CYCLE"
    with pytest.raises(TypeError):
        action_name("OPEN_CYCLE")
