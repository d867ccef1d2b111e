"""
Tests for the risk state machine.

Pure transitions are tested directly; RiskManager tests run over an
in-memory ledger to check persistence and notification counts.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from core.models import GLOBAL_SCOPE, BotState, BotStateType
from core.risk import (
    DrawdownOutcome,
    RiskManager,
    apply_balance_update,
    apply_cycle_result,
    apply_pause,
    evaluate_drawdown,
    evaluate_trade_gate,
)

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
MAX_DD = Decimal("0.15")


class TestPureTransitions:
    def test_peak_is_running_maximum(self):
        state = BotState(scope=GLOBAL_SCOPE)
        state = apply_balance_update(state, Decimal("1000"))
        state = apply_balance_update(state, Decimal("1200"))
        state = apply_balance_update(state, Decimal("1100"))
        assert state.peak_balance == Decimal("1200")
        assert state.current_balance == Decimal("1100")

    def test_drawdown_below_warning_is_ok(self):
        state = BotState(scope=GLOBAL_SCOPE, peak_balance=Decimal("1000"), current_balance=Decimal("950"))
        new_state, verdict = evaluate_drawdown(state, MAX_DD)
        assert verdict.outcome is DrawdownOutcome.OK
        assert new_state.max_drawdown_hit == Decimal("0.05")

    def test_warning_fires_once_per_zone_entry(self):
        state = BotState(scope=GLOBAL_SCOPE, peak_balance=Decimal("1000"), current_balance=Decimal("880"))
        state, verdict = evaluate_drawdown(state, MAX_DD)
        assert verdict.outcome is DrawdownOutcome.NEW_WARNING
        state, verdict = evaluate_drawdown(state, MAX_DD)
        assert verdict.outcome is DrawdownOutcome.WARNING

        # Leave the zone and come back
        state = apply_balance_update(state, Decimal("990"))
        state, verdict = evaluate_drawdown(state, MAX_DD)
        assert verdict.outcome is DrawdownOutcome.OK
        state = apply_balance_update(state, Decimal("880"))
        state, verdict = evaluate_drawdown(state, MAX_DD)
        assert verdict.outcome is DrawdownOutcome.NEW_WARNING

    def test_max_drawdown_pauses_once(self):
        state = BotState(scope=GLOBAL_SCOPE, peak_balance=Decimal("1000"), current_balance=Decimal("850"))
        state, verdict = evaluate_drawdown(state, MAX_DD)
        assert verdict.outcome is DrawdownOutcome.NEW_PAUSE
        assert state.state is BotStateType.PAUSED_DRAWDOWN

        state, verdict = evaluate_drawdown(state, MAX_DD)
        assert verdict.outcome is DrawdownOutcome.ALREADY_PAUSED
        assert verdict.paused

    def test_max_drawdown_hit_never_decreases(self):
        state = BotState(scope=GLOBAL_SCOPE, peak_balance=Decimal("1000"), current_balance=Decimal("900"))
        state, _ = evaluate_drawdown(state, MAX_DD)
        state = apply_balance_update(state, Decimal("990"))
        state, _ = evaluate_drawdown(state, MAX_DD)
        assert state.max_drawdown_hit == Decimal("0.1")

    def test_zero_peak_is_ok(self):
        _, verdict = evaluate_drawdown(BotState(scope=GLOBAL_SCOPE), MAX_DD)
        assert verdict.outcome is DrawdownOutcome.OK

    def test_lateral_counter_and_pause(self):
        state = BotState(scope="BTC/USDT")
        threshold = Decimal("0.005")
        state, hit = apply_cycle_result(state, Decimal("0.2"), threshold, 3, 24, NOW)
        state, hit = apply_cycle_result(state, Decimal("-0.3"), threshold, 3, 24, NOW)
        assert not hit and state.consecutive_low_profit_cycles == 2

        state, hit = apply_cycle_result(state, Decimal("0.1"), threshold, 3, 24, NOW)
        assert hit
        assert state.state is BotStateType.PAUSED_LATERAL
        assert state.paused_until == NOW + timedelta(hours=24)
        assert state.consecutive_low_profit_cycles == 0

    def test_good_cycle_resets_lateral_counter(self):
        state = BotState(scope="BTC/USDT", consecutive_low_profit_cycles=2)
        state, hit = apply_cycle_result(state, Decimal("3"), Decimal("0.005"), 3, 24, NOW)
        assert not hit
        assert state.consecutive_low_profit_cycles == 0

    def test_running_is_not_a_pause_reason(self):
        with pytest.raises(ValueError):
            apply_pause(BotState(scope=GLOBAL_SCOPE), BotStateType.RUNNING)

    def test_trade_gate(self):
        running = BotState(scope=GLOBAL_SCOPE)
        symbol = BotState(scope="BTC/USDT")
        assert evaluate_trade_gate(running, symbol, NOW).allowed

        paused_global = BotState(scope=GLOBAL_SCOPE, state=BotStateType.PAUSED_DRAWDOWN)
        assert not evaluate_trade_gate(paused_global, symbol, NOW).allowed

        crashed = BotState(scope="BTC/USDT", state=BotStateType.PAUSED_CRASH)
        assert not evaluate_trade_gate(running, crashed, NOW).allowed

    def test_expired_lateral_pause_auto_resumes(self):
        running = BotState(scope=GLOBAL_SCOPE)
        lateral = BotState(
            scope="BTC/USDT", state=BotStateType.PAUSED_LATERAL, paused_until=NOW - timedelta(minutes=1)
        )
        gate = evaluate_trade_gate(running, lateral, NOW)
        assert gate.allowed and gate.auto_resume

        lateral.paused_until = NOW + timedelta(hours=1)
        assert not evaluate_trade_gate(running, lateral, NOW).allowed


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def managed_risk(ledger, broker, policy, notifier):
    return RiskManager(ledger, broker, policy, notifier=notifier, clock=lambda: NOW)


class TestRiskManager:
    def test_states_created_running(self, managed_risk, ledger):
        assert managed_risk.get_bot_state().is_running
        assert managed_risk.get_bot_state("BTC/USDT").scope == "BTC/USDT"
        assert {s.scope for s in ledger.get_bot_states()} == {GLOBAL_SCOPE, "BTC/USDT"}

    def test_drawdown_pause_notifies_once(self, managed_risk, notifier):
        managed_risk.update_balance(Decimal("1000"))
        managed_risk.update_balance(Decimal("800"))

        first = managed_risk.check_drawdown()
        second = managed_risk.check_drawdown()

        assert first.outcome is DrawdownOutcome.NEW_PAUSE
        assert second.outcome is DrawdownOutcome.ALREADY_PAUSED
        assert notifier.notify_bot_paused.call_count == 1
        assert managed_risk.get_bot_state().state is BotStateType.PAUSED_DRAWDOWN
        assert not managed_risk.can_trade("BTC/USDT").allowed

    def test_drawdown_pause_requires_operator_resume(self, managed_risk):
        managed_risk.update_balance(Decimal("1000"))
        managed_risk.update_balance(Decimal("800"))
        managed_risk.check_drawdown()

        managed_risk.update_balance(Decimal("1000"))
        assert managed_risk.check_drawdown().paused

        managed_risk.resume()
        assert managed_risk.can_trade("BTC/USDT").allowed

    def test_reset_peak(self, managed_risk):
        managed_risk.update_balance(Decimal("1000"))
        managed_risk.update_balance(Decimal("700"))
        state = managed_risk.reset_peak()
        assert state.peak_balance == Decimal("700")
        assert managed_risk.reset_peak(Decimal("650")).peak_balance == Decimal("650")

    def test_crash_detected_and_not_duplicated(self, managed_risk, broker, ledger, notifier):
        broker.set_recent_prices("BTC/USDT", ["100", "97", "94"])

        assert managed_risk.check_crash_condition("BTC/USDT", Decimal("91"))
        assert not managed_risk.check_crash_condition("BTC/USDT", Decimal("90"))

        assert len(ledger.get_unresolved_crash_events("BTC/USDT")) == 1
        assert managed_risk.get_bot_state("BTC/USDT").state is BotStateType.PAUSED_CRASH
        assert notifier.notify_crash_detected.call_count == 1

    def test_small_drop_is_not_a_crash(self, managed_risk, broker, ledger):
        broker.set_recent_prices("BTC/USDT", ["100", "98"])
        assert not managed_risk.check_crash_condition("BTC/USDT", Decimal("93"))
        assert ledger.get_crash_events("BTC/USDT") == []

    def test_crash_needs_two_samples(self, managed_risk, broker):
        broker.set_recent_prices("BTC/USDT", ["100"])
        assert not managed_risk.check_crash_condition("BTC/USDT", Decimal("50"))

    def test_crash_price_failure_is_not_a_crash(self, ledger, policy):
        broken = MagicMock()
        broken.fetch_recent_prices.side_effect = RuntimeError("exchange down")
        risk = RiskManager(ledger, broken, policy, clock=lambda: NOW)
        assert not risk.check_crash_condition("BTC/USDT", Decimal("50"))

    def test_crash_resolves_when_rsi_recovers(self, managed_risk, broker, ledger, notifier):
        broker.set_recent_prices("BTC/USDT", ["100", "90"])
        managed_risk.check_crash_condition("BTC/USDT", Decimal("90"))

        assert not managed_risk.resolve_crash_if_recovered("BTC/USDT", 30.0)
        assert not managed_risk.resolve_crash_if_recovered("BTC/USDT", None)
        assert managed_risk.resolve_crash_if_recovered("BTC/USDT", 36.0)

        assert managed_risk.get_bot_state("BTC/USDT").is_running
        events = ledger.get_crash_events("BTC/USDT")
        assert all(e.resolved for e in events)
        notifier.notify_bot_resumed.assert_called_once_with("BTC/USDT")

    def test_operator_resume_closes_crash_events(self, managed_risk, broker, ledger):
        broker.set_recent_prices("BTC/USDT", ["100", "90"])
        managed_risk.check_crash_condition("BTC/USDT", Decimal("90"))
        managed_risk.resume("BTC/USDT")
        assert ledger.get_unresolved_crash_events("BTC/USDT") == []
        assert managed_risk.check_crash_condition("BTC/USDT", Decimal("89"))

    def test_lateral_pause_and_auto_resume(self, ledger, broker, policy, notifier):
        clock = {"now": NOW}
        risk = RiskManager(ledger, broker, policy, notifier=notifier, clock=lambda: clock["now"])

        for _ in range(3):
            triggered = risk.record_cycle_result("BTC/USDT", Decimal("0.2"))
        assert triggered
        notifier.notify_lateral_detected.assert_called_once_with("BTC/USDT", 24.0)
        assert not risk.can_trade("BTC/USDT").allowed

        clock["now"] = NOW + timedelta(hours=25)
        gate = risk.can_trade("BTC/USDT")
        assert gate.allowed
        assert risk.get_bot_state("BTC/USDT").is_running

    def test_manual_pause_and_resume(self, managed_risk, notifier):
        managed_risk.pause(BotStateType.PAUSED_CRASH, "ETH/USDT")
        assert managed_risk.get_bot_state("ETH/USDT").state is BotStateType.PAUSED_CRASH
        managed_risk.resume("ETH/USDT")
        assert managed_risk.get_bot_state("ETH/USDT").is_running
        notifier.notify_bot_paused.assert_called_once_with("PAUSED_CRASH", "ETH/USDT")
