"""
Tests for AccountRiskGuard: admission gating, drawdown/daily-loss breakers,
cooldown expiry, emergency stop, loss-streak alerts and hydration.
"""
import math
import threading

import pytest

from core.events import EventKind
from core.risk import CircuitBreakerReason
from tests.helpers import alert_texts


def reference_drawdowns(start, pnls):
    """Independent drawdown calculation: running max of the balance curve."""
    balance = start
    peak = start
    out = []
    for pnl in pnls:
        balance += pnl
        peak = max(peak, balance)
        out.append((peak - balance) / peak * 100)
    return out


@pytest.mark.parametrize("pnls", [
    [1_000, -500, -2_000, 3_000, -4_000],
    [-10_000, -10_000, 50_000, -1_000, -60_000, 5_000],
    [20_000, 20_000, -5_000, 40_000, -30_000, -30_000],
])
def test_drawdown_matches_reference(guard_factory, pnls):
    guard = guard_factory(max_drawdown_pct=50.0, max_daily_loss_pct=50.0, emergency_stop_threshold_pct=60.0)
    expected = reference_drawdowns(1_000_000, pnls)

    for pnl, want in zip(pnls, expected):
        guard.record_trade(pnl)
        assert guard.get_metrics()["drawdown_pct"] == pytest.approx(want)

    metrics = guard.get_metrics()
    assert metrics["current_balance"] == 1_000_000 + sum(pnls)
    assert metrics["high_water_mark"] >= metrics["current_balance"]


def test_max_positions_blocks_admission(guard_factory):
    guard = guard_factory(max_positions=3)
    for _ in range(3):
        guard.increment_active_positions()

    assert guard.can_open_position(1, "TKN", 1.0) is False
    assert guard.can_open_position(0, "OTHER", 500.0) is False

    guard.decrement_active_positions()
    assert guard.can_open_position(1, "TKN", 1.0) is True


def test_active_count_never_negative(guard_factory):
    guard = guard_factory()
    guard.decrement_active_positions()
    assert guard.get_metrics()["active_positions"] == 0


def test_position_size_limit(guard_factory):
    guard = guard_factory(max_position_size_lamports=100_000)
    assert guard.can_open_position(100_000, "TKN", 1.0) is True
    assert guard.can_open_position(100_001, "TKN", 1.0) is False


@pytest.mark.parametrize("size,price", [(-1, 1.0), (math.nan, 1.0), (10, 0.0), (10, math.inf), ("10", 1.0)])
def test_bad_admission_input_returns_false(guard_factory, size, price):
    guard = guard_factory()
    assert guard.can_open_position(size, "TKN", price) is False


def test_daily_loss_breaker_boundary(guard_factory, alerts, events):
    guard = guard_factory(max_daily_loss_pct=5.0)

    guard.record_trade(-49_999)  # 4.9999%
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.HIGH_DAILY_LOSS) is False
    assert guard.can_open_position(1, "TKN", 1.0) is True

    guard.record_trade(-2)  # 5.0001%
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.HIGH_DAILY_LOSS) is True
    assert guard.can_open_position(1, "TKN", 1.0) is False

    assert any("HIGH_DAILY_LOSS" in text for text in alert_texts(alerts))
    tripped = [e.payload["reason"] for e in events.drain(EventKind.CIRCUIT_BREAKER)]
    assert tripped == ["HIGH_DAILY_LOSS"]


def test_drawdown_breaker_trips(guard_factory):
    guard = guard_factory(max_drawdown_pct=10.0, max_daily_loss_pct=50.0, emergency_stop_threshold_pct=60.0)
    guard.record_trade(100_000)   # hwm 1_100_000
    guard.record_trade(-109_000)  # 9.909%
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.HIGH_DRAWDOWN) is False
    guard.record_trade(-2_000)    # 10.09%
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.HIGH_DRAWDOWN) is True


def test_breaker_stops_blocking_after_cooldown_but_stays_tripped(guard_factory, clock):
    guard = guard_factory(circuit_breaker_cooldown_hours=8)
    guard.trigger_circuit_breaker(CircuitBreakerReason.CONTRACT_RISK, "rug flagged")
    assert guard.can_open_position(1, "TKN", 1.0) is False

    clock.advance(hours=7, minutes=59)
    assert guard.can_open_position(1, "TKN", 1.0) is False

    clock.advance(minutes=2)
    assert guard.can_open_position(1, "TKN", 1.0) is True
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.CONTRACT_RISK) is True

    guard.reset_circuit_breaker(CircuitBreakerReason.CONTRACT_RISK)
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.CONTRACT_RISK) is False


def test_breach_persisting_past_cooldown_rearms_breaker(guard_factory, clock, alerts, events):
    guard = guard_factory(max_drawdown_pct=10.0, max_daily_loss_pct=90.0, emergency_stop_threshold_pct=60.0)
    guard.record_trade(-120_000)  # 12%
    assert guard.can_open_position(1, "TKN", 1.0) is False
    first = guard.get_metrics()["circuit_breakers"]["HIGH_DRAWDOWN"]["tripped_at"]

    clock.advance(hours=9)
    guard.record_trade(-50_000)   # 17%

    assert guard.check_performance_metrics() is False
    assert guard.can_open_position(1, "TKN", 1.0) is False
    breaker = guard.get_metrics()["circuit_breakers"]["HIGH_DRAWDOWN"]
    assert breaker["blocking"] is True
    assert breaker["tripped_at"] == clock().isoformat() != first

    tripped = [e.payload["reason"] for e in events.drain(EventKind.CIRCUIT_BREAKER)]
    assert tripped == ["HIGH_DRAWDOWN", "HIGH_DRAWDOWN"]
    assert sum("HIGH_DRAWDOWN" in t for t in alert_texts(alerts)) == 2


def test_retrigger_while_tripped_is_noop(guard_factory, clock, events):
    guard = guard_factory()
    guard.trigger_circuit_breaker(CircuitBreakerReason.MANUAL_STOP)
    first = guard.get_metrics()["circuit_breakers"]["MANUAL_STOP"]["tripped_at"]
    clock.advance(hours=1)
    guard.trigger_circuit_breaker(CircuitBreakerReason.MANUAL_STOP)

    assert guard.get_metrics()["circuit_breakers"]["MANUAL_STOP"]["tripped_at"] == first
    assert len(events.drain(EventKind.CIRCUIT_BREAKER)) == 1


def test_emergency_stop_requires_explicit_reset(guard_factory, clock, alerts, events):
    guard = guard_factory(max_drawdown_pct=10.0, max_daily_loss_pct=5.0, emergency_stop_threshold_pct=15.0)
    guard.record_trade(-150_000)

    metrics = guard.get_metrics()
    assert metrics["emergency_stop_active"] is True
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.EMERGENCY_STOP)
    assert any("EMERGENCY STOP" in text for text in alert_texts(alerts))
    assert len(events.drain(EventKind.EMERGENCY_STOP)) == 1

    clock.advance(hours=9)
    assert guard.can_open_position(1, "TKN", 1.0) is False

    guard.reset_emergency_stop()
    assert guard.get_metrics()["emergency_stop_active"] is False
    assert guard.can_open_position(1, "TKN", 1.0) is True


def test_consecutive_losses_and_drawdown_breach(guard_factory, alerts):
    guard = guard_factory(initial_balance_lamports=1000, max_position_size_lamports=1000)
    for _ in range(3):
        guard.record_trade(-10)

    assert guard.get_metrics()["consecutive_losses"] == 3
    texts = alert_texts(alerts)
    assert sum("3 consecutive losses" in t for t in texts) == 1

    guard.check_loss_alert(-15, 10)
    assert any("Drawdown Breach" in t for t in alert_texts(alerts))


def test_consecutive_loss_alert_once_per_streak(guard_factory, alerts):
    guard = guard_factory(initial_balance_lamports=100_000)
    for pnl in (-1, -2, -3, -4, 2, -1, -2):
        guard.record_trade(pnl)

    streak_alerts = [t for t in alert_texts(alerts) if "consecutive losses" in t]
    assert len(streak_alerts) == 1
    assert guard.get_metrics()["consecutive_losses"] == 2


def test_loss_alert_below_threshold_is_quiet(guard_factory, alerts):
    guard = guard_factory()
    guard.check_loss_alert(-5, 10)
    alerts.notify.assert_not_called()


def test_trade_rate_limit(guard_factory):
    guard = guard_factory(max_trades_per_minute=2)
    guard.record_trade(1)
    assert guard.can_open_position(1, "TKN", 1.0) is True
    guard.record_trade(1)

    assert guard.can_open_position(1, "TKN", 1.0) is False
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.TRADE_RATE_EXCEEDED)


def test_volatility_admission_check(guard_factory):
    guard = guard_factory(max_volatility_pct=25.0)
    guard.update_price("WILD", 100.0)
    guard.update_price("WILD", 200.0)

    assert guard.can_open_position(1, "WILD", 150.0) is False
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.HIGH_VOLATILITY)


def test_price_deviation_admission_check(guard_factory):
    guard = guard_factory(max_price_deviation_pct=15.0)
    guard.update_price("CALM", 100.0)
    guard.update_price("CALM", 101.0)

    assert guard.can_open_position(1, "CALM", 100.5) is True
    assert guard.can_open_position(1, "CALM", 130.0) is False
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.PRICE_DEVIATION)


def test_price_samples_expire(guard_factory, clock):
    guard = guard_factory(volatility_window_seconds=60)
    guard.update_price("WILD", 100.0)
    guard.update_price("WILD", 200.0)
    clock.advance(seconds=61)

    assert guard.can_open_position(1, "WILD", 150.0) is True


def test_low_success_rate(guard_factory):
    guard = guard_factory(min_success_rate_pct=70.0)
    for i in range(10):
        execution_id = guard.start_trade_execution("TKN")
        guard.complete_trade_execution(execution_id, success=i % 2 == 0)

    assert guard.get_metrics()["success_rate"] == pytest.approx(50.0)
    assert guard.can_open_position(1, "TKN", 1.0) is False
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.LOW_SUCCESS_RATE)


def test_unknown_execution_id_is_ignored(guard_factory):
    guard = guard_factory()
    guard.complete_trade_execution("nope", True)
    assert guard.get_metrics()["success_rate"] == 100.0


def test_disable_and_enable_system(guard_factory):
    guard = guard_factory()
    guard.disable_system()
    assert guard.can_open_position(1, "TKN", 1.0) is False
    assert guard.is_circuit_breaker_tripped(CircuitBreakerReason.MANUAL_STOP)

    guard.enable_system()
    assert guard.can_open_position(1, "TKN", 1.0) is True


def test_reset_all_circuit_breakers(guard_factory, events):
    guard = guard_factory()
    guard.trigger_circuit_breaker(CircuitBreakerReason.HIGH_VOLATILITY)
    guard.trigger_circuit_breaker(CircuitBreakerReason.PRICE_DEVIATION)
    guard.reset_all_circuit_breakers()

    assert not any(b["tripped"] for b in guard.get_metrics()["circuit_breakers"].values())
    assert len(events.drain(EventKind.CIRCUIT_BREAKER_RESET)) == 2


def test_day_roll_resets_daily_baseline(guard_factory, clock):
    guard = guard_factory(max_daily_loss_pct=5.0)
    guard.record_trade(-30_000)
    assert guard.get_metrics()["daily_loss_pct"] == pytest.approx(3.0)

    clock.advance(days=1, seconds=1)
    assert guard.roll_day_if_needed() is True
    metrics = guard.get_metrics()
    assert metrics["daily_start_balance"] == 970_000
    assert metrics["daily_loss_pct"] == 0.0
    assert metrics["total_trades"] == 0
    assert guard.roll_day_if_needed() is False


def test_metrics_snapshot_fields(guard_factory):
    guard = guard_factory(max_positions=3)
    guard.increment_active_positions()
    guard.record_trade(500)
    guard.record_trade(-100)

    metrics = guard.get_metrics()
    assert metrics["win_rate"] == pytest.approx(50.0)
    assert metrics["available_positions"] == 2
    assert metrics["total_pnl"] == 400
    assert metrics["daily_pnl"] == 400
    assert metrics["trades_last_minute"] == 2
    assert set(metrics["circuit_breakers"]) == {r.value for r in CircuitBreakerReason}


def test_hydration_restores_breakers_and_balances(guard_factory, clock):
    state = {
        "current_balance": 900_000,
        "high_water_mark": 1_000_000,
        "daily_start_balance": 950_000,
        "day": clock().date().isoformat(),
        "emergency_stop_active": False,
        "consecutive_losses": 2,
        "circuit_breakers": {
            "HIGH_DRAWDOWN": {"tripped": True, "tripped_at": None},
            "NOT_A_REASON": {"tripped": True},
        },
    }
    guard = guard_factory(initial_state=state)
    metrics = guard.get_metrics()

    assert metrics["current_balance"] == 900_000
    assert metrics["high_water_mark"] == 1_000_000
    assert metrics["daily_start_balance"] == 950_000
    assert metrics["consecutive_losses"] == 2
    assert metrics["circuit_breakers"]["HIGH_DRAWDOWN"]["tripped_at"] == clock().isoformat()
    assert guard.can_open_position(1, "TKN", 1.0) is False

    clock.advance(hours=8, seconds=1)
    assert guard.can_open_position(1, "TKN", 1.0) is True


def test_export_state_round_trips_through_hydration(guard_factory):
    guard = guard_factory()
    guard.record_trade(-20_000)
    guard.trigger_circuit_breaker(CircuitBreakerReason.CONTRACT_RISK, "flagged")

    clone = guard_factory(initial_state=guard.export_state())
    assert clone.get_metrics()["current_balance"] == 980_000
    assert clone.is_circuit_breaker_tripped(CircuitBreakerReason.CONTRACT_RISK)


def test_concurrent_trades_and_admission_are_consistent(guard_factory):
    guard = guard_factory(max_trades_per_minute=10_000, max_trades_per_hour=10_000, max_trades_per_day=10_000,
                          max_daily_loss_pct=90.0, max_drawdown_pct=90.0, emergency_stop_threshold_pct=95.0)

    def trade():
        for _ in range(200):
            guard.record_trade(1)
            guard.can_open_position(1, "TKN", 1.0)

    threads = [threading.Thread(target=trade) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert guard.get_metrics()["current_balance"] == 1_000_000 + 800
