from __future__ import annotations

import json
import threading
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from signal_guard.errors import AccountNotFoundError, NotifierError, StateStoreError
from signal_guard.risk.manager import (
    CIRCUIT_BREAKER_OPEN,
    FUTURE_TIMESTAMP,
    RISK_STATE_UNAVAILABLE,
    AccountRiskManager,
)
from signal_guard.risk.store import InMemoryStateStore, JsonFileStateStore
from signal_guard.safety.policy import PolicyStore
from signal_guard.schemas import MarketData, SafetyPolicy, TradingSignal
from signal_guard.types import (
    Alert,
    AlertLevel,
    BlockReason,
    CircuitState,
    RiskLevel,
    SafetyResult,
    TripReason,
)

_NOW = datetime(2024, 1, 10, 12, 0, tzinfo=UTC)


def _signal(**overrides: Any) -> TradingSignal:
    fields: dict[str, Any] = {
        "pair": "BTC/USDT",
        "action": "BUY",
        "entry_price": 50_000.0,
        "stop_loss": 49_000.0,
        "take_profit": 53_000.0,
        "confidence": 90.0,
        "amount": 1_000.0,
        "timestamp": _NOW,
    }
    fields.update(overrides)
    return TradingSignal(**fields)


class _CountingValidator:
    def __init__(self) -> None:
        self.calls = 0

    def validate(
        self,
        signal: TradingSignal,
        portfolio_value: float,
        policy: SafetyPolicy,
        market_data: MarketData | None = None,
    ) -> SafetyResult:
        self.calls += 1
        return SafetyResult(is_valid=True)


class _RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, Alert]] = []
        self._fail = fail

    def notify(self, account_id: str, alert: Alert) -> None:
        if self._fail:
            raise NotifierError("channel down")
        self.sent.append((account_id, alert))


class _BrokenStore(InMemoryStateStore):
    def load(self, account_id: str) -> None:
        raise StateStoreError("disk gone")


def _manager(**kwargs: Any) -> AccountRiskManager:
    kwargs.setdefault("clock", lambda: _NOW)
    policy = kwargs.pop("policy", None)
    return AccountRiskManager(PolicyStore(policy), **kwargs)


def test_unknown_account_summary_raises() -> None:
    with pytest.raises(AccountNotFoundError):
        _manager().get_risk_summary("ghost")


def test_validate_signal_passes_through_validator_result() -> None:
    manager = _manager()
    decision = manager.validate_signal(_signal(), "acct-1", 10_000)
    assert decision.allowed
    assert decision.block_reason is None
    assert decision.result.safety_score == 100

    rejected = manager.validate_signal(_signal(confidence=10.0), "acct-1", 10_000)
    assert not rejected.allowed
    assert rejected.block_reason is BlockReason.POLICY_VIOLATION
    assert rejected.result.errors == ("Signal confidence too low: 10% (min: 75%)",)


def test_open_breaker_short_circuits_validation() -> None:
    validator = _CountingValidator()
    manager = _manager(validator=validator)
    manager.trip_circuit_breaker("acct-1")

    decision = manager.validate_signal(_signal(), "acct-1", 10_000)
    assert not decision.allowed
    assert decision.block_reason is BlockReason.CIRCUIT_BREAKER_OPEN
    assert decision.result.errors == (CIRCUIT_BREAKER_OPEN,)
    assert decision.result.safety_score == 0
    assert validator.calls == 0


def test_unreadable_state_fails_closed() -> None:
    validator = _CountingValidator()
    manager = _manager(validator=validator, state_store=_BrokenStore())
    decision = manager.validate_signal(_signal(), "acct-1", 10_000)
    assert not decision.allowed
    assert decision.block_reason is BlockReason.RISK_STATE_UNAVAILABLE
    assert decision.result.errors == (RISK_STATE_UNAVAILABLE,)
    assert validator.calls == 0


def test_consecutive_losses_trip_breaker() -> None:
    notifier = _RecordingNotifier()
    manager = _manager(notifier=notifier)
    for value in (9_990, 9_980):
        manager.record_trade_opened("acct-1")
        summary = manager.record_trade_closed("acct-1", pnl=-10, portfolio_value=value)
        assert summary.circuit_state is CircuitState.CLOSED

    manager.record_trade_opened("acct-1")
    summary = manager.record_trade_closed("acct-1", pnl=-10, portfolio_value=9_970)
    assert summary.circuit_state is CircuitState.OPEN
    assert summary.trip_reason is TripReason.CONSECUTIVE_LOSSES
    assert summary.consecutive_losses == 3
    assert summary.alerts[0].level is AlertLevel.CRITICAL
    assert summary.threat_level is AlertLevel.CRITICAL
    assert manager.flush_alerts(timeout=5)
    assert [alert.level for _, alert in notifier.sent] == [AlertLevel.CRITICAL]


def test_win_resets_loss_streak() -> None:
    manager = _manager()
    manager.record_trade_closed("acct-1", pnl=-10, portfolio_value=9_990)
    manager.record_trade_closed("acct-1", pnl=-10, portfolio_value=9_980)
    summary = manager.record_trade_closed("acct-1", pnl=50, portfolio_value=10_030)
    assert summary.consecutive_losses == 0
    assert summary.daily_loss_amount == 20
    assert summary.active_trade_count == 0


def test_daily_loss_trips_breaker() -> None:
    manager = _manager()
    summary = manager.record_trade_closed("acct-1", pnl=-600, portfolio_value=9_400)
    assert summary.circuit_state is CircuitState.OPEN
    assert summary.trip_reason is TripReason.DAILY_LOSS
    assert summary.alerts[0].message == "Daily loss limit exceeded: 6.0%"


def test_drawdown_trips_on_mark_to_market() -> None:
    manager = _manager(policy=SafetyPolicy(max_daily_loss_ratio=0.5))
    manager.update_portfolio_value("acct-1", 10_000)
    manager.update_portfolio_value("acct-1", 12_000)
    summary = manager.update_portfolio_value("acct-1", 10_500)
    assert summary.circuit_state is CircuitState.OPEN
    assert summary.trip_reason is TripReason.DRAWDOWN
    assert summary.current_drawdown_ratio == pytest.approx(0.125)


def test_negative_portfolio_value_rejected() -> None:
    with pytest.raises(ValueError):
        _manager().record_trade_closed("acct-1", pnl=-10, portfolio_value=-1)


def test_active_count_never_negative() -> None:
    manager = _manager()
    summary = manager.record_trade_closed("acct-1", pnl=5, portfolio_value=10_005)
    assert summary.active_trade_count == 0


def test_daily_reset_closes_automatic_trip() -> None:
    manager = _manager()
    manager.record_trade_closed("acct-1", pnl=-600, portfolio_value=9_400)
    assert manager.reset_daily_metrics() == ["acct-1"]

    summary = manager.get_risk_summary("acct-1")
    assert summary.circuit_state is CircuitState.CLOSED
    assert summary.trip_reason is None
    assert summary.daily_loss_amount == 0
    assert summary.daily_trade_count == 0
    assert summary.consecutive_losses == 0
    assert summary.alerts[0].message == "Circuit breaker reset"


def test_daily_reset_keeps_manual_trip() -> None:
    manager = _manager()
    manager.trip_circuit_breaker("acct-1", message="ops freeze")
    manager.reset_daily_metrics("acct-1")
    summary = manager.get_risk_summary("acct-1")
    assert summary.circuit_state is CircuitState.OPEN
    assert summary.trip_reason is TripReason.MANUAL


def test_manual_trip_relabels_open_breaker() -> None:
    manager = _manager()
    manager.record_trade_closed("acct-1", pnl=-600, portfolio_value=9_400)
    summary = manager.trip_circuit_breaker("acct-1")
    assert summary.trip_reason is TripReason.MANUAL
    manager.reset_daily_metrics("acct-1")
    assert manager.get_risk_summary("acct-1").is_blocked


def test_daily_reset_unknown_account_raises() -> None:
    with pytest.raises(AccountNotFoundError):
        _manager().reset_daily_metrics("ghost")


def test_reset_circuit_breaker_is_idempotent() -> None:
    manager = _manager()
    manager.trip_circuit_breaker("acct-1")
    first = manager.reset_circuit_breaker("acct-1")
    second = manager.reset_circuit_breaker("acct-1")
    assert first.circuit_state is CircuitState.CLOSED
    assert second == first
    assert manager.validate_signal(_signal(), "acct-1", 10_000).allowed


def test_record_alert_levels_and_forwarding() -> None:
    notifier = _RecordingNotifier()
    manager = _manager(notifier=notifier)
    manager.record_alert("acct-1", "low", "minor")
    manager.record_alert("acct-1", AlertLevel.MEDIUM, "odd spread")
    assert manager.get_risk_summary("acct-1").threat_level is AlertLevel.MEDIUM
    assert manager.flush_alerts(timeout=5)
    assert notifier.sent == []

    manager.record_alert("acct-1", AlertLevel.HIGH, "api errors", {"count": 3})
    summary = manager.get_risk_summary("acct-1")
    assert summary.threat_level is AlertLevel.HIGH
    assert [alert.message for alert in summary.alerts] == ["api errors", "odd spread", "minor"]
    assert manager.flush_alerts(timeout=5)
    assert notifier.sent[0][1].data == {"count": 3}


def test_notifier_failure_does_not_break_alerting() -> None:
    manager = _manager(notifier=_RecordingNotifier(fail=True))
    alert = manager.record_alert("acct-1", AlertLevel.CRITICAL, "exchange down")
    assert alert.level is AlertLevel.CRITICAL
    assert manager.get_risk_summary("acct-1").threat_level is AlertLevel.CRITICAL


def test_alert_history_is_bounded() -> None:
    manager = _manager(alert_history_limit=10)
    for i in range(25):
        manager.record_alert("acct-1", AlertLevel.LOW, f"alert {i}")
    alerts = manager.get_risk_summary("acct-1").alerts
    assert len(alerts) == 10
    assert alerts[0].message == "alert 24"
    assert alerts[-1].message == "alert 15"


def test_old_alerts_leave_threat_window() -> None:
    current = [_NOW]
    manager = _manager(clock=lambda: current[0])
    manager.record_alert("acct-1", AlertLevel.CRITICAL, "spike")
    current[0] = _NOW + timedelta(hours=2)
    assert manager.get_risk_summary("acct-1").threat_level is AlertLevel.LOW


def test_update_config_swaps_policy() -> None:
    manager = _manager()
    manager.update_config(min_confidence_threshold=95)
    decision = manager.validate_signal(_signal(), "acct-1", 10_000)
    assert not decision.allowed

    manager.update_config(SafetyPolicy())
    assert manager.validate_signal(_signal(), "acct-1", 10_000).allowed

    with pytest.raises(ValueError):
        manager.update_config(SafetyPolicy(), max_leverage=2)


def test_reserve_trade_enforces_limits() -> None:
    manager = _manager(policy=SafetyPolicy(max_concurrent_trades=2, max_daily_trades=3))
    assert manager.reserve_trade("acct-1") is None
    assert manager.reserve_trade("acct-1") is None
    reason, message = manager.reserve_trade("acct-1")
    assert reason is BlockReason.EXPOSURE_LIMIT
    assert message == "Too many concurrent trades: 2 (max: 2)"

    manager.record_trade_closed("acct-1", pnl=1, portfolio_value=10_001)
    assert manager.reserve_trade("acct-1") is None
    manager.record_trade_closed("acct-1", pnl=1, portfolio_value=10_002)
    reason, message = manager.reserve_trade("acct-1")
    assert message == "Daily trade limit reached: 3 (max: 3)"


def test_accounts_are_independent() -> None:
    manager = _manager()
    manager.trip_circuit_breaker("acct-1")
    assert manager.validate_signal(_signal(), "acct-2", 10_000).allowed
    assert not manager.validate_signal(_signal(), "acct-1", 10_000).allowed


def test_concurrent_opens_are_not_lost() -> None:
    manager = _manager()
    threads = [threading.Thread(target=manager.record_trade_opened, args=("acct-1",)) for _ in range(1000)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    summary = manager.get_risk_summary("acct-1")
    assert summary.daily_trade_count == 1000
    assert summary.active_trade_count == 1000


def test_concurrent_validations_see_breaker() -> None:
    validator = _CountingValidator()
    manager = _manager(validator=validator)
    manager.trip_circuit_breaker("acct-1")
    results: list[bool] = []
    lock = threading.Lock()

    def _submit() -> None:
        decision = manager.validate_signal(_signal(), "acct-1", 10_000)
        with lock:
            results.append(decision.allowed)

    threads = [threading.Thread(target=_submit) for _ in range(100)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert results == [False] * 100
    assert validator.calls == 0


def test_state_survives_restart() -> None:
    store = InMemoryStateStore()
    first = _manager(state_store=store)
    first.trip_circuit_breaker("acct-1", message="halt")
    first.record_trade_opened("acct-1")

    second = _manager(state_store=store)
    summary = second.get_risk_summary("acct-1")
    assert summary.is_blocked
    assert summary.trip_reason is TripReason.MANUAL
    assert summary.active_trade_count == 1
    assert summary.alerts[0].message == "halt"


def test_purge_account_forgets_state() -> None:
    store = InMemoryStateStore()
    manager = _manager(state_store=store)
    manager.record_trade_opened("acct-1")
    manager.purge_account("acct-1")
    assert store.account_ids() == []
    with pytest.raises(AccountNotFoundError):
        manager.get_risk_summary("acct-1")


def test_health_check_reports_consistency() -> None:
    manager = _manager()
    manager.record_trade_opened("acct-1")
    manager.trip_circuit_breaker("acct-2")
    report = manager.health_check()
    assert report.healthy
    assert report.accounts == 2
    assert report.open_breakers == 1


def test_health_check_flags_corrupt_state() -> None:
    manager = _manager()
    manager.record_trade_opened("acct-1")
    manager._accounts["acct-1"].state.active_trade_count = -3
    report = manager.health_check()
    assert not report.healthy
    assert report.issues == ("acct-1: negative active_trade_count",)


class _BlockingNotifier:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.sent: list[Alert] = []

    def notify(self, account_id: str, alert: Alert) -> None:
        self.release.wait(timeout=10)
        self.sent.append(alert)


def _corrupt_store(tmp_path: Path) -> JsonFileStateStore:
    store = JsonFileStateStore(tmp_path)
    (tmp_path / "acct-1.json").write_text(
        json.dumps({"account_id": "acct-1", "circuit_state": "HALF"}),
        encoding="utf-8",
    )
    return store


def test_slow_notifier_does_not_delay_trip() -> None:
    notifier = _BlockingNotifier()
    manager = _manager(notifier=notifier)

    started = time.perf_counter()
    first = manager.trip_circuit_breaker("acct-1")
    second = manager.record_trade_closed("acct-2", pnl=-600, portfolio_value=9_400)
    elapsed = time.perf_counter() - started

    assert elapsed < 0.5
    assert first.is_blocked
    assert second.trip_reason is TripReason.DAILY_LOSS
    assert not manager.validate_signal(_signal(), "acct-1", 10_000).allowed
    assert notifier.sent == []

    notifier.release.set()
    assert manager.flush_alerts(timeout=5)
    assert [alert.level for alert in notifier.sent] == [AlertLevel.CRITICAL, AlertLevel.CRITICAL]
    manager.close()


def test_alerts_after_close_are_not_forwarded() -> None:
    notifier = _RecordingNotifier()
    manager = _manager(notifier=notifier)
    manager.close()
    alert = manager.record_alert("acct-1", AlertLevel.CRITICAL, "late")
    assert alert.level is AlertLevel.CRITICAL
    assert manager.get_risk_summary("acct-1").alerts[0].message == "late"
    assert notifier.sent == []


def test_health_check_reports_unreadable_state(tmp_path: Path) -> None:
    manager = _manager(state_store=_corrupt_store(tmp_path))
    manager.record_trade_opened("acct-2")

    report = manager.health_check()
    assert not report.healthy
    assert report.accounts == 2
    assert len(report.issues) == 1
    assert report.issues[0].startswith("acct-1: state unavailable")
    assert manager.account_ids() == ["acct-1", "acct-2"]


def test_settlement_on_unreadable_state_is_dropped(tmp_path: Path) -> None:
    manager = _manager(state_store=_corrupt_store(tmp_path))

    assert manager.record_trade_closed("acct-1", pnl=-10, portfolio_value=9_990) is None
    assert manager.record_trade_opened("acct-1") is None
    assert manager.update_portfolio_value("acct-1", 9_990) is None
    assert manager.reserve_trade("acct-1") == (BlockReason.RISK_STATE_UNAVAILABLE, RISK_STATE_UNAVAILABLE)
    assert manager.reset_daily_metrics() == []
    with pytest.raises(StateStoreError):
        manager.get_risk_summary("acct-1")
    with pytest.raises(StateStoreError):
        manager.reset_daily_metrics("acct-1")

    decision = manager.validate_signal(_signal(), "acct-1", 10_000)
    assert decision.block_reason is BlockReason.RISK_STATE_UNAVAILABLE


def test_repaired_state_becomes_available(tmp_path: Path) -> None:
    manager = _manager(state_store=_corrupt_store(tmp_path))
    assert not manager.health_check().healthy

    (tmp_path / "acct-1.json").write_text(json.dumps({"account_id": "acct-1"}), encoding="utf-8")
    assert manager.validate_signal(_signal(), "acct-1", 10_000).allowed
    report = manager.health_check()
    assert report.healthy
    assert report.accounts == 1


def test_summary_risk_level_follows_losses() -> None:
    manager = _manager(policy=SafetyPolicy(max_daily_loss_ratio=0.5, max_consecutive_losses=10))
    assert manager.update_portfolio_value("acct-1", 10_000).risk_level is RiskLevel.LOW

    summary = manager.record_trade_closed("acct-1", pnl=-150, portfolio_value=9_850)
    assert summary.daily_loss_ratio == pytest.approx(0.015)
    assert summary.risk_level is RiskLevel.MEDIUM

    summary = manager.record_trade_closed("acct-1", pnl=-150, portfolio_value=9_700)
    assert summary.risk_level is RiskLevel.HIGH

    summary = manager.record_trade_closed("acct-1", pnl=-250, portfolio_value=9_450)
    assert summary.daily_loss_ratio == pytest.approx(0.055)
    assert summary.risk_level is RiskLevel.CRITICAL
    assert summary.circuit_state is CircuitState.CLOSED
    assert summary.to_dict()["risk_level"] == "CRITICAL"


def test_summary_reports_active_limits() -> None:
    manager = _manager(policy=SafetyPolicy(max_concurrent_trades=2, max_daily_trades=7))
    manager.record_trade_opened("acct-1")
    summary = manager.get_risk_summary("acct-1")
    assert summary.max_concurrent_trades == 2
    assert summary.max_daily_trades == 7
    assert summary.to_dict()["limits"] == {
        "max_concurrent_trades": 2,
        "max_daily_trades": 7,
        "max_drawdown_ratio": 0.10,
        "max_daily_loss_ratio": 0.05,
    }

    manager.update_config(max_concurrent_trades=4)
    assert manager.get_risk_summary("acct-1").max_concurrent_trades == 4


def test_future_signal_blocked_before_validation() -> None:
    validator = _CountingValidator()
    manager = _manager(validator=validator)

    decision = manager.validate_signal(_signal(timestamp=_NOW + timedelta(minutes=1)), "acct-1", 10_000)
    assert not decision.allowed
    assert decision.block_reason is BlockReason.POLICY_VIOLATION
    assert decision.result.errors == (FUTURE_TIMESTAMP,)
    assert decision.result.safety_score == 0
    assert validator.calls == 0

    within_skew = manager.validate_signal(_signal(timestamp=_NOW + timedelta(seconds=3)), "acct-1", 10_000)
    assert within_skew.allowed
    assert validator.calls == 1


def test_clock_skew_is_configurable() -> None:
    manager = _manager(clock_skew=timedelta(minutes=5))
    assert manager.validate_signal(_signal(timestamp=_NOW + timedelta(minutes=1)), "acct-1", 10_000).allowed


def test_purge_does_not_resurrect_account() -> None:
    store = InMemoryStateStore()
    manager = _manager(state_store=store)
    manager.record_trade_opened("acct-1")
    stale = manager._accounts["acct-1"]

    manager.purge_account("acct-1")
    # A mutation that picked up the slot before the purge finishes late.
    with stale.lock:
        stale.state.active_trade_count += 1
        manager._persist_locked(stale)

    assert store.account_ids() == []
    assert manager.account_ids() == []
    manager.reset_daily_metrics()
    assert store.account_ids() == []
