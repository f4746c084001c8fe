from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from signal_guard.errors import StateStoreError
from signal_guard.risk.manager import AccountRiskManager
from signal_guard.risk.store import AccountRecord, JsonFileStateStore
from signal_guard.safety.policy import PolicyStore
from signal_guard.types import AccountRiskState, Alert, AlertLevel, CircuitState, TripReason

_NOW = datetime(2024, 1, 10, 12, 0, tzinfo=UTC)


def test_json_store_round_trip(tmp_path: Path) -> None:
    store = JsonFileStateStore(tmp_path)
    state = AccountRiskState(
        account_id="desk/alpha",
        active_trade_count=2,
        daily_loss_amount=120.5,
        circuit_state=CircuitState.OPEN,
        trip_reason=TripReason.DRAWDOWN,
        tripped_at=_NOW,
    )
    alert = Alert(level=AlertLevel.CRITICAL, message="dd", timestamp=_NOW)
    store.save(AccountRecord(state=state, alerts=[alert]))

    loaded = store.load("desk/alpha")
    assert loaded is not None
    assert loaded.state == state
    assert loaded.alerts == [alert]
    assert store.account_ids() == ["desk/alpha"]
    assert (tmp_path / "desk_alpha.json").exists()


def test_json_store_missing_and_delete(tmp_path: Path) -> None:
    store = JsonFileStateStore(tmp_path)
    assert store.load("nobody") is None
    store.save(AccountRecord(state=AccountRiskState(account_id="a")))
    store.delete("a")
    store.delete("a")
    assert store.account_ids() == []


def test_corrupt_file_raises_store_error(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    store = JsonFileStateStore(tmp_path)
    with pytest.raises(StateStoreError):
        store.load("broken")
    assert store.account_ids() == []


def test_manager_rehydrates_from_disk(tmp_path: Path) -> None:
    first = AccountRiskManager(PolicyStore(), state_store=JsonFileStateStore(tmp_path), clock=lambda: _NOW)
    first.record_trade_closed("acct-1", pnl=-600, portfolio_value=9_400)

    second = AccountRiskManager(PolicyStore(), state_store=JsonFileStateStore(tmp_path), clock=lambda: _NOW)
    assert second.account_ids() == ["acct-1"]
    summary = second.get_risk_summary("acct-1")
    assert summary.is_blocked
    assert summary.trip_reason is TripReason.DAILY_LOSS
    assert summary.daily_loss_amount == 600
