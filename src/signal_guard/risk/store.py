"""Persistence hooks for account risk state."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from signal_guard.errors import StateStoreError
from signal_guard.types import AccountRiskState, Alert, CircuitState, TripReason

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(slots=True)
class AccountRecord:
    """Durable form of an account: counters, breaker and alert history."""

    state: AccountRiskState
    alerts: list[Alert] = field(default_factory=list)


class StateStore(Protocol):
    """Storage backend used to rehydrate accounts lazily."""

    def load(self, account_id: str) -> AccountRecord | None:
        """Return the stored record or None for an unknown account."""

    def save(self, record: AccountRecord) -> None:
        """Persist one account record."""

    def delete(self, account_id: str) -> None:
        """Remove an account record if present."""

    def account_ids(self) -> list[str]:
        """List stored account ids."""


class InMemoryStateStore:
    """Process-local store, mainly for tests and single-process use."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load(self, account_id: str) -> AccountRecord | None:
        with self._lock:
            raw = self._records.get(account_id)
        return record_from_dict(raw) if raw is not None else None

    def save(self, record: AccountRecord) -> None:
        payload = record_to_dict(record)
        with self._lock:
            self._records[record.state.account_id] = payload

    def delete(self, account_id: str) -> None:
        with self._lock:
            self._records.pop(account_id, None)

    def account_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._records)


class JsonFileStateStore:
    """One JSON document per account under ``state_dir``."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._state_dir.mkdir(parents=True, exist_ok=True)

    def load(self, account_id: str) -> AccountRecord | None:
        path = self._path_for(account_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return record_from_dict(raw)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StateStoreError(f"corrupt_account_state: {account_id}: {exc}") from exc

    def save(self, record: AccountRecord) -> None:
        path = self._path_for(record.state.account_id)
        serialized = json.dumps(record_to_dict(record), ensure_ascii=True, indent=2)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(serialized, encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            raise StateStoreError(f"account_state_write_failed: {exc}") from exc

    def delete(self, account_id: str) -> None:
        self._path_for(account_id).unlink(missing_ok=True)

    def account_ids(self) -> list[str]:
        ids: list[str] = []
        for file in sorted(self._state_dir.glob("*.json")):
            try:
                raw = json.loads(file.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            account_id = raw.get("account_id") if isinstance(raw, dict) else None
            if isinstance(account_id, str):
                ids.append(account_id)
        return ids

    def _path_for(self, account_id: str) -> Path:
        return self._state_dir / f"{_SAFE_ID.sub('_', account_id)}.json"


def record_to_dict(record: AccountRecord) -> dict[str, Any]:
    state = record.state
    return {
        "account_id": state.account_id,
        "active_trade_count": state.active_trade_count,
        "daily_trade_count": state.daily_trade_count,
        "daily_loss_amount": state.daily_loss_amount,
        "consecutive_losses": state.consecutive_losses,
        "current_drawdown_ratio": state.current_drawdown_ratio,
        "portfolio_value": state.portfolio_value,
        "peak_portfolio_value": state.peak_portfolio_value,
        "day_start_portfolio_value": state.day_start_portfolio_value,
        "circuit_state": state.circuit_state.value,
        "trip_reason": state.trip_reason.value if state.trip_reason else None,
        "tripped_at": state.tripped_at.isoformat() if state.tripped_at else None,
        "alerts": [alert.to_dict() for alert in record.alerts],
    }


def record_from_dict(raw: dict[str, Any]) -> AccountRecord:
    trip_reason = raw.get("trip_reason")
    tripped_at = raw.get("tripped_at")
    state = AccountRiskState(
        account_id=str(raw["account_id"]),
        active_trade_count=int(raw.get("active_trade_count", 0)),
        daily_trade_count=int(raw.get("daily_trade_count", 0)),
        daily_loss_amount=float(raw.get("daily_loss_amount", 0.0)),
        consecutive_losses=int(raw.get("consecutive_losses", 0)),
        current_drawdown_ratio=float(raw.get("current_drawdown_ratio", 0.0)),
        portfolio_value=float(raw.get("portfolio_value", 0.0)),
        peak_portfolio_value=float(raw.get("peak_portfolio_value", 0.0)),
        day_start_portfolio_value=float(raw.get("day_start_portfolio_value", 0.0)),
        circuit_state=CircuitState(raw.get("circuit_state", CircuitState.CLOSED.value)),
        trip_reason=TripReason(trip_reason) if trip_reason else None,
        tripped_at=datetime.fromisoformat(tripped_at) if tripped_at else None,
    )
    alerts = [Alert.from_dict(item) for item in raw.get("alerts") or []]
    return AccountRecord(state=state, alerts=alerts)
