"""Append-only audit trail of guardrail decisions and admin actions."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from enum import Enum
from itertools import islice
from pathlib import Path
from typing import Any

from signal_guard.utils.logging import get_logger


class JournalEvent(str, Enum):
    """Kinds of audit records."""

    SIGNAL_BLOCKED = "signal_blocked"
    TRADE_OPENED = "trade_opened"
    TRADE_SETTLED = "trade_settled"
    BREAKER_TRIPPED = "breaker_tripped"
    BREAKER_RESET = "breaker_reset"
    DAILY_RESET = "daily_reset"
    ALERT = "alert"
    CONFIG_UPDATE = "config_update"
    ERROR = "error"


class JournalStore:
    """JSONL audit journal, one file per UTC day.

    Each line is ``{"timestamp", "event_type", "account_id", "payload"}``.
    Writers serialize on a lock so concurrent gates never interleave lines.
    """

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._logger = get_logger("signal_guard.journal")

    def append(
        self,
        event: JournalEvent | str,
        payload: dict[str, Any],
        *,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        """Write one record and return it.

        Raises:
            ValueError: unknown event type.
        """
        try:
            kind = JournalEvent(event)
        except ValueError:
            raise ValueError(f"unsupported_event_type: {event}") from None
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": kind.value,
            "account_id": account_id,
            "payload": payload,
        }
        line = json.dumps(record, ensure_ascii=True, default=str)
        path = self._journal_dir / f"{now.date().isoformat()}.jsonl"
        with self._lock, path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
        return record

    def iter_events(
        self,
        *,
        event_type: JournalEvent | str | None = None,
        account_id: str | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield matching records, newest first."""
        wanted = JournalEvent(event_type).value if event_type is not None else None
        for file in sorted(self._journal_dir.glob("*.jsonl"), reverse=True):
            for number, line in reversed(list(enumerate(file.read_text(encoding="utf-8").splitlines(), 1))):
                if not line.strip():
                    continue
                try:
                    row = json.loads(line)
                except json.JSONDecodeError:
                    self._logger.warning("journal_line_unreadable", file=file.name, line=number)
                    continue
                if wanted is not None and row.get("event_type") != wanted:
                    continue
                if account_id is not None and row.get("account_id") != account_id:
                    continue
                yield row

    def load_recent(
        self,
        limit: int,
        *,
        event_type: JournalEvent | str | None = None,
        account_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Most recent matching records, oldest first."""
        if limit <= 0:
            return []
        rows = list(islice(self.iter_events(event_type=event_type, account_id=account_id), limit))
        rows.reverse()
        return rows
