"""Account risk management: exposure counters, circuit breaker and alerts."""

from signal_guard.risk.alerts import AlertBook, derive_threat_level
from signal_guard.risk.manager import AccountRiskManager
from signal_guard.risk.notify import AlertNotifier, LoggingNotifier, WebhookNotifier, build_notifier
from signal_guard.risk.store import AccountRecord, InMemoryStateStore, JsonFileStateStore, StateStore

__all__ = [
    "AccountRecord",
    "AccountRiskManager",
    "AlertBook",
    "AlertNotifier",
    "InMemoryStateStore",
    "JsonFileStateStore",
    "LoggingNotifier",
    "StateStore",
    "WebhookNotifier",
    "build_notifier",
    "derive_threat_level",
]
