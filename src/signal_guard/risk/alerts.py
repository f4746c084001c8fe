"""Per-account alert history and threat level derivation."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from datetime import datetime, timedelta

from signal_guard.types import Alert, AlertLevel, RiskLevel, ThreatLevel

DEFAULT_ALERT_HISTORY = 200
DEFAULT_THREAT_WINDOW = timedelta(hours=1)
_LOW_ALERT_BURST = 5


def derive_threat_level(
    alerts: Iterable[Alert],
    now: datetime,
    window: timedelta = DEFAULT_THREAT_WINDOW,
) -> ThreatLevel:
    """Classify account severity from alerts raised within ``window``."""
    cutoff = now - window
    highest = AlertLevel.LOW
    low_count = 0
    for alert in alerts:
        if alert.timestamp < cutoff:
            continue
        if alert.level is AlertLevel.LOW:
            low_count += 1
        if alert.level.rank > highest.rank:
            highest = alert.level

    if highest is AlertLevel.LOW and low_count > _LOW_ALERT_BURST:
        return AlertLevel.MEDIUM
    return highest


class AlertBook:
    """Bounded alert history; the oldest alert is evicted when full.

    Not thread-safe on its own, the owner serializes access.
    """

    def __init__(self, limit: int = DEFAULT_ALERT_HISTORY) -> None:
        if limit <= 0:
            raise ValueError("alert_limit_must_be_positive")
        self._alerts: deque[Alert] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._alerts)

    @property
    def limit(self) -> int:
        return self._alerts.maxlen or 0

    def append(self, alert: Alert) -> None:
        self._alerts.append(alert)

    def newest_first(self) -> tuple[Alert, ...]:
        return tuple(reversed(self._alerts))

    def threat_level(self, now: datetime, window: timedelta = DEFAULT_THREAT_WINDOW) -> ThreatLevel:
        return derive_threat_level(self._alerts, now, window)


def derive_risk_level(drawdown_ratio: float, daily_loss_ratio: float) -> RiskLevel:
    """Classify exposure from current drawdown and today's loss ratio."""
    if drawdown_ratio > 0.08 or daily_loss_ratio > 0.04:
        return AlertLevel.CRITICAL
    if drawdown_ratio > 0.05 or daily_loss_ratio > 0.02:
        return AlertLevel.HIGH
    if drawdown_ratio > 0.02 or daily_loss_ratio > 0.01:
        return AlertLevel.MEDIUM
    return AlertLevel.LOW
