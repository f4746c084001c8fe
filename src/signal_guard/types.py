"""Shared domain types for the signal guardrail engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SignalAction(str, Enum):
    """Trade direction."""

    BUY = "BUY"
    SELL = "SELL"


class AlertLevel(str, Enum):
    """Alert severity, also used as the derived account threat level."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    AlertLevel.LOW: 0,
    AlertLevel.MEDIUM: 1,
    AlertLevel.HIGH: 2,
    AlertLevel.CRITICAL: 3,
}

ThreatLevel = AlertLevel
RiskLevel = AlertLevel


class CircuitState(str, Enum):
    """Per-account circuit breaker state."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"


class TripReason(str, Enum):
    """Why a circuit breaker was opened."""

    DAILY_LOSS = "DAILY_LOSS"
    CONSECUTIVE_LOSSES = "CONSECUTIVE_LOSSES"
    DRAWDOWN = "DRAWDOWN"
    MANUAL = "MANUAL"


class BlockReason(str, Enum):
    """Why a signal was not allowed through."""

    POLICY_VIOLATION = "POLICY_VIOLATION"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    RISK_STATE_UNAVAILABLE = "RISK_STATE_UNAVAILABLE"
    EXPOSURE_LIMIT = "EXPOSURE_LIMIT"


@dataclass(frozen=True, slots=True)
class SafetyResult:
    """Outcome of one safety validation run."""

    is_valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    safety_score: int = 100

    @classmethod
    def failed(cls, reason: str) -> "SafetyResult":
        """Zero-score invalid result carrying a single error."""
        return cls(is_valid=False, errors=(reason,), safety_score=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
            "safety_score": self.safety_score,
        }


@dataclass(frozen=True, slots=True)
class Alert:
    """One risk alert raised against an account."""

    level: AlertLevel
    message: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Alert":
        return cls(
            level=AlertLevel(raw["level"]),
            message=str(raw["message"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            data=dict(raw.get("data") or {}),
        )


@dataclass(slots=True)
class AccountRiskState:
    """Mutable exposure and breaker bookkeeping for one account.

    Only the risk manager mutates instances, always under the account lock.
    """

    account_id: str
    active_trade_count: int = 0
    daily_trade_count: int = 0
    daily_loss_amount: float = 0.0
    consecutive_losses: int = 0
    current_drawdown_ratio: float = 0.0
    portfolio_value: float = 0.0
    peak_portfolio_value: float = 0.0
    day_start_portfolio_value: float = 0.0
    circuit_state: CircuitState = CircuitState.CLOSED
    trip_reason: TripReason | None = None
    tripped_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class RiskSummary:
    """Read-only snapshot of an account's risk state."""

    account_id: str
    active_trade_count: int
    daily_trade_count: int
    daily_loss_amount: float
    consecutive_losses: int
    current_drawdown_ratio: float
    portfolio_value: float
    daily_loss_ratio: float
    risk_level: RiskLevel
    circuit_state: CircuitState
    trip_reason: TripReason | None
    threat_level: ThreatLevel
    alerts: tuple[Alert, ...]
    max_concurrent_trades: int
    max_daily_trades: int
    max_drawdown_ratio: float
    max_daily_loss_ratio: float

    @property
    def is_blocked(self) -> bool:
        return self.circuit_state is CircuitState.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "active_trade_count": self.active_trade_count,
            "daily_trade_count": self.daily_trade_count,
            "daily_loss_amount": self.daily_loss_amount,
            "consecutive_losses": self.consecutive_losses,
            "current_drawdown_ratio": self.current_drawdown_ratio,
            "portfolio_value": self.portfolio_value,
            "daily_loss_ratio": self.daily_loss_ratio,
            "risk_level": self.risk_level.value,
            "circuit_state": self.circuit_state.value,
            "trip_reason": self.trip_reason.value if self.trip_reason else None,
            "threat_level": self.threat_level.value,
            "alerts": [alert.to_dict() for alert in self.alerts],
            "limits": {
                "max_concurrent_trades": self.max_concurrent_trades,
                "max_daily_trades": self.max_daily_trades,
                "max_drawdown_ratio": self.max_drawdown_ratio,
                "max_daily_loss_ratio": self.max_daily_loss_ratio,
            },
        }


@dataclass(frozen=True, slots=True)
class RiskDecision:
    """Combined verdict of the circuit breaker and the safety validator."""

    account_id: str
    allowed: bool
    result: SafetyResult
    block_reason: BlockReason | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "allowed": self.allowed,
            "block_reason": self.block_reason.value if self.block_reason else None,
            **self.result.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Bookkeeping consistency report."""

    status: str
    checked_at: datetime
    accounts: int = 0
    open_breakers: int = 0
    issues: tuple[str, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checked_at": self.checked_at.isoformat(),
            "accounts": self.accounts,
            "open_breakers": self.open_breakers,
            "issues": list(self.issues),
        }
