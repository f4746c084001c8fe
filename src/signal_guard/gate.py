"""Order submission gate: validation, exposure limits and audit trail."""

from __future__ import annotations

from collections.abc import Mapping
from time import perf_counter
from typing import Any

from pydantic import ValidationError

from signal_guard.config import Settings
from signal_guard.errors import AccountNotFoundError, StateStoreError
from signal_guard.journal.store import JournalEvent, JournalStore
from signal_guard.risk.manager import AccountRiskManager
from signal_guard.schemas import MarketData, SafetyPolicy, TradingSignal
from signal_guard.types import (
    Alert,
    AlertLevel,
    BlockReason,
    RiskDecision,
    RiskSummary,
    SafetyResult,
    TripReason,
)
from signal_guard.utils.logging import get_logger, log_risk_event


class TradeGate:
    """Single entry point an order router and operators go through.

    ``submit`` runs the breaker and the safety validator, then reserves an
    exposure slot; ``settle`` feeds the realized outcome back into the
    account state. Every decision and admin action is journaled.
    """

    def __init__(self, manager: AccountRiskManager, journal: JournalStore | None = None) -> None:
        self._manager = manager
        self._journal = journal
        self._logger = get_logger("signal_guard.gate")

    @classmethod
    def from_settings(cls, settings: Settings) -> "TradeGate":
        settings.ensure_directories()
        return cls(AccountRiskManager.from_settings(settings), JournalStore(settings.journal_dir))

    @property
    def manager(self) -> AccountRiskManager:
        return self._manager

    def close(self) -> None:
        self._manager.close()

    def submit(
        self,
        signal: TradingSignal,
        account_id: str,
        portfolio_value: float,
        market_data: MarketData | None = None,
    ) -> RiskDecision:
        """Decide whether a signal may become an order."""
        started = perf_counter()
        decision = self._manager.validate_signal(signal, account_id, portfolio_value, market_data)

        if decision.allowed:
            blocked = self._manager.reserve_trade(account_id)
            if blocked is not None:
                reason, message = blocked
                log_risk_event(
                    self._logger,
                    event_type=reason.value,
                    action="block_signal",
                    account_id=account_id,
                    message=message,
                )
                decision = RiskDecision(
                    account_id=account_id,
                    allowed=False,
                    result=_with_error(decision.result, message),
                    block_reason=reason,
                )

        payload = {
            "pair": signal.pair,
            "action": signal.action.value,
            "amount": signal.amount,
            "portfolio_value": portfolio_value,
            "elapsed_ms": round((perf_counter() - started) * 1000, 3),
            **decision.to_dict(),
        }
        event = JournalEvent.TRADE_OPENED if decision.allowed else JournalEvent.SIGNAL_BLOCKED
        self._journal_event(event, payload, account_id)
        return decision

    def submit_payload(
        self,
        payload: Mapping[str, Any],
        account_id: str,
        portfolio_value: float,
        market_data: Mapping[str, Any] | None = None,
    ) -> RiskDecision:
        """Like ``submit`` but for raw, unvalidated input."""
        try:
            signal = TradingSignal.model_validate(payload)
            market = MarketData.model_validate(market_data) if market_data is not None else None
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"]) or "signal"
            decision = RiskDecision(
                account_id=account_id,
                allowed=False,
                result=SafetyResult.failed(f"Invalid signal: {location}: {first['msg']}"),
                block_reason=BlockReason.POLICY_VIOLATION,
            )
            self._journal_event(JournalEvent.SIGNAL_BLOCKED, decision.to_dict(), account_id)
            return decision
        return self.submit(signal, account_id, portfolio_value, market)

    def settle(self, account_id: str, pnl: float, portfolio_value: float) -> RiskSummary | None:
        """Report a closed trade.

        Returns None, after journaling an error record, when the account
        state could not be read.
        """
        try:
            was_blocked = self._manager.get_risk_summary(account_id).is_blocked
        except AccountNotFoundError:
            was_blocked = False
        except StateStoreError:
            was_blocked = True
        summary = self._manager.record_trade_closed(account_id, pnl, portfolio_value)
        settlement = {"pnl": pnl, "portfolio_value": portfolio_value}
        if summary is None:
            self._journal_event(
                JournalEvent.ERROR,
                {"operation": "settle", "error": "risk_state_unavailable", **settlement},
                account_id,
            )
            return None

        self._journal_event(JournalEvent.TRADE_SETTLED, settlement, account_id)
        if summary.is_blocked and not was_blocked:
            self._journal_event(
                JournalEvent.BREAKER_TRIPPED,
                {"reason": summary.trip_reason.value if summary.trip_reason else None},
                account_id,
            )
        return summary

    def trip(self, account_id: str, message: str | None = None) -> RiskSummary:
        summary = self._manager.trip_circuit_breaker(account_id, TripReason.MANUAL, message)
        self._journal_event(
            JournalEvent.BREAKER_TRIPPED,
            {"reason": TripReason.MANUAL.value, "message": message},
            account_id,
        )
        return summary

    def reset(self, account_id: str) -> RiskSummary:
        summary = self._manager.reset_circuit_breaker(account_id)
        self._journal_event(JournalEvent.BREAKER_RESET, {}, account_id)
        return summary

    def reset_daily(self, account_id: str | None = None) -> list[str]:
        accounts = self._manager.reset_daily_metrics(account_id)
        self._journal_event(JournalEvent.DAILY_RESET, {"accounts": accounts}, account_id)
        return accounts

    def record_alert(
        self,
        account_id: str,
        level: AlertLevel | str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Alert:
        """Raise an operator alert against an account."""
        alert = self._manager.record_alert(account_id, level, message, data)
        self._journal_event(JournalEvent.ALERT, alert.to_dict(), account_id)
        return alert

    def update_config(self, policy: SafetyPolicy | None = None, **changes: Any) -> SafetyPolicy:
        """Swap the active policy and journal the fields that changed."""
        before = self._manager.policy.model_dump()
        updated = self._manager.update_config(policy, **changes)
        changed = {
            key: {"from": before.get(key), "to": value}
            for key, value in updated.model_dump().items()
            if before.get(key) != value
        }
        self._journal_event(JournalEvent.CONFIG_UPDATE, {"changed": changed})
        return updated

    def _journal_event(
        self,
        event: JournalEvent,
        payload: dict[str, Any],
        account_id: str | None = None,
    ) -> None:
        if self._journal is None:
            return
        try:
            self._journal.append(event, payload, account_id=account_id)
        except OSError as exc:
            self._logger.error("journal_write_failed", event_type=event.value, error=str(exc))


def _with_error(result: SafetyResult, message: str) -> SafetyResult:
    return SafetyResult(
        is_valid=False,
        errors=(*result.errors, message),
        warnings=result.warnings,
        recommendations=result.recommendations,
        safety_score=result.safety_score,
    )
