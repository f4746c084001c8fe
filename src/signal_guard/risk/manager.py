"""Per-account exposure tracking and circuit breaker."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from signal_guard.config import Settings
from signal_guard.errors import AccountNotFoundError, StateStoreError
from signal_guard.risk.alerts import (
    DEFAULT_ALERT_HISTORY,
    DEFAULT_THREAT_WINDOW,
    AlertBook,
    derive_risk_level,
)
from signal_guard.risk.notify import (
    FORWARDED_LEVELS,
    AlertDispatcher,
    AlertNotifier,
    LoggingNotifier,
    build_notifier,
)
from signal_guard.risk.store import AccountRecord, InMemoryStateStore, JsonFileStateStore, StateStore
from signal_guard.safety.policy import PolicyStore
from signal_guard.safety.validator import SafetyValidator
from signal_guard.schemas import MarketData, SafetyPolicy, TradingSignal
from signal_guard.types import (
    AccountRiskState,
    Alert,
    AlertLevel,
    BlockReason,
    CircuitState,
    HealthReport,
    RiskDecision,
    RiskSummary,
    SafetyResult,
    TripReason,
)
from signal_guard.utils.logging import get_logger, log_alert, log_breaker_transition

CIRCUIT_BREAKER_OPEN = "Circuit breaker is open - trading suspended for this account"
RISK_STATE_UNAVAILABLE = "Risk state unavailable - trading suspended"
FUTURE_TIMESTAMP = "Future timestamp not allowed"

DEFAULT_CLOCK_SKEW = timedelta(seconds=5)


class SignalValidator(Protocol):
    """Anything that scores one signal against a policy snapshot."""

    def validate(
        self,
        signal: TradingSignal,
        portfolio_value: float,
        policy: SafetyPolicy,
        market_data: MarketData | None = None,
    ) -> SafetyResult:
        """Return a fresh safety result."""


@dataclass(slots=True)
class _AccountSlot:
    state: AccountRiskState
    alerts: AlertBook
    lock: threading.Lock = field(default_factory=threading.Lock)
    purged: bool = False


class AccountRiskManager:
    """Tracks exposure per account and gates signals behind a circuit breaker.

    Accounts are independent: each one has its own lock and every
    read-modify-write on its state happens under that lock. The breaker is
    binary; it opens on settlement-time triggers or an explicit trip and
    closes only through ``reset_circuit_breaker`` or
    ``reset_daily_metrics``.

    Nothing here waits on the network. Severe alerts are handed to a
    background dispatcher; call ``close`` to drain it on shutdown.
    """

    def __init__(
        self,
        policy_store: PolicyStore | None = None,
        *,
        validator: SignalValidator | None = None,
        state_store: StateStore | None = None,
        notifier: AlertNotifier | None = None,
        alert_history_limit: int = DEFAULT_ALERT_HISTORY,
        threat_window: timedelta = DEFAULT_THREAT_WINDOW,
        clock_skew: timedelta = DEFAULT_CLOCK_SKEW,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._policy_store = policy_store or PolicyStore()
        self._validator = validator or SafetyValidator()
        self._state_store = state_store or InMemoryStateStore()
        self._dispatcher = AlertDispatcher(notifier or LoggingNotifier())
        self._alert_history_limit = alert_history_limit
        self._threat_window = threat_window
        self._clock_skew = clock_skew
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._accounts: dict[str, _AccountSlot] = {}
        self._unavailable: dict[str, str] = {}
        self._registry_lock = threading.Lock()
        self._logger = get_logger("signal_guard.risk.manager")

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccountRiskManager":
        return cls(
            PolicyStore(settings.safety_policy()),
            state_store=JsonFileStateStore(settings.state_dir),
            notifier=build_notifier(settings),
            alert_history_limit=settings.alert_history_limit,
            threat_window=settings.threat_window,
            clock_skew=settings.signal_clock_skew,
        )

    @property
    def policy(self) -> SafetyPolicy:
        return self._policy_store.snapshot()

    def flush_alerts(self, timeout: float | None = None) -> bool:
        """Wait until forwarded alerts have been delivered (or failed)."""
        return self._dispatcher.flush(timeout)

    def close(self) -> None:
        self._dispatcher.close()

    # ------------------------------------------------------------------ reads

    def get_risk_summary(self, account_id: str) -> RiskSummary:
        """Consistent snapshot of one account.

        Raises:
            AccountNotFoundError: the account was never referenced.
            StateStoreError: the stored state could not be read.
        """
        slot = self._slot(account_id, create=False)
        if slot is None:
            raise AccountNotFoundError(account_id)
        with slot.lock:
            return self._summary_locked(slot)

    def account_ids(self) -> list[str]:
        with self._registry_lock:
            known = set(self._accounts) | set(self._unavailable)
        try:
            known.update(self._state_store.account_ids())
        except (StateStoreError, OSError) as exc:
            self._logger.error("state_store_list_failed", error=str(exc))
        return sorted(known)

    def validate_signal(
        self,
        signal: TradingSignal,
        account_id: str,
        portfolio_value: float,
        market_data: MarketData | None = None,
    ) -> RiskDecision:
        """Gate one signal: breaker first, then the safety validator.

        An open breaker short-circuits without running any check, as does
        a signal dated in the future. If the breaker state cannot be read
        the signal is blocked.
        """
        try:
            slot = self._slot(account_id, create=True)
            with slot.lock:
                circuit_state = slot.state.circuit_state
        except Exception as exc:  # noqa: BLE001 - fail closed when state is unknown.
            self._logger.exception(
                "risk_state_unavailable",
                account_id=account_id,
                error=str(exc),
            )
            return _blocked(account_id, RISK_STATE_UNAVAILABLE, BlockReason.RISK_STATE_UNAVAILABLE)

        if circuit_state is CircuitState.OPEN:
            self._logger.warning("signal_blocked_by_breaker", account_id=account_id, pair=signal.pair)
            return _blocked(account_id, CIRCUIT_BREAKER_OPEN, BlockReason.CIRCUIT_BREAKER_OPEN)

        now = self._clock()
        if signal.timestamp > now + self._clock_skew:
            self._logger.warning(
                "signal_from_future",
                account_id=account_id,
                pair=signal.pair,
                signal_timestamp=signal.timestamp.isoformat(),
                now=now.isoformat(),
            )
            return _blocked(account_id, FUTURE_TIMESTAMP, BlockReason.POLICY_VIOLATION)

        result = self._validator.validate(
            signal,
            portfolio_value,
            self._policy_store.snapshot(),
            market_data,
        )
        return RiskDecision(
            account_id=account_id,
            allowed=result.is_valid,
            result=result,
            block_reason=None if result.is_valid else BlockReason.POLICY_VIOLATION,
        )

    # ------------------------------------------------------- settlement hooks
    #
    # These are called from the order path. A state store fault is logged,
    # recorded for ``health_check`` and answered with None instead of an
    # exception; new signals for that account are already blocked by
    # ``validate_signal``.

    def record_trade_opened(self, account_id: str) -> RiskSummary | None:
        """Count a newly opened trade against the account's exposure."""
        slot = self._settlement_slot(account_id, "record_trade_opened")
        if slot is None:
            return None
        with slot.lock:
            slot.state.active_trade_count += 1
            slot.state.daily_trade_count += 1
            self._persist_locked(slot)
            return self._summary_locked(slot)

    def reserve_trade(self, account_id: str) -> tuple[BlockReason, str] | None:
        """Count a trade as opened only if exposure limits allow it.

        The limit check and the counter update happen under one lock hold.

        Returns:
            None when the trade was recorded, otherwise the block reason
            and a message.
        """
        slot = self._settlement_slot(account_id, "reserve_trade")
        if slot is None:
            return BlockReason.RISK_STATE_UNAVAILABLE, RISK_STATE_UNAVAILABLE
        policy = self._policy_store.snapshot()
        with slot.lock:
            state = slot.state
            if state.circuit_state is CircuitState.OPEN:
                return BlockReason.CIRCUIT_BREAKER_OPEN, CIRCUIT_BREAKER_OPEN
            if state.active_trade_count >= policy.max_concurrent_trades:
                return (
                    BlockReason.EXPOSURE_LIMIT,
                    f"Too many concurrent trades: {state.active_trade_count} "
                    f"(max: {policy.max_concurrent_trades})",
                )
            if state.daily_trade_count >= policy.max_daily_trades:
                return (
                    BlockReason.EXPOSURE_LIMIT,
                    f"Daily trade limit reached: {state.daily_trade_count} "
                    f"(max: {policy.max_daily_trades})",
                )
            state.active_trade_count += 1
            state.daily_trade_count += 1
            self._persist_locked(slot)
        return None

    def record_trade_closed(
        self,
        account_id: str,
        pnl: float,
        portfolio_value: float,
    ) -> RiskSummary | None:
        """Settle a closed trade and evaluate the breaker triggers.

        Args:
            account_id: Account the trade belongs to.
            pnl: Realized profit (negative for a loss) in quote currency.
            portfolio_value: Account value after settlement.

        Returns:
            The updated summary, or None when the account state is
            unavailable.
        """
        if portfolio_value < 0:
            raise ValueError("portfolio_value_must_not_be_negative")
        slot = self._settlement_slot(account_id, "record_trade_closed", pnl=pnl)
        if slot is None:
            return None
        with slot.lock:
            state = slot.state
            state.active_trade_count = max(0, state.active_trade_count - 1)
            if pnl < 0:
                state.daily_loss_amount += -pnl
                state.consecutive_losses += 1
            else:
                state.consecutive_losses = 0
            _observe_value(state, portfolio_value, pnl)
            trip_alert = self._evaluate_breaker_locked(slot)
            self._persist_locked(slot)
            summary = self._summary_locked(slot)
        if trip_alert is not None:
            self._forward(account_id, trip_alert)
        return summary

    def update_portfolio_value(self, account_id: str, portfolio_value: float) -> RiskSummary | None:
        """Mark-to-market update; may trip the drawdown trigger."""
        if portfolio_value < 0:
            raise ValueError("portfolio_value_must_not_be_negative")
        slot = self._settlement_slot(account_id, "update_portfolio_value")
        if slot is None:
            return None
        with slot.lock:
            _observe_value(slot.state, portfolio_value, 0.0)
            trip_alert = self._evaluate_breaker_locked(slot)
            self._persist_locked(slot)
            summary = self._summary_locked(slot)
        if trip_alert is not None:
            self._forward(account_id, trip_alert)
        return summary

    def trip_circuit_breaker(
        self,
        account_id: str,
        reason: TripReason = TripReason.MANUAL,
        message: str | None = None,
    ) -> RiskSummary:
        """Open the breaker explicitly.

        A manual trip on an already open breaker re-labels it as manual so
        the daily rollover will not close it.
        """
        slot = self._slot(account_id, create=True)
        trip_alert: Alert | None = None
        with slot.lock:
            state = slot.state
            if state.circuit_state is CircuitState.CLOSED:
                trip_alert = self._open_locked(slot, reason, message or f"Circuit breaker triggered: {reason.value}")
            elif reason is TripReason.MANUAL and state.trip_reason is not TripReason.MANUAL:
                state.trip_reason = TripReason.MANUAL
                self._persist_locked(slot)
            summary = self._summary_locked(slot)
        if trip_alert is not None:
            self._forward(account_id, trip_alert)
        return summary

    # ----------------------------------------------------------------- alerts

    def record_alert(
        self,
        account_id: str,
        level: AlertLevel | str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Alert:
        """Append an alert; HIGH and CRITICAL alerts are also forwarded."""
        resolved = AlertLevel(level.upper()) if isinstance(level, str) else level
        if not message:
            raise ValueError("alert_message_required")
        slot = self._slot(account_id, create=True)
        with slot.lock:
            alert = self._append_alert_locked(slot, resolved, message, data or {})
            self._persist_locked(slot)
        self._forward(account_id, alert)
        return alert

    # ------------------------------------------------------------------ admin

    def update_config(self, policy: SafetyPolicy | None = None, **changes: Any) -> SafetyPolicy:
        """Swap the active policy; in-flight validations keep their snapshot."""
        if policy is not None and changes:
            raise ValueError("pass_either_policy_or_changes")
        if policy is not None:
            return self._policy_store.replace(policy)
        return self._policy_store.update(**changes)

    def reset_daily_metrics(self, account_id: str | None = None) -> list[str]:
        """Daily rollover for one account, or every known account.

        Closes breakers tripped by loss, loss streak or drawdown; a manual
        trip survives the rollover. In the all-accounts form, accounts whose
        state cannot be read are skipped and stay visible to
        ``health_check``.

        Returns:
            Ids of the accounts that were reset.
        """
        targets = [account_id] if account_id is not None else self.account_ids()

        reset: list[str] = []
        for target in targets:
            if account_id is None:
                slot = self._settlement_slot(target, "reset_daily_metrics")
            else:
                slot = self._slot(target, create=False)
                if slot is None:
                    raise AccountNotFoundError(account_id)
            if slot is None:
                continue
            with slot.lock:
                if slot.purged:
                    continue
                state = slot.state
                state.daily_trade_count = 0
                state.daily_loss_amount = 0.0
                state.consecutive_losses = 0
                state.day_start_portfolio_value = state.portfolio_value
                if state.circuit_state is CircuitState.OPEN and state.trip_reason is not TripReason.MANUAL:
                    self._close_locked(slot, "daily_reset")
                self._persist_locked(slot)
            reset.append(target)
        self._logger.info("daily_metrics_reset", accounts=len(reset))
        return reset

    def reset_circuit_breaker(self, account_id: str) -> RiskSummary:
        """Unconditionally close the breaker. Idempotent."""
        slot = self._slot(account_id, create=False)
        if slot is None:
            raise AccountNotFoundError(account_id)
        with slot.lock:
            if slot.state.circuit_state is CircuitState.OPEN:
                self._close_locked(slot, "administrative_reset")
                self._persist_locked(slot)
            return self._summary_locked(slot)

    def purge_account(self, account_id: str) -> None:
        """Forget an account in memory and in the state store.

        Mutations still holding the old slot finish in memory only.
        """
        with self._registry_lock:
            slot = self._accounts.pop(account_id, None)
            self._unavailable.pop(account_id, None)
            if slot is not None:
                with slot.lock:
                    slot.purged = True
            self._state_store.delete(account_id)
        self._logger.info("account_purged", account_id=account_id)

    def health_check(self) -> HealthReport:
        """Check bookkeeping invariants of every known account; never raises."""
        now = self._clock()
        try:
            for account_id in self.account_ids():
                try:
                    self._slot(account_id, create=False)
                except StateStoreError:
                    # Recorded in _unavailable by _slot.
                    continue
            with self._registry_lock:
                slots = list(self._accounts.values())
                unavailable = dict(self._unavailable)
            issues = [f"{account_id}: state unavailable ({error})" for account_id, error in sorted(unavailable.items())]
            open_breakers = 0
            for slot in slots:
                with slot.lock:
                    issues.extend(_state_issues(slot))
                    if slot.state.circuit_state is CircuitState.OPEN:
                        open_breakers += 1
            if not isinstance(self._policy_store.snapshot(), SafetyPolicy):
                issues.append("policy_snapshot_invalid")
        except Exception as exc:  # noqa: BLE001 - report instead of raising.
            self._logger.exception("health_check_failed", error=str(exc))
            return HealthReport(status="unhealthy", checked_at=now, issues=(str(exc),))

        status = "healthy" if not issues else "unhealthy"
        if issues:
            self._logger.error("health_check_inconsistent", issues=issues)
        return HealthReport(
            status=status,
            checked_at=now,
            accounts=len(slots) + len(unavailable),
            open_breakers=open_breakers,
            issues=tuple(issues),
        )

    # --------------------------------------------------------------- internals

    def _slot(self, account_id: str, *, create: bool) -> _AccountSlot | None:
        if not account_id:
            raise ValueError("account_id_required")
        with self._registry_lock:
            slot = self._accounts.get(account_id)
            if slot is not None:
                return slot
            try:
                record = self._state_store.load(account_id)
            except StateStoreError as exc:
                self._unavailable[account_id] = str(exc)
                self._logger.error("account_state_load_failed", account_id=account_id, error=str(exc))
                raise
            self._unavailable.pop(account_id, None)
            if record is None:
                if not create:
                    return None
                record = AccountRecord(state=AccountRiskState(account_id=account_id))
            alerts = AlertBook(self._alert_history_limit)
            for alert in record.alerts:
                alerts.append(alert)
            slot = _AccountSlot(state=record.state, alerts=alerts)
            self._accounts[account_id] = slot
            return slot

    def _settlement_slot(self, account_id: str, operation: str, **context: Any) -> _AccountSlot | None:
        try:
            return self._slot(account_id, create=True)
        except StateStoreError as exc:
            self._logger.error(
                "settlement_dropped",
                operation=operation,
                account_id=account_id,
                error=str(exc),
                **context,
            )
            return None

    def _summary_locked(self, slot: _AccountSlot) -> RiskSummary:
        state = slot.state
        policy = self._policy_store.snapshot()
        reference = state.day_start_portfolio_value or state.portfolio_value
        daily_loss_ratio = state.daily_loss_amount / reference if reference > 0 else 0.0
        return RiskSummary(
            account_id=state.account_id,
            active_trade_count=state.active_trade_count,
            daily_trade_count=state.daily_trade_count,
            daily_loss_amount=state.daily_loss_amount,
            consecutive_losses=state.consecutive_losses,
            current_drawdown_ratio=state.current_drawdown_ratio,
            portfolio_value=state.portfolio_value,
            daily_loss_ratio=daily_loss_ratio,
            risk_level=derive_risk_level(state.current_drawdown_ratio, daily_loss_ratio),
            circuit_state=state.circuit_state,
            trip_reason=state.trip_reason,
            threat_level=slot.alerts.threat_level(self._clock(), self._threat_window),
            alerts=slot.alerts.newest_first(),
            max_concurrent_trades=policy.max_concurrent_trades,
            max_daily_trades=policy.max_daily_trades,
            max_drawdown_ratio=policy.max_drawdown_ratio,
            max_daily_loss_ratio=policy.max_daily_loss_ratio,
        )

    def _evaluate_breaker_locked(self, slot: _AccountSlot) -> Alert | None:
        state = slot.state
        if state.circuit_state is CircuitState.OPEN:
            return None
        policy = self._policy_store.snapshot()

        reference = state.day_start_portfolio_value or state.portfolio_value
        if reference > 0 and state.daily_loss_amount > policy.max_daily_loss_ratio * reference:
            return self._open_locked(
                slot,
                TripReason.DAILY_LOSS,
                f"Daily loss limit exceeded: {state.daily_loss_amount / reference * 100:.1f}%",
            )
        if state.consecutive_losses >= policy.max_consecutive_losses:
            return self._open_locked(
                slot,
                TripReason.CONSECUTIVE_LOSSES,
                f"Consecutive losing trades: {state.consecutive_losses}",
            )
        if state.current_drawdown_ratio > policy.max_drawdown_ratio:
            return self._open_locked(
                slot,
                TripReason.DRAWDOWN,
                f"Maximum drawdown exceeded: {state.current_drawdown_ratio * 100:.1f}%",
            )
        return None

    def _open_locked(self, slot: _AccountSlot, reason: TripReason, message: str) -> Alert:
        state = slot.state
        state.circuit_state = CircuitState.OPEN
        state.trip_reason = reason
        state.tripped_at = self._clock()
        log_breaker_transition(
            self._logger,
            account_id=state.account_id,
            opened=True,
            reason=reason.value,
            daily_loss_amount=state.daily_loss_amount,
            consecutive_losses=state.consecutive_losses,
            drawdown_ratio=state.current_drawdown_ratio,
        )
        alert = self._append_alert_locked(
            slot,
            AlertLevel.CRITICAL,
            message,
            {"reason": reason.value},
        )
        self._persist_locked(slot)
        return alert

    def _close_locked(self, slot: _AccountSlot, origin: str) -> None:
        state = slot.state
        previous = state.trip_reason
        state.circuit_state = CircuitState.CLOSED
        state.trip_reason = None
        state.tripped_at = None
        log_breaker_transition(
            self._logger,
            account_id=state.account_id,
            opened=False,
            reason=origin,
            previous_reason=previous.value if previous else None,
        )
        self._append_alert_locked(slot, AlertLevel.LOW, "Circuit breaker reset", {"origin": origin})

    def _append_alert_locked(
        self,
        slot: _AccountSlot,
        level: AlertLevel,
        message: str,
        data: dict[str, Any],
    ) -> Alert:
        alert = Alert(level=level, message=message, timestamp=self._clock(), data=dict(data))
        slot.alerts.append(alert)
        log_alert(
            self._logger,
            account_id=slot.state.account_id,
            level=level.value,
            message=message,
        )
        return alert

    def _persist_locked(self, slot: _AccountSlot) -> None:
        if slot.purged:
            return
        record = AccountRecord(state=slot.state, alerts=list(reversed(slot.alerts.newest_first())))
        try:
            self._state_store.save(record)
        except (StateStoreError, OSError) as exc:
            self._logger.error(
                "account_state_save_failed",
                account_id=slot.state.account_id,
                error=str(exc),
            )

    def _forward(self, account_id: str, alert: Alert) -> None:
        if alert.level in FORWARDED_LEVELS:
            self._dispatcher.submit(account_id, alert)


def _blocked(account_id: str, message: str, reason: BlockReason) -> RiskDecision:
    return RiskDecision(
        account_id=account_id,
        allowed=False,
        result=SafetyResult.failed(message),
        block_reason=reason,
    )


def _observe_value(state: AccountRiskState, portfolio_value: float, pnl: float) -> None:
    if state.day_start_portfolio_value <= 0:
        state.day_start_portfolio_value = portfolio_value - pnl if portfolio_value - pnl > 0 else portfolio_value
    state.portfolio_value = portfolio_value
    state.peak_portfolio_value = max(state.peak_portfolio_value, portfolio_value, state.day_start_portfolio_value)
    peak = state.peak_portfolio_value
    state.current_drawdown_ratio = (peak - portfolio_value) / peak if peak > 0 else 0.0


def _state_issues(slot: _AccountSlot) -> list[str]:
    state = slot.state
    issues: list[str] = []
    prefix = state.account_id
    if state.active_trade_count < 0:
        issues.append(f"{prefix}: negative active_trade_count")
    if state.daily_trade_count < 0:
        issues.append(f"{prefix}: negative daily_trade_count")
    if state.daily_loss_amount < 0:
        issues.append(f"{prefix}: negative daily_loss_amount")
    if not 0.0 <= state.current_drawdown_ratio <= 1.0:
        issues.append(f"{prefix}: drawdown_ratio out of range")
    if state.circuit_state is CircuitState.OPEN and state.trip_reason is None:
        issues.append(f"{prefix}: open breaker without trip reason")
    if state.circuit_state is CircuitState.CLOSED and state.trip_reason is not None:
        issues.append(f"{prefix}: closed breaker with trip reason")
    if len(slot.alerts) > slot.alerts.limit:
        issues.append(f"{prefix}: alert history over limit")
    return issues
