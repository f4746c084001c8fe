"""Safety policy presets and the atomically swapped policy snapshot."""

from __future__ import annotations

import threading
from typing import Any

from signal_guard.config import RiskProfile
from signal_guard.schemas import SafetyPolicy
from signal_guard.utils.logging import get_logger


_PROFILE_PRESETS: dict[RiskProfile, dict[str, Any]] = {
    RiskProfile.DEVELOPMENT: {
        "max_position_size_ratio": 0.8,
        "max_daily_loss_ratio": 0.10,
        "max_drawdown_ratio": 0.15,
        "min_confidence_threshold": 60,
        "max_leverage": 20,
        "max_volatility_ratio": 0.5,
        "min_liquidity_notional": 500_000,
        "max_consecutive_losses": 5,
        "max_daily_trades": 100,
        "max_concurrent_trades": 10,
    },
    RiskProfile.STAGING: {
        "max_position_size_ratio": 0.6,
        "max_daily_loss_ratio": 0.07,
        "max_drawdown_ratio": 0.12,
        "min_confidence_threshold": 70,
        "max_leverage": 15,
        "max_volatility_ratio": 0.4,
        "min_liquidity_notional": 750_000,
        "max_consecutive_losses": 4,
        "max_daily_trades": 75,
        "max_concurrent_trades": 8,
    },
    RiskProfile.PRODUCTION: {},
}


def policy_for_profile(profile: RiskProfile | str, **overrides: Any) -> SafetyPolicy:
    """Build a policy from a profile preset plus explicit overrides."""
    preset = _PROFILE_PRESETS[RiskProfile(profile)]
    return SafetyPolicy.model_validate({**preset, **overrides})


class PolicyStore:
    """Holds the active policy snapshot.

    Readers get the current frozen instance without locking; writers
    serialize on a lock and replace the reference in one assignment, so a
    validation never sees a half-applied update.
    """

    def __init__(self, initial: SafetyPolicy | None = None) -> None:
        self._policy = initial or SafetyPolicy()
        self._write_lock = threading.Lock()
        self._logger = get_logger("signal_guard.safety.policy")

    def snapshot(self) -> SafetyPolicy:
        return self._policy

    def replace(self, policy: SafetyPolicy) -> SafetyPolicy:
        with self._write_lock:
            previous = self._policy
            self._policy = policy
        self._logger.info(
            "policy_replaced",
            changed=_diff(previous, policy),
        )
        return policy

    def update(self, **changes: Any) -> SafetyPolicy:
        """Copy-on-write partial update.

        Raises pydantic ``ValidationError`` on invalid values; the active
        snapshot is left untouched in that case.
        """
        with self._write_lock:
            previous = self._policy
            updated = SafetyPolicy.model_validate({**previous.model_dump(), **changes})
            self._policy = updated
        self._logger.info("policy_updated", changed=_diff(previous, updated))
        return updated


def _diff(before: SafetyPolicy, after: SafetyPolicy) -> dict[str, Any]:
    old = before.model_dump()
    return {key: value for key, value in after.model_dump().items() if old.get(key) != value}
