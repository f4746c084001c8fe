"""Safety package exports."""

from signal_guard.safety.policy import PolicyStore, policy_for_profile
from signal_guard.safety.validator import (
    SECURITY_CHECKS,
    VALIDATION_FAILED,
    SafetyValidator,
    SecurityCheck,
)

__all__ = [
    "PolicyStore",
    "SECURITY_CHECKS",
    "SafetyValidator",
    "SecurityCheck",
    "VALIDATION_FAILED",
    "policy_for_profile",
]
