"""Stateless safety validation of a single trading signal.

Every check produces a partial verdict starting from a score of 100.
Partials are merged with AND on validity, message concatenation in check
order and MIN on score. The merged score is then capped by a count based
score: ``100 - 25 * errors - 5 * warnings``, floored at 0.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from signal_guard.schemas import MarketData, SafetyPolicy, TradingSignal
from signal_guard.types import SafetyResult
from signal_guard.utils.logging import get_logger, log_validation

VALIDATION_FAILED = "Safety validation failed"

_ERROR_PENALTY = 25
_WARNING_PENALTY = 5
_LARGE_STOP_DISTANCE = 0.10
_HIGH_LEVERAGE_RECOMMENDATION = 5.0


@dataclass(slots=True)
class _Partial:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    score: int = 100

    def fail(self, message: str) -> None:
        self.is_valid = False
        self.errors.append(message)
        self.score = 0

    def warn(self, message: str, penalty: int) -> None:
        self.warnings.append(message)
        self.score -= penalty


@dataclass(frozen=True, slots=True)
class SecurityCheck:
    """Description of one validation check."""

    name: str
    description: str
    severity: str
    blocking: bool


SECURITY_CHECKS: tuple[SecurityCheck, ...] = (
    SecurityCheck("Position Size Check", "Position size is within safe limits", "HIGH", True),
    SecurityCheck("Stop Loss Validation", "Stop loss is set on the losing side", "CRITICAL", True),
    SecurityCheck("Take Profit Validation", "Take profit is set on the winning side", "HIGH", True),
    SecurityCheck("Leverage Check", "Leverage is within safe limits", "HIGH", True),
    SecurityCheck("Confidence Threshold", "Signal confidence meets the minimum", "MEDIUM", True),
    SecurityCheck("Slippage Protection", "Spread is not excessive", "MEDIUM", False),
    SecurityCheck("Liquidity Check", "24h volume is sufficient", "MEDIUM", False),
    SecurityCheck("Volatility Assessment", "24h volatility is acceptable", "LOW", False),
    SecurityCheck("Risk Reward Ratio", "Reward justifies the risk taken", "MEDIUM", False),
    SecurityCheck("Market Timing", "Trade falls inside liquid trading hours", "LOW", False),
)


class SafetyValidator:
    """Pure, thread-safe validator; holds no state besides its logger."""

    def __init__(self) -> None:
        self._logger = get_logger("signal_guard.safety.validator")

    def validate(
        self,
        signal: TradingSignal,
        portfolio_value: float,
        policy: SafetyPolicy,
        market_data: MarketData | None = None,
    ) -> SafetyResult:
        """Validate one signal against one policy snapshot. Never raises."""
        try:
            result = _run_checks(signal, portfolio_value, policy, market_data)
        except Exception as exc:  # noqa: BLE001 - fail closed on any internal fault.
            self._logger.exception(
                "safety_validation_failed",
                pair=getattr(signal, "pair", None),
                portfolio_value=portfolio_value,
                error=str(exc),
            )
            return SafetyResult.failed(VALIDATION_FAILED)

        log_validation(
            self._logger,
            pair=signal.pair,
            action=signal.action.value,
            is_valid=result.is_valid,
            safety_score=result.safety_score,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        return result

    def validate_payload(
        self,
        payload: Mapping[str, Any],
        portfolio_value: float,
        policy: SafetyPolicy,
        market_data: Mapping[str, Any] | MarketData | None = None,
    ) -> SafetyResult:
        """Parse raw signal/market data, then validate.

        A malformed payload yields a zero-score invalid result instead of
        an exception.
        """
        try:
            signal = TradingSignal.model_validate(payload)
            market = (
                MarketData.model_validate(market_data)
                if isinstance(market_data, Mapping)
                else market_data
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"]) or "signal"
            self._logger.warning(
                "invalid_signal_payload",
                field=location,
                error=first["msg"],
                error_count=exc.error_count(),
            )
            return SafetyResult.failed(f"Invalid signal: {location}: {first['msg']}")
        return self.validate(signal, portfolio_value, policy, market)

    @staticmethod
    def security_checks() -> list[SecurityCheck]:
        return list(SECURITY_CHECKS)


def _run_checks(
    signal: TradingSignal,
    portfolio_value: float,
    policy: SafetyPolicy,
    market_data: MarketData | None,
) -> SafetyResult:
    checks: list[Callable[[], _Partial | None]] = [
        lambda: _check_position_size(signal, portfolio_value, policy),
        lambda: _check_stop_loss(signal, policy),
        lambda: _check_take_profit(signal, policy),
        lambda: _check_leverage(signal, policy),
        lambda: _check_confidence(signal, policy),
    ]
    if market_data is not None:
        checks += [
            lambda: _check_slippage(signal, market_data, policy),
            lambda: _check_liquidity(market_data, policy),
            lambda: _check_volatility(market_data, policy),
        ]
    checks += [
        lambda: _check_risk_reward(signal),
        lambda: _check_market_timing(signal, policy),
    ]

    merged = _Partial()
    for check in checks:
        partial = check()
        if partial is None:
            continue
        merged.is_valid = merged.is_valid and partial.is_valid
        merged.errors.extend(partial.errors)
        merged.warnings.extend(partial.warnings)
        merged.recommendations.extend(partial.recommendations)
        merged.score = min(merged.score, partial.score)

    score = min(
        max(0, merged.score),
        max(0, 100 - _ERROR_PENALTY * len(merged.errors) - _WARNING_PENALTY * len(merged.warnings)),
    )
    merged.recommendations.extend(_summary_recommendations(score, merged))

    return SafetyResult(
        is_valid=merged.is_valid,
        errors=tuple(merged.errors),
        warnings=tuple(merged.warnings),
        recommendations=tuple(merged.recommendations),
        safety_score=score,
    )


def _check_position_size(
    signal: TradingSignal, portfolio_value: float, policy: SafetyPolicy
) -> _Partial:
    partial = _Partial()
    if portfolio_value <= 0:
        partial.fail("Portfolio value must be positive to size a position")
        return partial

    ratio = signal.amount / portfolio_value
    if ratio > policy.max_position_size_ratio:
        partial.fail(f"Position size too large: {ratio * 100:.1f}% of portfolio")
    elif ratio > policy.max_position_size_ratio * 0.8:
        partial.warn(f"High position size: {ratio * 100:.1f}% of portfolio", 20)

    if signal.amount < policy.min_trade_notional:
        partial.warn("Position size very small, consider minimum viable position", 5)
    return partial


def _check_stop_loss(signal: TradingSignal, policy: SafetyPolicy) -> _Partial:
    partial = _Partial()
    if signal.stop_loss is None:
        if policy.require_stop_loss:
            partial.fail("Stop loss is required for safety")
        else:
            partial.warn("Stop loss not set - high risk", 30)
        return partial

    entry = signal.entry_price
    if signal.is_buy:
        if signal.stop_loss >= entry:
            partial.fail("Stop loss must be below entry price for BUY orders")
            return partial
        distance = (entry - signal.stop_loss) / entry
    else:
        if signal.stop_loss <= entry:
            partial.fail("Stop loss must be above entry price for SELL orders")
            return partial
        distance = (signal.stop_loss - entry) / entry

    if distance > _LARGE_STOP_DISTANCE:
        partial.warn(f"Large stop loss distance: {distance * 100:.1f}%", 15)
    return partial


def _check_take_profit(signal: TradingSignal, policy: SafetyPolicy) -> _Partial:
    partial = _Partial()
    if signal.take_profit is None:
        if policy.require_take_profit:
            partial.fail("Take profit is required for safety")
        else:
            partial.warn("Take profit not set - consider setting profit targets", 10)
        return partial

    if signal.is_buy and signal.take_profit <= signal.entry_price:
        partial.fail("Take profit must be above entry price for BUY orders")
    elif not signal.is_buy and signal.take_profit >= signal.entry_price:
        partial.fail("Take profit must be below entry price for SELL orders")
    return partial


def _check_leverage(signal: TradingSignal, policy: SafetyPolicy) -> _Partial | None:
    if signal.leverage is None:
        return None
    partial = _Partial()
    leverage = signal.leverage
    if leverage > policy.max_leverage:
        partial.fail(f"Leverage too high: {leverage:g}x (max: {policy.max_leverage:g}x)")
    elif leverage > policy.max_leverage * 0.7:
        partial.warn(f"High leverage: {leverage:g}x", 25)

    if leverage > _HIGH_LEVERAGE_RECOMMENDATION:
        partial.recommendations.append("Consider reducing leverage for safer trading")
    return partial


def _check_confidence(signal: TradingSignal, policy: SafetyPolicy) -> _Partial:
    partial = _Partial()
    threshold = policy.min_confidence_threshold
    if signal.confidence < threshold:
        partial.fail(
            f"Signal confidence too low: {signal.confidence:g}% (min: {threshold:g}%)"
        )
    elif signal.confidence < threshold + 10:
        partial.warn(f"Low signal confidence: {signal.confidence:g}%", 15)
    return partial


def _check_slippage(
    signal: TradingSignal, market_data: MarketData, policy: SafetyPolicy
) -> _Partial | None:
    if market_data.spread is None:
        return None
    partial = _Partial()
    spread_ratio = market_data.spread / signal.entry_price
    if spread_ratio > policy.max_slippage_ratio:
        partial.warn(f"High slippage risk: {spread_ratio * 100:.2f}%", 10)
    return partial


def _check_liquidity(market_data: MarketData, policy: SafetyPolicy) -> _Partial | None:
    if market_data.volume_24h is None:
        return None
    partial = _Partial()
    if market_data.volume_24h < policy.min_liquidity_notional:
        partial.warn(f"Low liquidity: ${market_data.volume_24h:,.0f}", 15)
    return partial


def _check_volatility(market_data: MarketData, policy: SafetyPolicy) -> _Partial | None:
    if market_data.volatility_24h is None:
        return None
    partial = _Partial()
    if market_data.volatility_24h > policy.max_volatility_ratio:
        partial.warn(f"High volatility: {market_data.volatility_24h * 100:.1f}%", 20)
        partial.recommendations.append("Consider reducing position size due to high volatility")
    return partial


def _check_risk_reward(signal: TradingSignal) -> _Partial | None:
    if signal.stop_loss is None or signal.take_profit is None:
        return None
    if signal.is_buy:
        risk = signal.entry_price - signal.stop_loss
        reward = signal.take_profit - signal.entry_price
    else:
        risk = signal.stop_loss - signal.entry_price
        reward = signal.entry_price - signal.take_profit
    # A stop at the entry price leaves the ratio undefined.
    if risk == 0:
        return None

    partial = _Partial()
    ratio = reward / risk
    if ratio < 1:
        partial.warn(f"Poor risk-reward ratio: {ratio:.2f}:1", 25)
        partial.recommendations.append("Consider improving risk-reward ratio to at least 1:1")
    elif ratio < 2:
        partial.warn(f"Moderate risk-reward ratio: {ratio:.2f}:1", 10)
    return partial


def _check_market_timing(signal: TradingSignal, policy: SafetyPolicy) -> _Partial:
    partial = _Partial()
    when = signal.timestamp
    if when.weekday() >= 5:
        partial.warn("Trading on weekend - reduced liquidity may be expected", 5)
    if when.hour < policy.liquid_hours_start or when.hour > policy.liquid_hours_end:
        partial.warn("Trading during off-peak hours - reduced liquidity may be expected", 5)
    return partial


def _summary_recommendations(score: int, merged: _Partial) -> list[str]:
    recommendations: list[str] = []
    if score < 50:
        recommendations.append("Consider waiting for better market conditions")
    if len(merged.warnings) > 3:
        recommendations.append("Multiple warnings detected - review trade parameters carefully")
    if merged.errors:
        recommendations.append("Fix errors before proceeding with trade")
    return recommendations
