"""Validated input schemas: trading signals, market data and safety policy."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from signal_guard.types import SignalAction


class TradingSignal(BaseModel):
    """A proposed trade, immutable once constructed."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    pair: str = Field(min_length=1, pattern=r"^[A-Z0-9]{2,12}(/[A-Z0-9]{2,12})?$")
    action: SignalAction
    entry_price: float = Field(gt=0)
    stop_loss: float | None = Field(default=None, gt=0)
    take_profit: float | None = Field(default=None, gt=0)
    confidence: float = Field(ge=0, le=100)
    leverage: float | None = Field(default=None, ge=1)
    amount: float = Field(gt=0, description="Quote-currency notional")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("pair", mode="before")
    @classmethod
    def normalize_pair(cls, v: object) -> object:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: object) -> object:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def is_buy(self) -> bool:
        return self.action is SignalAction.BUY


class MarketData(BaseModel):
    """Optional market context for slippage, liquidity and volatility checks."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    spread: float | None = Field(default=None, ge=0)
    volume_24h: float | None = Field(default=None, ge=0)
    volatility_24h: float | None = Field(default=None, ge=0)


class SafetyPolicy(BaseModel):
    """Process-wide safety policy snapshot.

    Instances are frozen; updates go through ``PolicyStore`` which swaps
    the whole snapshot.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_position_size_ratio: float = Field(default=0.5, gt=0, le=1)
    max_daily_loss_ratio: float = Field(default=0.05, gt=0, le=1)
    max_drawdown_ratio: float = Field(default=0.10, gt=0, le=1)
    min_confidence_threshold: float = Field(default=75, ge=0, le=100)
    max_leverage: float = Field(default=10, ge=1)
    require_stop_loss: bool = True
    require_take_profit: bool = True
    max_slippage_ratio: float = Field(default=0.02, gt=0, le=1)
    min_liquidity_notional: float = Field(default=1_000_000, ge=0)
    max_volatility_ratio: float = Field(default=0.30, gt=0)

    min_trade_notional: float = Field(default=10, ge=0)
    liquid_hours_start: int = Field(default=6, ge=0, le=23)
    liquid_hours_end: int = Field(default=22, ge=0, le=23)
    max_consecutive_losses: int = Field(default=3, ge=1)
    max_daily_trades: int = Field(default=50, ge=1)
    max_concurrent_trades: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def check_liquid_window(self) -> "SafetyPolicy":
        if self.liquid_hours_start > self.liquid_hours_end:
            raise ValueError("liquid_hours_start must not be after liquid_hours_end")
        return self
