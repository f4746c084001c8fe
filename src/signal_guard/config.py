"""Configuration loading from environment variables and the .env file."""

from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from signal_guard.schemas import SafetyPolicy


class RiskProfile(str, Enum):
    """Deployment risk profile selecting the policy preset."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogFormat(str, Enum):
    """Log output format."""

    JSON = "json"
    CONSOLE = "console"


_POLICY_OVERRIDE_FIELDS = (
    "max_position_size_ratio",
    "max_daily_loss_ratio",
    "max_drawdown_ratio",
    "min_confidence_threshold",
    "max_leverage",
    "require_stop_loss",
    "require_take_profit",
    "max_slippage_ratio",
    "min_liquidity_notional",
    "max_volatility_ratio",
    "min_trade_notional",
    "liquid_hours_start",
    "liquid_hours_end",
    "max_consecutive_losses",
    "max_daily_trades",
    "max_concurrent_trades",
)


class Settings(BaseSettings):
    """Engine settings.

    Policy fields left unset fall back to the selected risk profile preset.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== Policy ====================
    risk_profile: RiskProfile = Field(
        default=RiskProfile.PRODUCTION,
        description="Policy preset: development, staging or production",
    )
    max_position_size_ratio: float | None = Field(default=None, gt=0, le=1)
    max_daily_loss_ratio: float | None = Field(default=None, gt=0, le=1)
    max_drawdown_ratio: float | None = Field(default=None, gt=0, le=1)
    min_confidence_threshold: float | None = Field(default=None, ge=0, le=100)
    max_leverage: float | None = Field(default=None, ge=1)
    require_stop_loss: bool | None = None
    require_take_profit: bool | None = None
    max_slippage_ratio: float | None = Field(default=None, gt=0, le=1)
    min_liquidity_notional: float | None = Field(default=None, ge=0)
    max_volatility_ratio: float | None = Field(default=None, gt=0)
    min_trade_notional: float | None = Field(default=None, ge=0)
    liquid_hours_start: int | None = Field(default=None, ge=0, le=23)
    liquid_hours_end: int | None = Field(default=None, ge=0, le=23)
    max_consecutive_losses: int | None = Field(default=None, ge=1)
    max_daily_trades: int | None = Field(default=None, ge=1)
    max_concurrent_trades: int | None = Field(default=None, ge=1)

    # ==================== Risk manager ====================
    alert_history_limit: int = Field(
        default=200,
        ge=10,
        le=5000,
        description="Alerts retained per account (oldest evicted)",
    )
    threat_window_minutes: int = Field(
        default=60,
        ge=1,
        le=24 * 60,
        description="Window of alerts considered for the threat level",
    )
    signal_clock_skew_seconds: int = Field(
        default=5,
        ge=0,
        le=300,
        description="Tolerance for signal timestamps ahead of the local clock",
    )

    # ==================== Notification ====================
    alert_webhook_url: str = Field(default="", description="HIGH/CRITICAL alert webhook")
    alert_webhook_timeout: int = Field(default=10, ge=1, le=60, description="Webhook timeout (s)")

    # ==================== Logging ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="Log output format",
    )

    # ==================== Storage ====================
    state_dir: Path = Field(
        default=Path("data/accounts"),
        description="Per-account risk state directory",
    )
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="Audit journal directory",
    )

    @field_validator("state_dir", "journal_dir", mode="before")
    @classmethod
    def parse_dir(cls, v: str | Path) -> Path:
        """Convert strings to Path objects."""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """Make sure storage directories exist."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def threat_window(self) -> timedelta:
        return timedelta(minutes=self.threat_window_minutes)

    @property
    def signal_clock_skew(self) -> timedelta:
        return timedelta(seconds=self.signal_clock_skew_seconds)

    def policy_overrides(self) -> dict[str, Any]:
        """Explicitly configured policy fields."""
        values = {name: getattr(self, name) for name in _POLICY_OVERRIDE_FIELDS}
        return {name: value for name, value in values.items() if value is not None}

    def safety_policy(self) -> "SafetyPolicy":
        """Initial policy snapshot: profile preset plus overrides."""
        from signal_guard.safety.policy import policy_for_profile

        return policy_for_profile(self.risk_profile, **self.policy_overrides())


# Global settings instance (lazy)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from the environment."""
    global _settings
    _settings = Settings()
    return _settings
