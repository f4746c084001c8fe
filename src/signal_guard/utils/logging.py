"""Structured logging setup.

Uses structlog with either JSON or colored console output.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from signal_guard.config import LogFormat, get_settings


def setup_logging() -> None:
    """Configure structlog from settings (level and renderer)."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structured logger.

    Args:
        name: Logger name. Defaults to the calling module.

    Returns:
        Bound structlog logger.
    """
    return structlog.get_logger(name)


def log_validation(
    logger: structlog.stdlib.BoundLogger,
    *,
    pair: str,
    action: str,
    is_valid: bool,
    safety_score: int,
    errors: int,
    warnings: int,
    **kwargs: Any,
) -> None:
    """Log one safety validation outcome."""
    level = "info" if is_valid else "warning"
    getattr(logger, level)(
        "signal_validated",
        pair=pair,
        action=action,
        is_valid=is_valid,
        safety_score=safety_score,
        errors=errors,
        warnings=warnings,
        **kwargs,
    )


def log_breaker_transition(
    logger: structlog.stdlib.BoundLogger,
    *,
    account_id: str,
    opened: bool,
    reason: str | None = None,
    **kwargs: Any,
) -> None:
    """Log a circuit breaker state change."""
    if opened:
        logger.error("circuit_breaker_opened", account_id=account_id, reason=reason, **kwargs)
    else:
        logger.info("circuit_breaker_closed", account_id=account_id, reason=reason, **kwargs)


def log_alert(
    logger: structlog.stdlib.BoundLogger,
    *,
    account_id: str,
    level: str,
    message: str,
    **kwargs: Any,
) -> None:
    """Log a risk alert."""
    logger.warning(
        "risk_alert",
        account_id=account_id,
        alert_level=level,
        message=message,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """Log a risk control event."""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )
