"""CLI entry point - signal guard command line interface."""

import json
import sys
from pathlib import Path
from typing import Any, TextIO

import click
from pydantic import ValidationError

from signal_guard import __version__
from signal_guard.config import get_settings
from signal_guard.errors import SignalGuardError
from signal_guard.gate import TradeGate
from signal_guard.safety.validator import SafetyValidator
from signal_guard.types import AlertLevel
from signal_guard.utils.logging import get_logger, setup_logging


def _echo_json(data: dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=True))


def _build_gate() -> TradeGate:
    setup_logging()
    gate = TradeGate.from_settings(get_settings())
    click.get_current_context().call_on_close(gate.close)
    return gate


def _fail(exc: SignalGuardError) -> None:
    click.echo(f"[ERROR] {exc}", err=True)
    sys.exit(1)


def _load_json(stream: TextIO, what: str) -> dict[str, Any]:
    try:
        data = json.load(stream)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"{what} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise click.BadParameter(f"{what} must be a JSON object")
    return data


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show the version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Signal guard - safety validation and circuit breakers for trading signals."""
    if version:
        click.echo(f"signal-guard version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("signal_file", type=click.File("r"))
@click.option("--portfolio-value", "-p", type=float, required=True, help="Account value in quote currency")
@click.option("--account", "-a", default=None, help="Route through the account gate (breaker and limits)")
@click.option("--market", "market_file", type=click.File("r"), default=None, help="Market data JSON file")
def validate(
    signal_file: TextIO,
    portfolio_value: float,
    account: str | None,
    market_file: TextIO | None,
) -> None:
    """Validate a signal read from SIGNAL_FILE (JSON, '-' for stdin).

    Without --account only the stateless checks run and nothing is recorded.
    Exits with status 1 when the signal is rejected.
    """
    payload = _load_json(signal_file, "signal")
    market = _load_json(market_file, "market data") if market_file is not None else None

    if account is None:
        setup_logging()
        result = SafetyValidator().validate_payload(
            payload,
            portfolio_value,
            get_settings().safety_policy(),
            market,
        )
        _echo_json(result.to_dict())
        allowed = result.is_valid
    else:
        decision = _build_gate().submit_payload(payload, account, portfolio_value, market)
        _echo_json(decision.to_dict())
        allowed = decision.allowed

    if not allowed:
        sys.exit(1)


@cli.command()
@click.argument("account")
def summary(account: str) -> None:
    """Show the risk summary of ACCOUNT."""
    gate = _build_gate()
    try:
        _echo_json(gate.manager.get_risk_summary(account).to_dict())
    except SignalGuardError as exc:
        _fail(exc)


@cli.command()
@click.argument("account")
@click.argument("level", type=click.Choice([level.value for level in AlertLevel], case_sensitive=False))
@click.argument("message")
def alert(account: str, level: str, message: str) -> None:
    """Record an alert of LEVEL against ACCOUNT."""
    try:
        recorded = _build_gate().record_alert(account, level, message)
    except SignalGuardError as exc:
        _fail(exc)
    _echo_json({"account_id": account, **recorded.to_dict()})


@cli.group()
def breaker() -> None:
    """Manual circuit breaker control."""


@breaker.command("trip")
@click.argument("account")
@click.option("--message", "-m", default=None, help="Alert message")
def breaker_trip(account: str, message: str | None) -> None:
    """Open the breaker of ACCOUNT; survives the daily reset."""
    try:
        summary_ = _build_gate().trip(account, message)
    except SignalGuardError as exc:
        _fail(exc)
    _echo_json(summary_.to_dict())


@breaker.command("reset")
@click.argument("account")
def breaker_reset(account: str) -> None:
    """Close the breaker of ACCOUNT."""
    try:
        summary_ = _build_gate().reset(account)
    except SignalGuardError as exc:
        _fail(exc)
    _echo_json(summary_.to_dict())


@cli.command("reset-daily")
@click.option("--account", "-a", default=None, help="Only reset this account")
def reset_daily(account: str | None) -> None:
    """Run the daily rollover for one or all accounts."""
    try:
        accounts = _build_gate().reset_daily(account)
    except SignalGuardError as exc:
        _fail(exc)
    _echo_json({"reset": accounts})


@cli.command()
def health() -> None:
    """Check account bookkeeping consistency across all stored accounts."""
    report = _build_gate().manager.health_check()
    _echo_json(report.to_dict())
    if not report.healthy:
        sys.exit(1)


@cli.command()
def status() -> None:
    """Show active configuration and policy."""
    setup_logging()
    settings = get_settings()
    policy = settings.safety_policy()

    click.echo("=" * 50)
    click.echo("Signal Guard - Status")
    click.echo("=" * 50)
    click.echo()
    click.echo(f"Risk profile: {settings.risk_profile.value}")
    overrides = settings.policy_overrides()
    if overrides:
        click.echo(f"Overrides: {', '.join(sorted(overrides))}")
    click.echo()

    click.echo("[Safety Policy]")
    for name, value in policy.model_dump().items():
        click.echo(f"   {name}: {value}")
    click.echo()

    click.echo("[Risk Manager]")
    click.echo(f"   Alert history: {settings.alert_history_limit}")
    click.echo(f"   Threat window: {settings.threat_window_minutes} min")
    webhook = "[OK] Configured" if settings.alert_webhook_url else "[--] Log only"
    click.echo(f"   Alert webhook: {webhook}")
    click.echo()

    click.echo("[Storage]")
    click.echo(f"   State dir: {settings.state_dir}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """Check dependencies and configuration."""
    setup_logging()
    logger = get_logger("signal_guard.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    packages = [
        ("pydantic", "Input validation"),
        ("pydantic_settings", "Configuration"),
        ("httpx", "Alert webhook client"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    if Path(".env").exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    try:
        get_settings().safety_policy()
        click.echo("  [OK] Safety policy configuration is valid")
    except ValidationError as exc:
        click.echo(f"  [ERROR] Invalid safety policy: {exc.error_count()} error(s)")
        all_ok = False

    click.echo()

    if all_ok:
        click.echo("[OK] All checks passed")
    else:
        click.echo("[ERROR] Some checks failed. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


if __name__ == "__main__":
    cli()
