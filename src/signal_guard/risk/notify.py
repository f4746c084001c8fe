"""Forwarding of severe alerts to an external channel."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signal_guard.config import Settings
from signal_guard.errors import NotifierError
from signal_guard.types import Alert, AlertLevel
from signal_guard.utils.logging import get_logger

FORWARDED_LEVELS = frozenset({AlertLevel.HIGH, AlertLevel.CRITICAL})


class AlertNotifier(Protocol):
    """Outbound alert channel."""

    def notify(self, account_id: str, alert: Alert) -> None:
        """Deliver one alert. May raise ``NotifierError``."""


class LoggingNotifier:
    """Default channel: writes the alert to the operations log."""

    def __init__(self) -> None:
        self._logger = get_logger("signal_guard.risk.notify")

    def notify(self, account_id: str, alert: Alert) -> None:
        self._logger.error(
            "alert_forwarded",
            account_id=account_id,
            alert_level=alert.level.value,
            message=alert.message,
            data=alert.data,
        )


class WebhookNotifier:
    """POSTs alerts as JSON to a webhook, retrying transport failures."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("webhook_url_required")
        self._url = url
        self._timeout = timeout
        self._transport = transport
        self._logger = get_logger("signal_guard.risk.notify")

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookNotifier":
        return cls(settings.alert_webhook_url, timeout=settings.alert_webhook_timeout)

    @retry(
        retry=retry_if_exception_type(NotifierError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def notify(self, account_id: str, alert: Alert) -> None:
        payload = {"account_id": account_id, **alert.to_dict()}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self._url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            self._logger.warning("alert_webhook_failed", account_id=account_id, error=str(exc))
            raise NotifierError(str(exc)) from exc


def build_notifier(settings: Settings) -> AlertNotifier:
    """Webhook notifier when configured, logging otherwise."""
    if settings.alert_webhook_url:
        return WebhookNotifier.from_settings(settings)
    return LoggingNotifier()


class AlertDispatcher:
    """Delivers alerts on a single background worker.

    ``submit`` only enqueues, so a slow or unreachable channel never holds
    up a settlement or a breaker trip. Delivery failures are logged.
    """

    def __init__(self, notifier: AlertNotifier, *, max_pending: int = 1000) -> None:
        if max_pending <= 0:
            raise ValueError("max_pending_must_be_positive")
        self._notifier = notifier
        self._max_pending = max_pending
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alert-dispatch")
        self._pending: set[Future[None]] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._logger = get_logger("signal_guard.risk.notify")

    def submit(self, account_id: str, alert: Alert) -> bool:
        """Queue one alert; False when it was dropped."""
        with self._lock:
            if self._closed:
                self._logger.warning("alert_dispatch_closed", account_id=account_id, message=alert.message)
                return False
            if len(self._pending) >= self._max_pending:
                self._logger.error(
                    "alert_dispatch_backlog_full",
                    account_id=account_id,
                    pending=len(self._pending),
                    message=alert.message,
                )
                return False
            future = self._executor.submit(self._deliver, account_id, alert)
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return True

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for queued alerts; True when none are left."""
        with self._lock:
            pending = set(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_pending)

    def _deliver(self, account_id: str, alert: Alert) -> None:
        try:
            self._notifier.notify(account_id, alert)
        except (NotifierError, OSError) as exc:
            self._logger.error(
                "alert_forward_failed",
                account_id=account_id,
                alert_level=alert.level.value,
                error=str(exc),
            )
        except Exception as exc:  # noqa: BLE001 - nothing upstream can handle a worker fault.
            self._logger.exception("alert_forward_crashed", account_id=account_id, error=str(exc))

    def _discard(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)
