"""Notification channel implementations for alert delivery.

Provides an ABC for notification channels plus concrete implementations
for the outbound boundaries of the engine: JSON webhooks (admin panel,
supervisor escalation, push gateway), an HTTP email API and an HTTP SMS
gateway. ``LogChannel`` only writes a structured log line and is what
development setups register. A CircuitBreaker decorator wraps any channel
to prevent cascading failures when downstream services are unhealthy.

Pattern: Decorator (CircuitBreaker wraps any NotificationChannel).
"""

import enum
import html
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from src.alerts.schemas import AlertRecord

logger = logging.getLogger(__name__)


class NotificationChannel(ABC):
    """Abstract base for notification delivery channels."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Channel identifier: admin, supervisor, push, email or sms."""

    @abstractmethod
    async def send(self, alert: AlertRecord) -> bool:
        """Deliver an alert through this channel.

        Args:
            alert: Alert to deliver.

        Returns:
            True if delivery succeeded, False otherwise.
        """


async def _post_json(
    channel: str,
    url: str,
    payload: dict[str, Any],
    alert: AlertRecord,
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> bool:
    """POST ``payload`` and report success; errors are logged, never raised."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json=payload, headers=headers or {})
            if resp.is_success:
                return True
            logger.warning(
                "%s endpoint returned %d for alert %s",
                channel, resp.status_code, alert.alert_key,
            )
            return False
    except httpx.TimeoutException:
        logger.warning("%s endpoint timed out for alert %s", channel, alert.alert_key)
        return False
    except Exception as e:
        logger.warning("%s endpoint failed for alert %s: %s", channel, alert.alert_key, e)
        return False


def _auth_headers(api_key: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


class WebhookChannel(NotificationChannel):
    """Delivers alerts as JSON POST to an HTTP endpoint.

    One class serves the admin, supervisor and push boundaries; the
    ``channel`` argument names which one this instance is. Creates a new
    ``httpx.AsyncClient`` per call (short-lived, no pooling).
    """

    _EVENTS = {
        "admin": "notify_admin",
        "supervisor": "notify_supervisor",
        "push": "send_push",
    }

    def __init__(
        self,
        channel: str,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        if channel not in self._EVENTS:
            raise ValueError(f"WebhookChannel cannot serve channel {channel!r}")
        self._channel = channel
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._channel

    def _build_payload(self, alert: AlertRecord) -> dict:
        payload = {
            "event": self._EVENTS[self._channel],
            "alert_id": alert.id,
            "alert_key": alert.alert_key,
            "source_type": alert.source_type,
            "severity": alert.severity,
            "escalation_level": alert.escalation_level,
            "title": alert.title,
            "message": alert.message,
            "timestamp": alert.updated_at.isoformat(),
            "metadata": alert.metadata,
        }
        if self._channel == "push":
            payload["data"] = {
                "source_entity_id": alert.source_entity_id,
                "actor_id": alert.actor_id,
            }
        return payload

    async def send(self, alert: AlertRecord) -> bool:
        return await _post_json(
            self._channel,
            self._url,
            self._build_payload(alert),
            alert,
            headers=self._headers,
            timeout=self._timeout,
        )


class EmailChannel(NotificationChannel):
    """Sends an HTML email through an HTTP email API."""

    def __init__(
        self,
        api_url: str,
        recipients: list[str],
        sender: str,
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._api_url = api_url
        self._recipients = list(recipients)
        self._sender = sender
        self._api_key = api_key
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "email"

    def _subject(self, alert: AlertRecord) -> str:
        return f"[{alert.escalation_level.upper()}] {alert.title}"

    def _body(self, alert: AlertRecord) -> str:
        rows = [
            ("Alert", alert.alert_key),
            ("Severity", alert.severity),
            ("Escalation level", alert.escalation_level.upper()),
            ("Agent", alert.actor_name),
            ("Phone", alert.actor_phone),
            ("Client", alert.counterparty_name),
            ("Address", alert.counterparty_address),
            ("Location", alert.location),
            ("Scheduled", alert.scheduled_time.isoformat() if alert.scheduled_time else None),
            ("Delay (minutes)", alert.delay_minutes),
        ]
        details = "".join(
            f"<p><strong>{label}:</strong> {html.escape(str(value))}</p>"
            for label, value in rows
            if value is not None
        )
        return (
            f"<h2>{html.escape(alert.title)}</h2>"
            f"<p>{html.escape(alert.message)}</p>"
            f"{details}"
        )

    async def send(self, alert: AlertRecord) -> bool:
        if not self._recipients:
            logger.warning("No email recipients configured, skipping alert %s", alert.alert_key)
            return False
        payload = {
            "from": self._sender,
            "to": self._recipients,
            "subject": self._subject(alert),
            "html": self._body(alert),
        }
        return await _post_json(
            "email",
            self._api_url,
            payload,
            alert,
            headers=_auth_headers(self._api_key),
            timeout=self._timeout,
        )


class SmsChannel(NotificationChannel):
    """Sends a short text through an HTTP SMS gateway."""

    MAX_LENGTH = 320

    def __init__(
        self,
        gateway_url: str,
        recipients: list[str],
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._gateway_url = gateway_url
        self._recipients = list(recipients)
        self._api_key = api_key
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "sms"

    def _text(self, alert: AlertRecord) -> str:
        text = f"{alert.title}: {alert.message}"
        if len(text) > self.MAX_LENGTH:
            text = text[: self.MAX_LENGTH - 3] + "..."
        return text

    async def send(self, alert: AlertRecord) -> bool:
        if not self._recipients:
            logger.warning("No SMS recipients configured, skipping alert %s", alert.alert_key)
            return False
        return await _post_json(
            "sms",
            self._gateway_url,
            {"to": self._recipients, "text": self._text(alert)},
            alert,
            headers=_auth_headers(self._api_key),
            timeout=self._timeout,
        )


class LogChannel(NotificationChannel):
    """Logs the notification instead of delivering it."""

    def __init__(self, channel: str) -> None:
        self._channel = channel

    @property
    def name(self) -> str:
        return self._channel

    async def send(self, alert: AlertRecord) -> bool:
        logger.info(
            "[%s] %s (%s, level=%s): %s",
            self._channel, alert.title, alert.alert_key,
            alert.escalation_level, alert.message,
        )
        return True


class CircuitState(enum.Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker(NotificationChannel):
    """Wraps a NotificationChannel with circuit breaker protection.

    State machine: CLOSED → OPEN → HALF_OPEN → CLOSED.

    - CLOSED: All requests pass through. Consecutive failures tracked.
    - OPEN: Requests rejected immediately. After recovery_timeout, moves
      to HALF_OPEN.
    - HALF_OPEN: Single probe request allowed. Success → CLOSED, failure → OPEN.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
    ) -> None:
        self._channel = channel
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_time: float = 0.0

    @property
    def name(self) -> str:
        return self._channel.name

    @property
    def state(self) -> CircuitState:
        return self._state

    async def send(self, alert: AlertRecord) -> bool:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self._recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker %s: OPEN → HALF_OPEN (recovery probe)", self.name)
            else:
                logger.debug(
                    "Circuit breaker %s: OPEN, rejecting alert %s",
                    self.name, alert.alert_key,
                )
                return False

        success = await self._channel.send(alert)

        if success:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("Circuit breaker %s: HALF_OPEN → CLOSED (probe succeeded)", self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            return True

        self._consecutive_failures += 1
        self._last_failure_time = time.monotonic()
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning("Circuit breaker %s: HALF_OPEN → OPEN (probe failed)", self.name)
        elif self._consecutive_failures >= self._failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker %s: CLOSED → OPEN after %d failures",
                self.name, self._consecutive_failures,
            )
        return False
