"""Notification dispatcher routing alerts to channels by escalation tier.

A channel is invoked for a record only when (a) the domain policy enables
it, (b) the record's current tier is in the channel's tier set and (c) the
channel's dispatch flag on the record is still false for this tier. Each
call runs under its own timeout and is isolated: one channel failing never
blocks or fails the others. There is no retry queue; a failed channel is
tried again on the next tier advance.

Pattern: Orchestrator (like AlertService), delegates to stateless channels.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.alerts.channels import (
    CircuitBreaker,
    EmailChannel,
    LogChannel,
    NotificationChannel,
    SmsChannel,
    WebhookChannel,
)
from src.alerts.config import EscalationPolicy
from src.alerts.schemas import VALID_CHANNELS, AlertRecord
from src.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

# Channel -> tiers at which it is notified.
CHANNEL_TIERS: dict[str, frozenset[str]] = {
    "admin": frozenset({"initial", "escalated", "critical"}),
    "push": frozenset({"initial", "escalated", "critical"}),
    "email": frozenset({"escalated", "critical"}),
    "supervisor": frozenset({"escalated", "critical"}),
    "sms": frozenset({"critical"}),
}

# Stable dispatch order.
CHANNEL_ORDER: tuple[str, ...] = ("admin", "push", "email", "supervisor", "sms")


class NotificationConfig(BaseSettings):
    """Configuration for notification dispatch and channel endpoints.

    A channel without an endpoint falls back to ``LogChannel`` when
    ``log_unconfigured_channels`` is set, otherwise it is not registered.
    """

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATIONS_",
        case_sensitive=False,
        extra="ignore",
    )

    channel_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Timeout for a single channel send",
    )
    circuit_breaker_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures before circuit opens",
    )
    circuit_breaker_recovery_seconds: float = Field(
        default=60.0,
        ge=5.0,
        description="Seconds before circuit breaker probes recovery",
    )
    log_unconfigured_channels: bool = True

    admin_webhook_url: str | None = None
    supervisor_webhook_url: str | None = None
    push_webhook_url: str | None = None
    webhook_token: str | None = None

    email_api_url: str | None = None
    email_api_key: str | None = None
    email_sender: str = "alerts@delivery-ops.local"
    email_recipients: list[str] = Field(default_factory=list)

    sms_gateway_url: str | None = None
    sms_api_key: str | None = None
    sms_recipients: list[str] = Field(default_factory=list)


def build_channels(config: NotificationConfig) -> list[NotificationChannel]:
    """Instantiate one channel per boundary from configuration."""
    headers = {"Authorization": f"Bearer {config.webhook_token}"} if config.webhook_token else {}
    timeout = config.channel_timeout_seconds
    configured: dict[str, NotificationChannel | None] = {
        "admin": None,
        "push": None,
        "email": None,
        "supervisor": None,
        "sms": None,
    }

    for name, url in (
        ("admin", config.admin_webhook_url),
        ("push", config.push_webhook_url),
        ("supervisor", config.supervisor_webhook_url),
    ):
        if url:
            configured[name] = WebhookChannel(name, url, headers=headers, timeout=timeout)

    if config.email_api_url:
        configured["email"] = EmailChannel(
            config.email_api_url,
            config.email_recipients,
            config.email_sender,
            api_key=config.email_api_key,
            timeout=timeout,
        )
    if config.sms_gateway_url:
        configured["sms"] = SmsChannel(
            config.sms_gateway_url,
            config.sms_recipients,
            api_key=config.sms_api_key,
            timeout=timeout,
        )

    channels: list[NotificationChannel] = []
    for name in CHANNEL_ORDER:
        channel = configured[name]
        if channel is None and config.log_unconfigured_channels:
            channel = LogChannel(name)
        if channel is not None:
            channels.append(channel)
    return channels


@dataclass
class DispatchReport:
    """Per-channel outcome of one dispatch."""

    alert_key: str
    level: str
    attempted: list[str] = field(default_factory=list)
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class NotificationDispatcher:
    """Routes alert records to channels, gated by tier, policy and flags.

    Wraps each channel in a CircuitBreaker.
    """

    def __init__(
        self,
        channels: list[NotificationChannel],
        config: NotificationConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._config = config or NotificationConfig()
        self._metrics = metrics

        self._channels: dict[str, NotificationChannel] = {}
        for ch in channels:
            if ch.name not in VALID_CHANNELS:
                raise ValueError(f"Unknown channel {ch.name!r}")
            if not isinstance(ch, CircuitBreaker):
                ch = CircuitBreaker(
                    channel=ch,
                    failure_threshold=self._config.circuit_breaker_threshold,
                    recovery_timeout=self._config.circuit_breaker_recovery_seconds,
                )
            self._channels[ch.name] = ch

    @property
    def channels(self) -> dict[str, NotificationChannel]:
        """Access wrapped channels (for inspection/testing)."""
        return self._channels

    def eligible_channels(
        self,
        record: AlertRecord,
        policy: EscalationPolicy,
    ) -> list[NotificationChannel]:
        """Channels that should be notified for the record's current tier."""
        eligible = []
        for name in CHANNEL_ORDER:
            channel = self._channels.get(name)
            if channel is None:
                continue
            if not policy.channel_enabled(name):
                continue
            if record.escalation_level not in CHANNEL_TIERS[name]:
                continue
            if record.channel_flag(name):
                continue
            eligible.append(channel)
        return eligible

    async def dispatch(
        self,
        record: AlertRecord,
        policy: EscalationPolicy,
    ) -> DispatchReport:
        """Send the record to every eligible channel concurrently.

        Args:
            record: Alert that was just created or advanced a tier.
            policy: Domain policy supplying the channel enables.

        Returns:
            DispatchReport listing attempted, delivered and failed channels.
        """
        report = DispatchReport(alert_key=record.alert_key, level=record.escalation_level)
        channels = self.eligible_channels(record, policy)
        if not channels:
            return report

        report.attempted = [ch.name for ch in channels]
        outcomes = await asyncio.gather(*(self._send_one(ch, record) for ch in channels))
        for channel, ok in zip(channels, outcomes):
            (report.delivered if ok else report.failed).append(channel.name)
            if self._metrics is not None:
                self._metrics.record_notification(channel.name, ok)

        self._record_delivery(report)
        return report

    async def _send_one(self, channel: NotificationChannel, record: AlertRecord) -> bool:
        try:
            return await asyncio.wait_for(
                channel.send(record),
                timeout=self._config.channel_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Channel %s timed out after %.1fs for alert %s",
                channel.name, self._config.channel_timeout_seconds, record.alert_key,
            )
            return False
        except Exception as e:
            logger.warning(
                "Channel %s send error for alert %s: %s",
                channel.name, record.alert_key, e,
            )
            return False

    def _record_delivery(self, report: DispatchReport) -> None:
        if report.failed and not report.delivered:
            logger.error(
                "Alert %s (%s) failed ALL channels: %s",
                report.alert_key, report.level, report.failed,
            )
        elif report.failed:
            logger.warning(
                "Alert %s partial delivery: ok=%s failed=%s",
                report.alert_key, report.delivered, report.failed,
            )
        else:
            logger.debug(
                "Alert %s delivered to all channels: %s",
                report.alert_key, report.delivered,
            )
