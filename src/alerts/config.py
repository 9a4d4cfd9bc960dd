"""Alert engine configuration.

One ``EscalationPolicy`` per monitored domain, grouped in ``MonitorConfig``.
All settings can be overridden via ``ALERTS_*`` environment variables; use
``__`` to reach into a domain, e.g.
``ALERTS_LATE_VISIT__GRACE_PERIOD_MINUTES=5`` or
``ALERTS_STOCK__SEND_SMS=false``.
"""

from datetime import timedelta

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EscalationPolicy(BaseModel):
    """Thresholds, cadence and channel enables for one monitored domain."""

    enabled: bool = True
    grace_period_minutes: float = Field(
        default=10,
        ge=0,
        description="Minutes after the scheduled time before a violation is raised",
    )
    escalation_threshold_minutes: float = Field(
        default=30,
        gt=0,
        description="Delay at which the alert moves from initial to escalated",
    )
    critical_multiplier: float = Field(
        default=2.0,
        gt=1.0,
        description="Critical tier starts at threshold * multiplier",
    )
    check_interval_minutes: float = Field(
        default=2,
        gt=0,
        description="Minutes between scheduler ticks for this domain",
    )
    jitter_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Random extra delay added to each tick interval",
    )

    # Channel enables (tier gating lives in the dispatcher)
    notify_admins: bool = True
    notify_supervisors: bool = True
    send_push: bool = True
    send_email: bool = True
    send_sms: bool = True

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.grace_period_minutes)

    @property
    def escalation_threshold(self) -> timedelta:
        return timedelta(minutes=self.escalation_threshold_minutes)

    @property
    def critical_threshold(self) -> timedelta:
        return self.escalation_threshold * self.critical_multiplier

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval_minutes * 60

    def channel_enabled(self, channel: str) -> bool:
        """Whether this policy allows dispatch on ``channel`` at all."""
        return {
            "admin": self.notify_admins,
            "supervisor": self.notify_supervisors,
            "push": self.send_push,
            "email": self.send_email,
            "sms": self.send_sms,
        }.get(channel, False)


class MonitorConfig(BaseSettings):
    """Configuration for all alert monitors and the reconciliation job."""

    model_config = SettingsConfigDict(
        env_prefix="ALERTS_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    late_visit: EscalationPolicy = Field(default_factory=EscalationPolicy)
    messages: EscalationPolicy = Field(
        default_factory=lambda: EscalationPolicy(
            grace_period_minutes=0,
            check_interval_minutes=1,
        )
    )
    vehicles: EscalationPolicy = Field(
        default_factory=lambda: EscalationPolicy(
            grace_period_minutes=0,
            check_interval_minutes=2,
        )
    )
    stock: EscalationPolicy = Field(
        default_factory=lambda: EscalationPolicy(
            grace_period_minutes=0,
            check_interval_minutes=5,
            send_sms=False,
        )
    )
    deliveries: EscalationPolicy = Field(
        default_factory=lambda: EscalationPolicy(
            grace_period_minutes=15,
            escalation_threshold_minutes=30,
            check_interval_minutes=2,
        )
    )
    visit_sync: EscalationPolicy = Field(
        default_factory=lambda: EscalationPolicy(check_interval_minutes=2)
    )

    # Vehicle fuel thresholds (percent)
    low_fuel_threshold: float = Field(
        default=20.0,
        ge=0,
        le=100,
        description="Fuel level below which a low_fuel alert is raised",
    )
    escalated_fuel_threshold: float = Field(default=15.0, ge=0, le=100)
    critical_fuel_threshold: float = Field(default=10.0, ge=0, le=100)

    # Stock thresholds, as a fraction of the item's minimum quantity
    escalated_stock_ratio: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="quantity / min_threshold at or below which low stock escalates",
    )
    critical_stock_ratio: float = Field(default=0.0, ge=0, le=1)

    # Representative messages
    message_lookback_hours: int = Field(
        default=24,
        ge=1,
        le=168,
        description="Window scanned on the first message check after startup",
    )

    # In-process notified-tier cache (Redis cache TTL when shared)
    notified_cache_ttl_hours: int = Field(default=24, ge=1, le=168)

    def policy_for(self, job: str) -> EscalationPolicy:
        """Look up the policy for a job name, raising KeyError if unknown."""
        policies = {
            "late_visit": self.late_visit,
            "messages": self.messages,
            "vehicles": self.vehicles,
            "stock": self.stock,
            "deliveries": self.deliveries,
            "visit_sync": self.visit_sync,
        }
        return policies[job]
