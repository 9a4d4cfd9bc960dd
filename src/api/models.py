"""
Request and response models for the operations dashboard API.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

AlertAction = Literal[
    "mark_read",
    "mark_unread",
    "acknowledge",
    "escalate",
    "resolve",
    "dismiss",
    "archive",
]


class ComponentHealth(BaseModel):
    """Health of a single infrastructure component."""

    status: str = Field(..., description="healthy or unhealthy")
    latency_ms: float | None = Field(default=None, description="Check latency in milliseconds")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(
        ...,
        description="Overall service status: healthy, degraded, or unhealthy",
    )
    store_backend: str = Field(..., description="Alert store backend: postgres or memory")
    scheduler_running: bool = Field(default=False, description="Whether monitors are ticking")
    components: dict[str, ComponentHealth] = Field(default_factory=dict)
    unavailable_sources: list[str] = Field(
        default_factory=list,
        description="Source tables that failed on their last read",
    )
    version: str = Field(default="0.1.0")


class ErrorResponse(BaseModel):
    """Response model for errors."""

    detail: str = Field(
        ...,
        description="Error message",
    )
    error_type: str = Field(
        default="error",
        description="Error type",
    )


# Alert models


class AlertItem(BaseModel):
    """Single unified alert."""

    id: int = Field(..., description="Alert identifier")
    alert_key: str = Field(..., description="Stable business key, e.g. visit:V-100:late")
    source_type: str
    title: str
    message: str
    description: str = ""
    category: str
    severity: str = Field(..., description="low, medium, high or critical")
    priority: str
    status: str = Field(..., description="Lifecycle status")
    is_read: bool = False
    escalation_level: str = Field(..., description="initial, escalated or critical")
    escalation_count: int = 0
    last_escalated_at: str | None = None
    source_entity_id: str | None = None
    actor_id: str | None = None
    actor_name: str | None = None
    actor_phone: str | None = None
    counterparty_name: str | None = None
    counterparty_address: str | None = None
    location: str | None = None
    scheduled_time: str | None = None
    delay_minutes: int | None = None
    admin_notified: bool = False
    supervisor_notified: bool = False
    push_sent: bool = False
    email_sent: bool = False
    sms_sent: bool = False
    notification_sent_at: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    created_at: str = Field(..., description="Creation timestamp (ISO format)")
    updated_at: str
    resolved_at: str | None = None
    resolved_by: str | None = None
    acknowledged_at: str | None = None
    acknowledged_by: str | None = None
    dismissed_at: str | None = None
    dismissed_by: str | None = None
    archived_at: str | None = None


class AlertsResponse(BaseModel):
    """Response model for listing alerts."""

    alerts: list[AlertItem] = Field(..., description="List of alerts")
    total: int = Field(..., description="Number of alerts matching the filters, across all pages")
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class AlertActionRequest(BaseModel):
    """Operator action on one alert."""

    action: AlertAction = Field(..., description="Action to apply")
    user_id: str = Field(..., min_length=1, max_length=200, description="Operator performing it")


class AlertActionResponse(BaseModel):
    """Response model for an operator action."""

    alert: AlertItem
    action: str
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


class AlertStatsResponse(BaseModel):
    """Dashboard counters; a figure whose query failed is reported as 0."""

    total: int = 0
    active: int = 0
    acknowledged: int = 0
    resolved: int = 0
    dismissed: int = 0
    archived: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    unread: int = 0
    today: int = 0
    this_week: int = 0
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


# Monitoring models


class JobStatusItem(BaseModel):
    """State of one scheduled monitor."""

    name: str
    interval_seconds: float
    jitter_seconds: float
    ticks: int = 0
    errors: int = 0
    running: bool = False
    last_started_at: str | None = None
    last_finished_at: str | None = None
    last_error: str | None = None


class MonitoringStatusResponse(BaseModel):
    """Scheduler state and per-job counters."""

    running: bool
    started_at: str | None = None
    jobs: dict[str, JobStatusItem] = Field(default_factory=dict)


class TickResultResponse(BaseModel):
    """Outcome of a manually triggered monitor tick."""

    job: str
    detections: int = 0
    created: int = 0
    escalated: int = 0
    updated: int = 0
    resolved: int = 0
    skipped: int = 0
    dispatched: int = 0
    errors: int = 0
    error_keys: list[str] = Field(default_factory=list)
    latency_ms: float = Field(..., description="Processing latency in milliseconds")
