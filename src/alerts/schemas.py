"""Schema definitions for unified alert records.

Maps 1:1 to the ``unified_alerts`` database table. Each record is the
operator-facing view of one real-world occurrence (a late visit, a low
fuel reading, an urgent representative message), identified by a stable
``alert_key`` so repeated detections update the same row.
"""

import json
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Literal

SourceType = Literal[
    "visit",
    "late_visit",
    "vehicle",
    "delivery",
    "warehouse",
    "maintenance",
    "stock",
    "user",
    "message",
    "system",
]

VALID_SOURCE_TYPES: frozenset[str] = frozenset({
    "visit",
    "late_visit",
    "vehicle",
    "delivery",
    "warehouse",
    "maintenance",
    "stock",
    "user",
    "message",
    "system",
})

AlertCategory = Literal["info", "warning", "critical", "success", "urgent"]

VALID_CATEGORIES: frozenset[str] = frozenset({
    "info",
    "warning",
    "critical",
    "success",
    "urgent",
})

AlertSeverity = Literal["low", "medium", "high", "critical"]

VALID_SEVERITIES: frozenset[str] = frozenset({
    "low",
    "medium",
    "high",
    "critical",
})

AlertStatus = Literal[
    "active",
    "acknowledged",
    "escalated",
    "resolved",
    "dismissed",
    "archived",
]

VALID_STATUSES: frozenset[str] = frozenset({
    "active",
    "acknowledged",
    "escalated",
    "resolved",
    "dismissed",
    "archived",
})

OPEN_STATUSES: frozenset[str] = frozenset({"active", "acknowledged", "escalated"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"resolved", "dismissed", "archived"})

EscalationLevel = Literal["initial", "escalated", "critical"]

# Ordered lowest to highest; position is the tier rank.
ESCALATION_LEVELS: tuple[str, ...] = ("initial", "escalated", "critical")

VALID_ESCALATION_LEVELS: frozenset[str] = frozenset(ESCALATION_LEVELS)

Channel = Literal["admin", "supervisor", "push", "email", "sms"]

# Channel name -> boolean flag column on the record.
CHANNEL_FLAGS: dict[str, str] = {
    "admin": "admin_notified",
    "supervisor": "supervisor_notified",
    "push": "push_sent",
    "email": "email_sent",
    "sms": "sms_sent",
}

VALID_CHANNELS: frozenset[str] = frozenset(CHANNEL_FLAGS)

# Actor recorded when the engine (not an operator) changes a record.
SYSTEM_ACTOR = "system"

_DATETIME_FIELDS = frozenset({
    "created_at",
    "updated_at",
    "resolved_at",
    "dismissed_at",
    "acknowledged_at",
    "archived_at",
    "last_escalated_at",
    "scheduled_time",
    "notification_sent_at",
    "admin_notified_at",
    "supervisor_notified_at",
    "push_sent_at",
    "email_sent_at",
    "sms_sent_at",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AlertRecord:
    """A persisted unified alert.

    Attributes:
        alert_key: Stable business key, e.g. ``visit:V-100:late``.
        source_type: Domain that raised the alert.
        title: Short human-readable summary.
        message: Detailed description of the condition.
        id: Store-assigned identifier (None until persisted).
        category / severity / priority: Unified classification vocabulary.
        status: Lifecycle status; open statuses may still escalate.
        escalation_level: Current tier (initial < escalated < critical).
        escalation_count: Number of tier transitions applied so far.
        source_entity_id: Identifier of the originating row (visit id, ...).
        actor_* / counterparty_* / location: Display fields copied at
            synthesis time so history stays readable.
        admin_notified ... sms_sent: Per-channel dispatch flags for the
            current tier, each with an ``*_at`` timestamp.
        notification_sent_at: Last dispatch attempt for the current tier.
        metadata: Condition-specific facts (delay minutes, fuel level, ...).
        tags: Sorted unique labels for filtering.
    """

    alert_key: str
    source_type: str
    title: str
    message: str
    id: int | None = None
    description: str = ""
    category: str = "info"
    severity: str = "medium"
    priority: str = "medium"
    status: str = "active"
    is_read: bool = False
    is_resolved: bool = False
    escalation_level: str = "initial"
    escalation_count: int = 0
    last_escalated_at: datetime | None = None
    source_entity_id: str | None = None
    actor_id: str | None = None
    actor_name: str | None = None
    actor_phone: str | None = None
    counterparty_name: str | None = None
    counterparty_address: str | None = None
    location: str | None = None
    scheduled_time: datetime | None = None
    delay_minutes: int | None = None
    admin_notified: bool = False
    admin_notified_at: datetime | None = None
    supervisor_notified: bool = False
    supervisor_notified_at: datetime | None = None
    push_sent: bool = False
    push_sent_at: datetime | None = None
    email_sent: bool = False
    email_sent_at: datetime | None = None
    sms_sent: bool = False
    sms_sent_at: datetime | None = None
    notification_sent_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    source_system: str | None = None
    created_by: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    dismissed_at: datetime | None = None
    dismissed_by: str | None = None
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    archived_at: datetime | None = None

    def __post_init__(self) -> None:
        _check_choice("source_type", self.source_type, VALID_SOURCE_TYPES)
        _check_choice("category", self.category, VALID_CATEGORIES)
        _check_choice("severity", self.severity, VALID_SEVERITIES)
        _check_choice("priority", self.priority, VALID_SEVERITIES)
        _check_choice("status", self.status, VALID_STATUSES)
        _check_choice("escalation_level", self.escalation_level, VALID_ESCALATION_LEVELS)
        if self.is_resolved and self.status != "resolved":
            raise ValueError(
                f"is_resolved requires status 'resolved', got {self.status!r}"
            )
        self.tags = sorted(set(self.tags))

    @property
    def is_open(self) -> bool:
        """Whether the record can still escalate and dispatch."""
        return self.status in OPEN_STATUSES

    @property
    def escalation_rank(self) -> int:
        return ESCALATION_LEVELS.index(self.escalation_level)

    def channel_flag(self, channel: str) -> bool:
        """Whether ``channel`` was already notified for the current tier."""
        return bool(getattr(self, CHANNEL_FLAGS[channel]))

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, (dict, list)):
                value = json.loads(json.dumps(value, default=str))
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlertRecord":
        """Create an AlertRecord from a dictionary (unknown keys ignored).

        Args:
            data: Dictionary with record fields; timestamps may be ISO strings
                and ``metadata`` may be a JSON string.

        Returns:
            AlertRecord instance.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in _DATETIME_FIELDS and isinstance(value, str):
                value = datetime.fromisoformat(value)
            elif key == "metadata":
                if isinstance(value, str):
                    value = json.loads(value)
                value = dict(value or {})
            elif key == "tags":
                value = list(value or [])
            kwargs[key] = value
        return cls(**kwargs)


def _check_choice(name: str, value: str, valid: frozenset[str]) -> None:
    if value not in valid:
        raise ValueError(
            f"Invalid {name} {value!r}. Must be one of: {sorted(valid)}"
        )
