"""Build unified alert fields from detected source conditions.

A monitor turns a source row into a ``Detection`` (which condition, which
tier, which source record). ``AlertSynthesizer`` turns a detection into an
``AlertDraft``: the title, message, description, tags, metadata and
denormalized display fields the store upserts under the detection's key.
No I/O happens here; applying a draft is the service's job.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.alerts.escalation import delay_minutes
from src.alerts.mappings import (
    category_for,
    map_raw_priority,
    map_raw_severity,
    priority_for,
    severity_for_level,
)
from src.alerts.rules import is_urgent_message
from src.alerts.schemas import VALID_SOURCE_TYPES
from src.sources.schemas import (
    DeliveryRecord,
    RepresentativeMessage,
    StockItem,
    VehicleSnapshot,
    VisitRecord,
)

DETECTION_KINDS: frozenset[str] = frozenset({
    "late_visit",
    "visit_alert",
    "message",
    "vehicle",
    "stock",
    "delivery",
})

_RECOMMENDED_ACTIONS = {
    "critical": "URGENT: Call agent immediately or reassign visit to backup agent",
    "escalated": "Call agent or reassign visit to supervisor",
    "initial": "Call agent or reassign visit",
}


@dataclass
class Detection:
    """One observation of a condition on a source record.

    Attributes:
        kind: Which builder renders the alert (see ``DETECTION_KINDS``).
        alert_key: Stable key shared by every detection of the occurrence.
        source_type: Unified source type of the resulting alert.
        level: Escalation tier computed by the classifier.
        source: The source record the condition was observed on.
        observed_at: Evaluation time of the tick.
        cleared: The condition no longer holds; resolve instead of upsert.
        severity: Explicit severity; derived from ``level`` when None.
        facts: Condition-specific values copied into metadata.
    """

    kind: str
    alert_key: str
    source_type: str
    level: str
    source: Any
    observed_at: datetime
    cleared: bool = False
    severity: str | None = None
    facts: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in DETECTION_KINDS:
            raise ValueError(f"Unknown detection kind {self.kind!r}")
        if self.source_type not in VALID_SOURCE_TYPES:
            raise ValueError(f"Invalid source_type {self.source_type!r}")


@dataclass
class AlertDraft:
    """Field values to upsert under ``alert_key``."""

    alert_key: str
    fields: dict[str, Any]

    @property
    def level(self) -> str:
        return self.fields["escalation_level"]

    @property
    def severity(self) -> str:
        return self.fields["severity"]


class AlertSynthesizer:
    """Render detections into alert drafts, one builder per detection kind."""

    def __init__(self, created_by: str = "alert_engine") -> None:
        self._created_by = created_by
        self._builders: dict[str, Callable[[Detection], dict[str, Any]]] = {
            "late_visit": self._late_visit,
            "visit_alert": self._visit_alert,
            "message": self._message,
            "vehicle": self._vehicle,
            "stock": self._stock,
            "delivery": self._delivery,
        }

    def synthesize(self, detection: Detection) -> AlertDraft:
        """Build the draft for a (non-cleared) detection."""
        if detection.cleared:
            raise ValueError(f"Cleared detection {detection.alert_key} has nothing to draft")

        fields = self._builders[detection.kind](detection)
        severity = fields.get("severity") or detection.severity or severity_for_level(detection.level)
        fields.setdefault("category", category_for(severity))
        fields.setdefault("priority", priority_for(severity))
        fields["severity"] = severity
        fields["source_type"] = detection.source_type
        fields["escalation_level"] = detection.level
        fields["created_by"] = fields.get("created_by") or self._created_by
        fields["metadata"] = {**fields.get("metadata", {}), **detection.facts}
        fields["tags"] = sorted(set(fields.get("tags", [])))
        return AlertDraft(alert_key=detection.alert_key, fields=fields)

    def _late_visit(self, detection: Detection) -> dict[str, Any]:
        visit: VisitRecord = detection.source
        level = detection.level
        delay = delay_minutes(visit.scheduled_start_time, detection.observed_at)
        agent = visit.delegate_name or "Unknown agent"
        client = visit.customer_name or "unknown client"
        status = visit.delegate_status or "unknown"
        scheduled = visit.scheduled_start_time.strftime("%H:%M")

        label = {"critical": "CRITICAL", "escalated": "ESCALATED"}.get(level, "WARNING")
        title = f"Late Visit Alert - {label}: Visit #{visit.visit_id}"
        message = (
            f"Agent {agent} hasn't arrived for Visit #{visit.visit_id} (Client: {client}). "
            f"Scheduled: {scheduled}. Delay: {delay} min. "
            f"Last known status: {status}. Action: {_RECOMMENDED_ACTIONS[level]}"
        )
        description = (
            f"Agent {agent} ({visit.delegate_phone or 'N/A'}) is {delay} minutes late "
            f"for Visit #{visit.visit_id} at {client}, {visit.customer_address or 'no address'}."
        )
        return {
            "title": title,
            "message": message,
            "description": description,
            "source_entity_id": visit.visit_id,
            "actor_id": visit.delegate_id,
            "actor_name": visit.delegate_name,
            "actor_phone": visit.delegate_phone,
            "counterparty_name": visit.customer_name,
            "counterparty_address": visit.customer_address,
            "location": visit.current_location or "Location not updated",
            "scheduled_time": visit.scheduled_start_time,
            "delay_minutes": delay,
            "source_system": "visit_management",
            "created_by": "late_visit_monitor",
            "tags": ["visit", "late_visit"],
            "metadata": {
                "visit_id": visit.visit_id,
                "delay_minutes": delay,
                "last_known_status": status,
                "escalation_level": level,
            },
        }

    def _visit_alert(self, detection: Detection) -> dict[str, Any]:
        visit: VisitRecord = detection.source
        severity = map_raw_severity(visit.alert_severity)
        alert_type = visit.alert_type or "general"
        agent = visit.delegate_name or "Unknown agent"
        delay = None
        if visit.actual_start_time is None and detection.observed_at > visit.scheduled_start_time:
            delay = delay_minutes(visit.scheduled_start_time, detection.observed_at)

        return {
            "title": f"Visit alert ({alert_type.replace('_', ' ')}): Visit #{visit.visit_id}",
            "message": visit.alert_message or f"{alert_type} reported for Visit #{visit.visit_id}",
            "description": (
                f"Agent {agent}, client {visit.customer_name or 'unknown'}. "
                f"Visit status: {visit.status}."
            ),
            "severity": severity,
            "category": category_for(severity),
            "priority": (
                map_raw_priority(visit.priority) if visit.priority else priority_for(severity)
            ),
            "source_entity_id": visit.visit_id,
            "actor_id": visit.delegate_id,
            "actor_name": visit.delegate_name,
            "actor_phone": visit.delegate_phone,
            "counterparty_name": visit.customer_name,
            "counterparty_address": visit.customer_address,
            "location": visit.current_location,
            "scheduled_time": visit.scheduled_start_time,
            "delay_minutes": delay,
            "source_system": "visit_management",
            "created_by": "visit_alert_sync",
            "tags": ["visit", "synced", alert_type],
            "metadata": {
                "visit_id": visit.visit_id,
                "raw_alert_type": visit.alert_type,
                "raw_severity": visit.alert_severity,
                "raw_priority": visit.priority,
            },
        }

    def _message(self, detection: Detection) -> dict[str, Any]:
        msg: RepresentativeMessage = detection.source
        severity = detection.severity or "low"
        name = msg.representative_name or "Unknown representative"
        urgency = {"critical": "URGENT: ", "high": "IMPORTANT: "}.get(severity, "")
        content = msg.content
        short = content if len(content) <= 100 else content[:100] + "..."
        excerpt = content if len(content) <= 200 else content[:200] + "..."

        tags = ["representative", "message", "chat_support"]
        tags.extend({
            "critical": ["urgent", "critical"],
            "high": ["important", "high_priority"],
            "medium": ["medium_priority"],
        }.get(severity, []))
        tags.extend({
            "location": ["location"],
            "file": ["file_attachment"],
            "image": ["image"],
        }.get(msg.message_type, []))

        return {
            "title": f"{urgency}Message from {name}",
            "message": f'Representative sent a message: "{short}"',
            "description": (
                f"Message from {name} ({msg.representative_phone or 'N/A'}) at "
                f"{msg.created_at.isoformat()}. Severity: {severity.upper()}. "
                f"Message type: {msg.message_type}. Content: {excerpt}"
            ),
            "severity": severity,
            "source_entity_id": msg.message_id,
            "actor_id": msg.representative_id,
            "actor_name": msg.representative_name,
            "actor_phone": msg.representative_phone,
            "location": "Chat Support",
            "source_system": "chat_support",
            "created_by": "representative_message_monitor",
            "tags": tags,
            "metadata": {
                "original_message_id": msg.message_id,
                "message_type": msg.message_type,
                "representative_status": msg.representative_status,
                "message_length": len(content),
                "is_urgent": is_urgent_message(content),
            },
        }

    def _vehicle(self, detection: Detection) -> dict[str, Any]:
        vehicle: VehicleSnapshot = detection.source
        fuel = vehicle.fuel_level_percent
        return {
            "title": f"Low fuel: vehicle {vehicle.plate_number}",
            "message": (
                f"Vehicle {vehicle.plate_number} is at {fuel:.0f}% fuel"
                + (f" (driver: {vehicle.driver_name})" if vehicle.driver_name else "")
                + ". Schedule refuelling."
            ),
            "source_entity_id": vehicle.vehicle_id,
            "actor_name": vehicle.driver_name,
            "location": vehicle.current_location,
            "source_system": "vehicles",
            "created_by": "vehicle_monitor",
            "tags": ["vehicle", "fuel"],
            "metadata": {
                "vehicle_id": vehicle.vehicle_id,
                "plate_number": vehicle.plate_number,
                "fuel_level_percent": fuel,
            },
        }

    def _stock(self, detection: Detection) -> dict[str, Any]:
        item: StockItem = detection.source
        where = f" in {item.warehouse_name}" if item.warehouse_name else ""
        return {
            "title": f"Low stock: {item.product_name}",
            "message": (
                f"{item.product_name}{where} is at {item.available_quantity:g} units "
                f"(minimum {item.minimum_stock_level:g})."
            ),
            "source_entity_id": item.item_id,
            "location": item.warehouse_name,
            "source_system": "inventory",
            "created_by": "stock_monitor",
            "tags": ["stock", "warehouse"],
            "metadata": {
                "product_name": item.product_name,
                "available_quantity": item.available_quantity,
                "minimum_stock_level": item.minimum_stock_level,
                "stock_ratio": item.stock_ratio,
            },
        }

    def _delivery(self, detection: Detection) -> dict[str, Any]:
        delivery: DeliveryRecord = detection.source
        delay = delay_minutes(delivery.scheduled_for, detection.observed_at)
        driver = delivery.representative_name or "unassigned"
        return {
            "title": f"Delayed delivery {delivery.task_code}",
            "message": (
                f"Delivery {delivery.task_code} for {delivery.customer_name or 'unknown customer'} "
                f"is {delay} minutes past its scheduled time (driver: {driver})."
            ),
            "description": delivery.title or "",
            "source_entity_id": delivery.delivery_id,
            "actor_id": delivery.representative_id,
            "actor_name": delivery.representative_name,
            "counterparty_name": delivery.customer_name,
            "counterparty_address": delivery.customer_address,
            "scheduled_time": delivery.scheduled_for,
            "delay_minutes": delay,
            "source_system": "delivery_tasks",
            "created_by": "delivery_monitor",
            "tags": ["delivery", "delayed"],
            "metadata": {
                "task_id": delivery.task_code,
                "delay_minutes": delay,
                "delivery_status": delivery.status,
            },
        }

