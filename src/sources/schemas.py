"""Read-only views of the operational source tables.

The engine never owns these rows; each dataclass carries just the fields
needed to detect a condition and to denormalize display fields onto an
alert record.
"""

from dataclasses import dataclass
from datetime import datetime

# Visit statuses that can still turn into a late-arrival alert.
PENDING_VISIT_STATUSES: tuple[str, ...] = ("scheduled", "late")

# Delivery statuses that can still miss their scheduled time.
OPEN_DELIVERY_STATUSES: tuple[str, ...] = ("pending", "assigned", "in_progress")


@dataclass
class VisitRecord:
    """A row of ``visit_management``.

    ``alert_type`` / ``alert_severity`` / ``alert_message`` / ``priority``
    / ``is_alert_read`` are the raw alert columns other parts of the
    application write directly onto the visit.
    """

    visit_id: str
    scheduled_start_time: datetime
    status: str
    actual_start_time: datetime | None = None
    delegate_id: str | None = None
    delegate_name: str | None = None
    delegate_phone: str | None = None
    delegate_status: str | None = None
    customer_name: str | None = None
    customer_address: str | None = None
    current_location: str | None = None
    is_late: bool = False
    alert_type: str | None = None
    alert_severity: str | None = None
    alert_message: str | None = None
    priority: str | None = None
    is_alert_read: bool = False

    @property
    def has_started(self) -> bool:
        return self.actual_start_time is not None


@dataclass
class RepresentativeMessage:
    """A chat message sent by a field representative."""

    message_id: str
    representative_id: str
    content: str
    created_at: datetime
    message_type: str = "text"
    representative_name: str | None = None
    representative_phone: str | None = None
    representative_email: str | None = None
    representative_status: str | None = None

    @property
    def has_representative(self) -> bool:
        return self.representative_name is not None


@dataclass
class VehicleSnapshot:
    vehicle_id: str
    plate_number: str
    fuel_level_percent: float | None
    driver_name: str | None = None
    current_location: str | None = None
    status: str | None = None


@dataclass
class StockItem:
    """Inventory position of one product in one warehouse."""

    item_id: str
    product_name: str
    available_quantity: float
    minimum_stock_level: float
    warehouse_name: str | None = None

    @property
    def stock_ratio(self) -> float | None:
        """``available / minimum``, or None when no minimum is configured."""
        if self.minimum_stock_level <= 0:
            return None
        return self.available_quantity / self.minimum_stock_level


@dataclass
class DeliveryRecord:
    """A row of ``delivery_tasks``."""

    delivery_id: str
    task_code: str
    scheduled_for: datetime
    status: str
    completed_at: datetime | None = None
    title: str | None = None
    representative_id: str | None = None
    representative_name: str | None = None
    customer_name: str | None = None
    customer_address: str | None = None
    customer_phone: str | None = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None and self.status in OPEN_DELIVERY_STATUSES
