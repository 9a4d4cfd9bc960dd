"""Readers for the operational source tables.

Every read degrades to an empty result when its table is missing or the
database is unreachable: the problem is logged once per table (and again
only after the table has recovered), counted in metrics, and the caller
sees ``[]`` so existing alerts stay untouched for that tick.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import asyncpg

from src.observability.metrics import MetricsCollector
from src.sources.schemas import (
    OPEN_DELIVERY_STATUSES,
    PENDING_VISIT_STATUSES,
    DeliveryRecord,
    RepresentativeMessage,
    StockItem,
    VehicleSnapshot,
    VisitRecord,
)
from src.storage.database import Database

logger = logging.getLogger(__name__)

_SOURCE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_VISIT_COLUMNS = """
    visit_id, scheduled_start_time, actual_start_time, status,
    delegate_id, delegate_name, delegate_phone, delegate_status,
    customer_name, customer_address, current_location, is_late,
    alert_type, alert_severity, alert_message, priority, is_alert_read
"""

# Columns the engine may write back onto a visit.
VISIT_MIRROR_FIELDS: frozenset[str] = frozenset({
    "status",
    "is_late",
    "alert_type",
    "alert_severity",
    "alert_message",
    "admin_notified",
})


def _record_to_visit(record: Any) -> VisitRecord:
    return VisitRecord(
        visit_id=str(record["visit_id"]),
        scheduled_start_time=record["scheduled_start_time"],
        actual_start_time=record["actual_start_time"],
        status=record["status"],
        delegate_id=_opt_str(record["delegate_id"]),
        delegate_name=record["delegate_name"],
        delegate_phone=record["delegate_phone"],
        delegate_status=record["delegate_status"],
        customer_name=record["customer_name"],
        customer_address=record["customer_address"],
        current_location=record["current_location"],
        is_late=bool(record["is_late"]),
        alert_type=record["alert_type"],
        alert_severity=record["alert_severity"],
        alert_message=record["alert_message"],
        priority=record["priority"],
        is_alert_read=bool(record["is_alert_read"]),
    )


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


class SourceRepository:
    """Read (and narrowly write back to) the per-domain source tables."""

    def __init__(
        self,
        database: Database,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._db = database
        self._metrics = metrics
        self._unavailable: set[str] = set()

    @property
    def unavailable_tables(self) -> frozenset[str]:
        return frozenset(self._unavailable)

    async def _read(self, table: str, sql: str, *args: Any) -> list[Any]:
        try:
            rows = await self._db.fetch(sql, *args)
        except _SOURCE_ERRORS as e:
            if table not in self._unavailable:
                logger.warning("Source table %s unavailable, skipping: %s", table, e)
                self._unavailable.add(table)
            if self._metrics is not None:
                self._metrics.source_unavailable.labels(table=table).inc()
            return []

        if table in self._unavailable:
            logger.info("Source table %s available again", table)
            self._unavailable.discard(table)
        return list(rows)

    async def read_visits(self, now: datetime) -> list[VisitRecord]:
        """Visits still pending whose scheduled start is at or before ``now``."""
        rows = await self._read(
            "visit_management",
            f"""
            SELECT {_VISIT_COLUMNS} FROM visit_management
            WHERE status = ANY($1::text[]) AND scheduled_start_time <= $2
            ORDER BY scheduled_start_time
            """,
            list(PENDING_VISIT_STATUSES),
            now,
        )
        return [_record_to_visit(r) for r in rows]

    async def read_visits_by_ids(self, visit_ids: Sequence[str]) -> list[VisitRecord]:
        if not visit_ids:
            return []
        rows = await self._read(
            "visit_management",
            f"SELECT {_VISIT_COLUMNS} FROM visit_management WHERE visit_id::text = ANY($1::text[])",
            list(visit_ids),
        )
        return [_record_to_visit(r) for r in rows]

    async def read_visit_alerts(self) -> list[VisitRecord]:
        """Visits carrying a raw alert in their own alert columns."""
        rows = await self._read(
            "visit_management",
            f"""
            SELECT {_VISIT_COLUMNS} FROM visit_management
            WHERE alert_type IS NOT NULL AND alert_type <> ''
            ORDER BY scheduled_start_time
            """,
        )
        return [_record_to_visit(r) for r in rows]

    async def read_messages(self, since: datetime) -> list[RepresentativeMessage]:
        """Representative chat messages created at or after ``since``.

        Messages whose representative no longer exists come back with no
        representative fields; callers skip them.
        """
        rows = await self._read(
            "chat_messages",
            """
            SELECT m.id, m.representative_id, m.content, m.message_type, m.created_at,
                   r.name AS representative_name, r.phone AS representative_phone,
                   r.email AS representative_email, r.status AS representative_status
            FROM chat_messages m
            LEFT JOIN representatives r ON r.id = m.representative_id
            WHERE m.sender_type = 'representative' AND m.created_at >= $1
            ORDER BY m.created_at
            """,
            since,
        )
        return [
            RepresentativeMessage(
                message_id=str(r["id"]),
                representative_id=str(r["representative_id"]),
                content=r["content"] or "",
                created_at=r["created_at"],
                message_type=r["message_type"] or "text",
                representative_name=r["representative_name"],
                representative_phone=r["representative_phone"],
                representative_email=r["representative_email"],
                representative_status=r["representative_status"],
            )
            for r in rows
        ]

    async def read_vehicles(self) -> list[VehicleSnapshot]:
        rows = await self._read(
            "vehicles",
            """
            SELECT id, plate_number, fuel_level_percent, driver_name,
                   current_location, status
            FROM vehicles
            WHERE status IS DISTINCT FROM 'retired'
            """,
        )
        return [
            VehicleSnapshot(
                vehicle_id=str(r["id"]),
                plate_number=r["plate_number"],
                fuel_level_percent=(
                    None if r["fuel_level_percent"] is None else float(r["fuel_level_percent"])
                ),
                driver_name=r["driver_name"],
                current_location=r["current_location"],
                status=r["status"],
            )
            for r in rows
        ]

    async def read_stock(self) -> list[StockItem]:
        rows = await self._read(
            "inventory",
            """
            SELECT i.id, p.product_name, i.available_quantity, i.minimum_stock_level,
                   w.warehouse_name
            FROM inventory i
            JOIN products p ON p.id = i.product_id
            LEFT JOIN warehouses w ON w.id = i.warehouse_id
            WHERE p.is_active = TRUE AND i.minimum_stock_level > 0
            """,
        )
        return [
            StockItem(
                item_id=str(r["id"]),
                product_name=r["product_name"],
                available_quantity=float(r["available_quantity"] or 0),
                minimum_stock_level=float(r["minimum_stock_level"] or 0),
                warehouse_name=r["warehouse_name"],
            )
            for r in rows
        ]

    async def read_deliveries(self, now: datetime) -> list[DeliveryRecord]:
        """Open delivery tasks scheduled at or before ``now``."""
        rows = await self._read(
            "delivery_tasks",
            """
            SELECT id, task_id, title, status, scheduled_for, completed_at,
                   representative_id, representative_name,
                   customer_name, customer_address, customer_phone
            FROM delivery_tasks
            WHERE status = ANY($1::text[]) AND scheduled_for <= $2
            ORDER BY scheduled_for
            """,
            list(OPEN_DELIVERY_STATUSES),
            now,
        )
        return [
            DeliveryRecord(
                delivery_id=str(r["id"]),
                task_code=r["task_id"] or str(r["id"]),
                scheduled_for=r["scheduled_for"],
                status=r["status"],
                completed_at=r["completed_at"],
                title=r["title"],
                representative_id=_opt_str(r["representative_id"]),
                representative_name=r["representative_name"],
                customer_name=r["customer_name"],
                customer_address=r["customer_address"],
                customer_phone=r["customer_phone"],
            )
            for r in rows
        ]

    async def update_visit(self, visit_id: str, fields: dict[str, Any]) -> bool:
        """Mirror alert state onto a visit row.

        Returns:
            True if a row was updated. Failures are logged, not raised.
        """
        unknown = set(fields) - VISIT_MIRROR_FIELDS
        if unknown:
            raise ValueError(f"Cannot write visit columns: {sorted(unknown)}")
        if not fields:
            return False

        names = sorted(fields)
        assignments = [f"{name} = ${i}" for i, name in enumerate(names, start=2)]
        assignments.append("updated_at = NOW()")
        sql = (
            f"UPDATE visit_management SET {', '.join(assignments)} "
            f"WHERE visit_id::text = $1"
        )
        try:
            result = await self._db.execute(sql, visit_id, *(fields[n] for n in names))
        except _SOURCE_ERRORS as e:
            logger.warning("Failed to mirror alert state onto visit %s: %s", visit_id, e)
            return False
        return result != "UPDATE 0"
