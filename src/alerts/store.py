"""Alert store contract and the in-memory adapter.

``AlertStore`` is the persistence boundary of the engine. The one place
where concurrency correctness matters is ``upsert_alert``: it must be
atomic per ``alert_key`` and may only ever raise ``escalation_level``.
The Postgres adapter (``AlertRepository``) enforces that in SQL; the
in-memory adapter below serializes writes with an ``asyncio.Lock`` and is
used for local runs and tests.
"""

import asyncio
import dataclasses
import itertools
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from src.alerts.escalation import level_rank
from src.alerts.schemas import (
    CHANNEL_FLAGS,
    OPEN_STATUSES,
    SYSTEM_ACTOR,
    AlertRecord,
)

# Fields that change only together with a tier advance.
ESCALATION_GUARDED_FIELDS: frozenset[str] = frozenset(
    {"escalation_level", "severity", "category", "priority"}
)

# Fields an upsert may write; lifecycle, dispatch and identity columns are
# owned by the store.
UPSERT_FIELDS: frozenset[str] = frozenset({
    "source_type",
    "title",
    "message",
    "description",
    "category",
    "severity",
    "priority",
    "escalation_level",
    "source_entity_id",
    "actor_id",
    "actor_name",
    "actor_phone",
    "counterparty_name",
    "counterparty_address",
    "location",
    "scheduled_time",
    "delay_minutes",
    "metadata",
    "tags",
    "source_system",
    "created_by",
})

# Insert-only fields that later detections must not rewrite.
INSERT_ONLY_FIELDS: frozenset[str] = frozenset({"source_type", "created_by"})

# Lifecycle fields operator actions may change.
OPERATOR_FIELDS: frozenset[str] = frozenset({
    "status",
    "is_read",
    "is_resolved",
    "resolved_at",
    "resolved_by",
    "dismissed_at",
    "dismissed_by",
    "acknowledged_at",
    "acknowledged_by",
    "archived_at",
})


class AlertStoreError(Exception):
    """Raised when the alert store cannot complete an operation."""


@dataclass
class AlertFilter:
    """Filter criteria for querying and counting alerts (AND-combined)."""

    status: str | None = None
    severity: str | None = None
    source_type: str | None = None
    is_read: bool | None = None
    source_entity_id: str | None = None
    open_only: bool = False
    created_after: datetime | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, record: AlertRecord) -> bool:
        if self.status is not None and record.status != self.status:
            return False
        if self.severity is not None and record.severity != self.severity:
            return False
        if self.source_type is not None and record.source_type != self.source_type:
            return False
        if self.is_read is not None and record.is_read != self.is_read:
            return False
        if (
            self.source_entity_id is not None
            and record.source_entity_id != self.source_entity_id
        ):
            return False
        if self.open_only and not record.is_open:
            return False
        if self.created_after is not None and record.created_at < self.created_after:
            return False
        return True


@dataclass
class UpsertResult:
    """Outcome of ``AlertStore.upsert_alert``.

    Attributes:
        record: The stored record after the write.
        created: A new record was inserted.
        escalated: An existing record advanced at least one tier.
        skipped: The key belongs to a record an operator closed; nothing
            was written.
        reopened: A previously auto-resolved record was archived and a new
            occurrence inserted in its place.
    """

    record: AlertRecord
    created: bool = False
    escalated: bool = False
    skipped: bool = False
    reopened: bool = False


class AlertStore(ABC):
    """Persistence contract for unified alert records."""

    async def ensure_schema(self) -> None:
        """Create backing tables if needed (no-op by default)."""

    @abstractmethod
    async def upsert_alert(
        self,
        alert_key: str,
        fields: dict[str, Any],
        escalation_guard: bool = True,
        now: datetime | None = None,
    ) -> UpsertResult:
        """Insert or update the live record for ``alert_key``.

        With ``escalation_guard`` the stored level is only ever raised:
        ``escalation_level`` (and severity/category/priority) are written
        only when the new level outranks the stored one, in which case
        ``escalation_count`` is incremented, ``last_escalated_at`` stamped
        and the per-channel dispatch flags reset for the new tier.
        """

    @abstractmethod
    async def get_alert(self, alert_id: int) -> AlertRecord | None:
        """Fetch a record by store id."""

    @abstractmethod
    async def get_by_key(self, alert_key: str) -> AlertRecord | None:
        """Fetch the non-archived record for ``alert_key``."""

    @abstractmethod
    async def query_alerts(self, alert_filter: AlertFilter) -> list[AlertRecord]:
        """List records matching the filter, newest first."""

    @abstractmethod
    async def count_alerts(self, alert_filter: AlertFilter) -> int:
        """Count records matching the filter (limit/offset ignored)."""

    @abstractmethod
    async def resolve_alert(
        self,
        alert_key: str,
        actor: str = SYSTEM_ACTOR,
        at: datetime | None = None,
    ) -> AlertRecord | None:
        """Resolve the open record for ``alert_key``; None if nothing open."""

    @abstractmethod
    async def mark_dispatched(
        self,
        alert_id: int,
        channels: Iterable[str],
        at: datetime | None = None,
    ) -> AlertRecord | None:
        """Set delivered channel flags and stamp ``notification_sent_at``."""

    @abstractmethod
    async def advance_level(
        self,
        alert_id: int,
        fields: dict[str, Any],
        at: datetime | None = None,
    ) -> UpsertResult | None:
        """Raise an open record's tier under the escalation guard.

        ``fields`` holds ``escalation_level`` plus optional severity,
        category and priority to take along with the advance. Returns None
        if the record does not exist or is closed.
        """

    @abstractmethod
    async def update_alert(
        self,
        alert_id: int,
        fields: dict[str, Any],
        allowed_statuses: frozenset[str] | None = None,
    ) -> AlertRecord | None:
        """Apply operator-driven field changes.

        When ``allowed_statuses`` is given the write only happens if the
        current status is one of them. Returns None if nothing was updated.
        """


def _now(at: datetime | None) -> datetime:
    return at or datetime.now(timezone.utc)


def check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    """Reject writes to columns outside ``allowed``."""
    unknown = set(fields) - allowed
    if unknown:
        raise AlertStoreError(f"Unsupported fields: {sorted(unknown)}")
    return dict(fields)


def apply_escalation(record: AlertRecord, fields: dict[str, Any], now: datetime) -> bool:
    """Apply guarded tier fields to ``record`` in place.

    Returns:
        True if the record advanced to a higher tier.
    """
    new_level = fields.get("escalation_level", record.escalation_level)
    if level_rank(new_level) <= level_rank(record.escalation_level):
        return False

    for name in ESCALATION_GUARDED_FIELDS:
        if name in fields:
            setattr(record, name, fields[name])
    record.escalation_count += 1
    record.last_escalated_at = now
    for flag in CHANNEL_FLAGS.values():
        setattr(record, flag, False)
        setattr(record, f"{flag}_at", None)
    return True


class InMemoryAlertStore(AlertStore):
    """Process-local store with the same semantics as the Postgres adapter."""

    def __init__(self) -> None:
        self._records: dict[int, AlertRecord] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    def _live(self, alert_key: str) -> AlertRecord | None:
        for record in self._records.values():
            if record.alert_key == alert_key and record.status != "archived":
                return record
        return None

    def _insert(self, alert_key: str, fields: dict[str, Any], now: datetime) -> AlertRecord:
        record = AlertRecord(
            id=next(self._ids),
            alert_key=alert_key,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._records[record.id] = record
        return dataclasses.replace(record)

    async def upsert_alert(
        self,
        alert_key: str,
        fields: dict[str, Any],
        escalation_guard: bool = True,
        now: datetime | None = None,
    ) -> UpsertResult:
        now = _now(now)
        fields = check_fields(fields, UPSERT_FIELDS)

        async with self._lock:
            existing = self._live(alert_key)
            reopened = False

            if existing is not None and not existing.is_open:
                if existing.status == "resolved" and existing.resolved_by == SYSTEM_ACTOR:
                    existing.status = "archived"
                    existing.is_resolved = False
                    existing.archived_at = now
                    existing.updated_at = now
                    existing = None
                    reopened = True
                else:
                    return UpsertResult(record=dataclasses.replace(existing), skipped=True)

            if existing is None:
                record = self._insert(alert_key, fields, now)
                return UpsertResult(record=record, created=True, reopened=reopened)

            for name, value in fields.items():
                if name in ESCALATION_GUARDED_FIELDS or name in INSERT_ONLY_FIELDS:
                    continue
                setattr(existing, name, value)
            if "tags" in fields:
                existing.tags = sorted(set(fields["tags"]))

            if escalation_guard:
                escalated = apply_escalation(existing, fields, now)
            else:
                previous = existing.escalation_rank
                for name in ESCALATION_GUARDED_FIELDS:
                    if name in fields:
                        setattr(existing, name, fields[name])
                escalated = existing.escalation_rank > previous
                if escalated:
                    existing.escalation_count += 1
                    existing.last_escalated_at = now
            existing.updated_at = now
            return UpsertResult(record=dataclasses.replace(existing), escalated=escalated)

    async def get_alert(self, alert_id: int) -> AlertRecord | None:
        record = self._records.get(alert_id)
        return dataclasses.replace(record) if record else None

    async def get_by_key(self, alert_key: str) -> AlertRecord | None:
        record = self._live(alert_key)
        return dataclasses.replace(record) if record else None

    async def query_alerts(self, alert_filter: AlertFilter) -> list[AlertRecord]:
        matched = [r for r in self._records.values() if alert_filter.matches(r)]
        matched.sort(key=lambda r: (r.created_at, r.id or 0), reverse=True)
        end = None
        if alert_filter.limit is not None:
            end = alert_filter.offset + alert_filter.limit
        return [dataclasses.replace(r) for r in matched[alert_filter.offset:end]]

    async def count_alerts(self, alert_filter: AlertFilter) -> int:
        return sum(1 for r in self._records.values() if alert_filter.matches(r))

    async def resolve_alert(
        self,
        alert_key: str,
        actor: str = SYSTEM_ACTOR,
        at: datetime | None = None,
    ) -> AlertRecord | None:
        now = _now(at)
        async with self._lock:
            record = self._live(alert_key)
            if record is None or not record.is_open:
                return None
            record.status = "resolved"
            record.is_resolved = True
            record.resolved_at = now
            record.resolved_by = actor
            record.updated_at = now
            return dataclasses.replace(record)

    async def mark_dispatched(
        self,
        alert_id: int,
        channels: Iterable[str],
        at: datetime | None = None,
    ) -> AlertRecord | None:
        now = _now(at)
        async with self._lock:
            record = self._records.get(alert_id)
            if record is None:
                return None
            for channel in channels:
                flag = CHANNEL_FLAGS[channel]
                setattr(record, flag, True)
                setattr(record, f"{flag}_at", now)
            record.notification_sent_at = now
            record.updated_at = now
            return dataclasses.replace(record)

    async def advance_level(
        self,
        alert_id: int,
        fields: dict[str, Any],
        at: datetime | None = None,
    ) -> UpsertResult | None:
        now = _now(at)
        fields = check_fields(fields, ESCALATION_GUARDED_FIELDS)
        async with self._lock:
            record = self._records.get(alert_id)
            if record is None or record.status not in OPEN_STATUSES:
                return None
            escalated = apply_escalation(record, fields, now)
            if escalated:
                record.updated_at = now
            return UpsertResult(record=dataclasses.replace(record), escalated=escalated)

    async def update_alert(
        self,
        alert_id: int,
        fields: dict[str, Any],
        allowed_statuses: frozenset[str] | None = None,
    ) -> AlertRecord | None:
        fields = check_fields(fields, OPERATOR_FIELDS)
        async with self._lock:
            record = self._records.get(alert_id)
            if record is None:
                return None
            if allowed_statuses is not None and record.status not in allowed_statuses:
                return None
            # replace() re-runs validation on the merged record
            candidate = dataclasses.replace(
                record, **fields, updated_at=datetime.now(timezone.utc),
            )
            self._records[alert_id] = candidate
            return dataclasses.replace(candidate)
