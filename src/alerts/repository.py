"""Postgres adapter for the unified alert store.

Follows the SourceRepository pattern over asyncpg: SQL kept next to the
methods that run it, a dynamic WHERE builder with an incremental
``param_idx``, and ``_row_to_alert`` converting records back to dataclasses.

The escalation guard lives in SQL. ``escalation_rank`` is a stored
generated column, and the ON CONFLICT branch of the upsert only takes the
incoming tier when its rank is strictly higher, so concurrent writers can
only ever raise the level.
"""

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import asyncpg

from src.alerts.escalation import level_rank
from src.alerts.schemas import CHANNEL_FLAGS, OPEN_STATUSES, SYSTEM_ACTOR, AlertRecord
from src.alerts.store import (
    ESCALATION_GUARDED_FIELDS,
    INSERT_ONLY_FIELDS,
    OPERATOR_FIELDS,
    UPSERT_FIELDS,
    AlertFilter,
    AlertStore,
    AlertStoreError,
    UpsertResult,
    check_fields,
)
from src.storage.database import Database

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS unified_alerts (
    id                      BIGSERIAL PRIMARY KEY,
    alert_key               TEXT NOT NULL,
    source_type             TEXT NOT NULL,
    title                   TEXT NOT NULL,
    message                 TEXT NOT NULL,
    description             TEXT NOT NULL DEFAULT '',
    category                TEXT NOT NULL DEFAULT 'info',
    severity                TEXT NOT NULL DEFAULT 'medium',
    priority                TEXT NOT NULL DEFAULT 'medium',
    status                  TEXT NOT NULL DEFAULT 'active',
    is_read                 BOOLEAN NOT NULL DEFAULT FALSE,
    is_resolved             BOOLEAN NOT NULL DEFAULT FALSE,
    escalation_level        TEXT NOT NULL DEFAULT 'initial',
    escalation_rank         SMALLINT GENERATED ALWAYS AS (
        CASE escalation_level
            WHEN 'critical' THEN 2
            WHEN 'escalated' THEN 1
            ELSE 0
        END
    ) STORED,
    escalation_count        INTEGER NOT NULL DEFAULT 0,
    last_escalated_at       TIMESTAMPTZ,
    source_entity_id        TEXT,
    actor_id                TEXT,
    actor_name              TEXT,
    actor_phone             TEXT,
    counterparty_name       TEXT,
    counterparty_address    TEXT,
    location                TEXT,
    scheduled_time          TIMESTAMPTZ,
    delay_minutes           INTEGER,
    admin_notified          BOOLEAN NOT NULL DEFAULT FALSE,
    admin_notified_at       TIMESTAMPTZ,
    supervisor_notified     BOOLEAN NOT NULL DEFAULT FALSE,
    supervisor_notified_at  TIMESTAMPTZ,
    push_sent               BOOLEAN NOT NULL DEFAULT FALSE,
    push_sent_at            TIMESTAMPTZ,
    email_sent              BOOLEAN NOT NULL DEFAULT FALSE,
    email_sent_at           TIMESTAMPTZ,
    sms_sent                BOOLEAN NOT NULL DEFAULT FALSE,
    sms_sent_at             TIMESTAMPTZ,
    notification_sent_at    TIMESTAMPTZ,
    metadata                JSONB NOT NULL DEFAULT '{}',
    tags                    TEXT[] NOT NULL DEFAULT '{}',
    source_system           TEXT,
    created_by              TEXT,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    resolved_at             TIMESTAMPTZ,
    resolved_by             TEXT,
    dismissed_at            TIMESTAMPTZ,
    dismissed_by            TEXT,
    acknowledged_at         TIMESTAMPTZ,
    acknowledged_by         TEXT,
    archived_at             TIMESTAMPTZ,
    CONSTRAINT unified_alerts_resolved_status
        CHECK (NOT is_resolved OR status = 'resolved')
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_unified_alerts_live_key
    ON unified_alerts(alert_key) WHERE status <> 'archived';
CREATE INDEX IF NOT EXISTS idx_unified_alerts_status
    ON unified_alerts(status);
CREATE INDEX IF NOT EXISTS idx_unified_alerts_created_at
    ON unified_alerts(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_unified_alerts_source
    ON unified_alerts(source_type, source_entity_id);
"""

_OPEN_STATUS_LIST = sorted(OPEN_STATUSES)


class AlertRepository(AlertStore):
    """``AlertStore`` backed by the ``unified_alerts`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def ensure_schema(self) -> None:
        """Create the unified_alerts table and indexes (idempotent)."""
        await self._db.execute(_CREATE_TABLE_SQL)
        logger.info("unified_alerts table ensured")

    async def upsert_alert(
        self,
        alert_key: str,
        fields: dict[str, Any],
        escalation_guard: bool = True,
        now: datetime | None = None,
    ) -> UpsertResult:
        """Insert or update the live record for ``alert_key``.

        Runs in one transaction: lock the live row, archive it if it was
        auto-resolved, skip it if an operator closed it, then issue a single
        INSERT ... ON CONFLICT whose update branch carries the escalation
        guard.
        """
        now = now or datetime.now(timezone.utc)
        fields = check_fields(fields, UPSERT_FIELDS)

        try:
            async with self._db.transaction() as conn:
                existing = await conn.fetchrow(
                    """
                    SELECT * FROM unified_alerts
                    WHERE alert_key = $1 AND status <> 'archived'
                    FOR UPDATE
                    """,
                    alert_key,
                )

                reopened = False
                if existing is not None and existing["status"] not in OPEN_STATUSES:
                    if (
                        existing["status"] == "resolved"
                        and existing["resolved_by"] == SYSTEM_ACTOR
                    ):
                        await conn.execute(
                            """
                            UPDATE unified_alerts
                            SET status = 'archived', is_resolved = FALSE,
                                archived_at = $2, updated_at = $2
                            WHERE id = $1
                            """,
                            existing["id"],
                            now,
                        )
                        reopened = True
                    else:
                        return UpsertResult(record=_row_to_alert(existing), skipped=True)

                sql, params = _build_upsert(alert_key, fields, escalation_guard, now)
                row = await conn.fetchrow(sql, *params)
                if row is None:
                    # A concurrent writer closed the record between lock and write.
                    current = await conn.fetchrow(
                        "SELECT * FROM unified_alerts WHERE alert_key = $1 AND status <> 'archived'",
                        alert_key,
                    )
                    return UpsertResult(record=_row_to_alert(current), skipped=True)
        except asyncpg.PostgresError as e:
            raise AlertStoreError(f"Upsert failed for {alert_key}: {e}") from e

        record = _row_to_alert(row)
        inserted = bool(row["inserted"])
        escalated = not inserted and record.last_escalated_at == now
        return UpsertResult(
            record=record,
            created=inserted,
            escalated=escalated,
            reopened=reopened,
        )

    async def get_alert(self, alert_id: int) -> AlertRecord | None:
        row = await self._db.fetchrow("SELECT * FROM unified_alerts WHERE id = $1", alert_id)
        if row is None:
            return None
        return _row_to_alert(row)

    async def get_by_key(self, alert_key: str) -> AlertRecord | None:
        row = await self._db.fetchrow(
            "SELECT * FROM unified_alerts WHERE alert_key = $1 AND status <> 'archived'",
            alert_key,
        )
        if row is None:
            return None
        return _row_to_alert(row)

    async def query_alerts(self, alert_filter: AlertFilter) -> list[AlertRecord]:
        """List alerts matching the filter, newest first."""
        where_clause, params = _build_where(alert_filter)
        param_idx = len(params) + 1

        sql = f"""
            SELECT * FROM unified_alerts
            {where_clause}
            ORDER BY created_at DESC, id DESC
        """
        if alert_filter.limit is not None:
            sql += f" LIMIT ${param_idx}"
            params.append(alert_filter.limit)
            param_idx += 1
        sql += f" OFFSET ${param_idx}"
        params.append(alert_filter.offset)

        rows = await self._db.fetch(sql, *params)
        return [_row_to_alert(row) for row in rows]

    async def count_alerts(self, alert_filter: AlertFilter) -> int:
        where_clause, params = _build_where(alert_filter)
        count = await self._db.fetchval(
            f"SELECT COUNT(*) FROM unified_alerts {where_clause}", *params,
        )
        return count or 0

    async def resolve_alert(
        self,
        alert_key: str,
        actor: str = SYSTEM_ACTOR,
        at: datetime | None = None,
    ) -> AlertRecord | None:
        now = at or datetime.now(timezone.utc)
        row = await self._db.fetchrow(
            """
            UPDATE unified_alerts
            SET status = 'resolved', is_resolved = TRUE,
                resolved_at = $2, resolved_by = $3, updated_at = $2
            WHERE alert_key = $1 AND status = ANY($4::text[])
            RETURNING *
            """,
            alert_key,
            now,
            actor,
            _OPEN_STATUS_LIST,
        )
        if row is None:
            return None
        return _row_to_alert(row)

    async def mark_dispatched(
        self,
        alert_id: int,
        channels: Iterable[str],
        at: datetime | None = None,
    ) -> AlertRecord | None:
        now = at or datetime.now(timezone.utc)
        assignments = ["notification_sent_at = $2", "updated_at = $2"]
        for channel in sorted(set(channels)):
            flag = CHANNEL_FLAGS[channel]
            assignments.append(f"{flag} = TRUE")
            assignments.append(f"{flag}_at = $2")

        row = await self._db.fetchrow(
            f"""
            UPDATE unified_alerts SET {", ".join(assignments)}
            WHERE id = $1
            RETURNING *
            """,
            alert_id,
            now,
        )
        if row is None:
            return None
        return _row_to_alert(row)

    async def advance_level(
        self,
        alert_id: int,
        fields: dict[str, Any],
        at: datetime | None = None,
    ) -> UpsertResult | None:
        now = at or datetime.now(timezone.utc)
        fields = check_fields(fields, ESCALATION_GUARDED_FIELDS)
        level = fields.get("escalation_level")
        if level is None:
            raise AlertStoreError("advance_level requires escalation_level")

        params: list[Any] = [alert_id, now, _OPEN_STATUS_LIST, level_rank(level)]
        assignments = [
            "escalation_count = escalation_count + 1",
            "last_escalated_at = $2",
            "updated_at = $2",
            *_reset_flags_sql(),
        ]
        for name in sorted(fields):
            params.append(fields[name])
            assignments.append(f"{name} = ${len(params)}")

        row = await self._db.fetchrow(
            f"""
            UPDATE unified_alerts SET {", ".join(assignments)}
            WHERE id = $1 AND status = ANY($3::text[]) AND escalation_rank < $4
            RETURNING *
            """,
            *params,
        )
        if row is not None:
            return UpsertResult(record=_row_to_alert(row), escalated=True)

        current = await self.get_alert(alert_id)
        if current is None or not current.is_open:
            return None
        return UpsertResult(record=current)

    async def update_alert(
        self,
        alert_id: int,
        fields: dict[str, Any],
        allowed_statuses: frozenset[str] | None = None,
    ) -> AlertRecord | None:
        fields = check_fields(fields, OPERATOR_FIELDS)
        params: list[Any] = [alert_id]
        assignments = ["updated_at = NOW()"]
        for name in sorted(fields):
            params.append(fields[name])
            assignments.append(f"{name} = ${len(params)}")

        condition = "id = $1"
        if allowed_statuses is not None:
            params.append(sorted(allowed_statuses))
            condition += f" AND status = ANY(${len(params)}::text[])"

        row = await self._db.fetchrow(
            f"""
            UPDATE unified_alerts SET {", ".join(assignments)}
            WHERE {condition}
            RETURNING *
            """,
            *params,
        )
        if row is None:
            return None
        return _row_to_alert(row)


def _reset_flags_sql() -> list[str]:
    assignments = []
    for flag in CHANNEL_FLAGS.values():
        assignments.append(f"{flag} = FALSE")
        assignments.append(f"{flag}_at = NULL")
    return assignments


def _encode(name: str, value: Any) -> Any:
    if name == "metadata":
        return json.dumps(value or {}, default=str)
    if name == "tags":
        return sorted(set(value or []))
    return value


def _build_upsert(
    alert_key: str,
    fields: dict[str, Any],
    escalation_guard: bool,
    now: datetime,
) -> tuple[str, list[Any]]:
    """Build the guarded INSERT ... ON CONFLICT statement.

    Parameter layout: $1 alert_key, $2 now, $3 incoming escalation rank,
    then one parameter per field in sorted order.
    """
    names = sorted(fields)
    incoming_level = fields.get("escalation_level", "initial")
    params: list[Any] = [alert_key, now, level_rank(incoming_level)]

    columns = ["alert_key", "created_at", "updated_at"]
    values = ["$1", "$2", "$2"]
    for name in names:
        params.append(_encode(name, fields[name]))
        columns.append(name)
        cast = "::jsonb" if name == "metadata" else ""
        values.append(f"${len(params)}{cast}")

    if "escalation_level" in fields:
        advance = "$3 > unified_alerts.escalation_rank"
    else:
        advance = "FALSE"

    assignments = ["updated_at = $2"]
    for name in names:
        if name in INSERT_ONLY_FIELDS:
            continue
        if name in ESCALATION_GUARDED_FIELDS and escalation_guard:
            assignments.append(
                f"{name} = CASE WHEN {advance} THEN EXCLUDED.{name} "
                f"ELSE unified_alerts.{name} END"
            )
        else:
            assignments.append(f"{name} = EXCLUDED.{name}")

    assignments.append(
        f"escalation_count = unified_alerts.escalation_count "
        f"+ CASE WHEN {advance} THEN 1 ELSE 0 END"
    )
    assignments.append(
        f"last_escalated_at = CASE WHEN {advance} THEN $2 "
        f"ELSE unified_alerts.last_escalated_at END"
    )
    if escalation_guard:
        for flag in CHANNEL_FLAGS.values():
            assignments.append(
                f"{flag} = CASE WHEN {advance} THEN FALSE ELSE unified_alerts.{flag} END"
            )
            assignments.append(
                f"{flag}_at = CASE WHEN {advance} THEN NULL "
                f"ELSE unified_alerts.{flag}_at END"
            )

    sql = f"""
        INSERT INTO unified_alerts ({", ".join(columns)})
        VALUES ({", ".join(values)})
        ON CONFLICT (alert_key) WHERE status <> 'archived' DO UPDATE SET
            {", ".join(assignments)}
        WHERE unified_alerts.status IN ('active', 'acknowledged', 'escalated')
        RETURNING *, (xmax = 0) AS inserted
    """
    return sql, params


def _build_where(alert_filter: AlertFilter) -> tuple[str, list[Any]]:
    """Translate an AlertFilter into a WHERE clause and parameters."""
    conditions: list[str] = []
    params: list[Any] = []
    param_idx = 1

    simple = (
        ("status", alert_filter.status),
        ("severity", alert_filter.severity),
        ("source_type", alert_filter.source_type),
        ("is_read", alert_filter.is_read),
        ("source_entity_id", alert_filter.source_entity_id),
    )
    for column, value in simple:
        if value is not None:
            conditions.append(f"{column} = ${param_idx}")
            params.append(value)
            param_idx += 1

    if alert_filter.open_only:
        conditions.append(f"status = ANY(${param_idx}::text[])")
        params.append(_OPEN_STATUS_LIST)
        param_idx += 1

    if alert_filter.created_after is not None:
        conditions.append(f"created_at >= ${param_idx}")
        params.append(alert_filter.created_after)
        param_idx += 1

    where_clause = ""
    if conditions:
        where_clause = "WHERE " + " AND ".join(conditions)
    return where_clause, params


def _row_to_alert(row: Any) -> AlertRecord:
    """Convert an asyncpg Record to an AlertRecord."""
    data = dict(row)
    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    data["metadata"] = metadata
    data["tags"] = list(data.get("tags") or [])
    return AlertRecord.from_dict(data)
