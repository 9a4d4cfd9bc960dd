"""Tests for AlertRepository with mocked Database."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.alerts.repository import (
    AlertRepository,
    _build_upsert,
    _build_where,
    _row_to_alert,
)
from src.alerts.store import AlertFilter, AlertStoreError

NOW = datetime(2026, 3, 4, 9, 12, 0, tzinfo=timezone.utc)


def _make_db_row(**overrides):
    """Create a mock asyncpg Record as a dict."""
    row = {
        "id": 7,
        "alert_key": "visit:V-100:late",
        "source_type": "late_visit",
        "title": "Late Visit Alert - WARNING: Visit #V-100",
        "message": "Agent hasn't arrived",
        "description": "",
        "category": "info",
        "severity": "medium",
        "priority": "medium",
        "status": "active",
        "is_read": False,
        "is_resolved": False,
        "escalation_level": "initial",
        "escalation_rank": 0,
        "escalation_count": 0,
        "last_escalated_at": None,
        "source_entity_id": "V-100",
        "metadata": {"delay_minutes": 12},
        "tags": ["visit", "late"],
        "resolved_by": None,
        "created_at": NOW,
        "updated_at": NOW,
        "inserted": True,
    }
    row.update(overrides)
    return row


@pytest.fixture
def conn():
    return AsyncMock()


@pytest.fixture
def mock_db(conn):
    db = AsyncMock()

    @asynccontextmanager
    async def transaction():
        yield conn

    db.transaction = MagicMock(side_effect=transaction)
    return db


@pytest.fixture
def repo(mock_db):
    return AlertRepository(mock_db)


def _fields(level: str = "initial") -> dict:
    return {
        "source_type": "late_visit",
        "title": "Late Visit Alert",
        "message": "Agent hasn't arrived",
        "escalation_level": level,
        "severity": "medium",
        "metadata": {"delay_minutes": 12},
        "tags": ["visit", "late", "visit"],
    }


class TestRowToAlert:
    """Test the module-level _row_to_alert helper."""

    def test_basic_conversion(self):
        alert = _row_to_alert(_make_db_row())
        assert alert.id == 7
        assert alert.alert_key == "visit:V-100:late"
        assert alert.metadata == {"delay_minutes": 12}
        assert alert.tags == ["late", "visit"]

    def test_metadata_as_string(self):
        alert = _row_to_alert(_make_db_row(metadata='{"key": "val"}'))
        assert alert.metadata == {"key": "val"}

    def test_null_collections(self):
        alert = _row_to_alert(_make_db_row(metadata=None, tags=None))
        assert alert.metadata == {}
        assert alert.tags == []


class TestBuildUpsert:
    def test_guarded_update_compares_rank(self):
        sql, params = _build_upsert("visit:V-100:late", _fields("escalated"), True, NOW)

        assert params[:3] == ["visit:V-100:late", NOW, 1]
        assert "ON CONFLICT (alert_key) WHERE status <> 'archived'" in sql
        assert "escalation_level = CASE WHEN $3 > unified_alerts.escalation_rank" in sql
        assert "escalation_count = unified_alerts.escalation_count + CASE WHEN" in sql
        assert "admin_notified = CASE WHEN $3 > unified_alerts.escalation_rank THEN FALSE" in sql
        assert "(xmax = 0) AS inserted" in sql

    def test_insert_only_fields_not_updated(self):
        sql, _ = _build_upsert("k", _fields(), True, NOW)
        assert "source_type = EXCLUDED.source_type" not in sql
        assert "title = EXCLUDED.title" in sql

    def test_encodes_metadata_and_tags(self):
        sql, params = _build_upsert("k", _fields(), True, NOW)
        assert '{"delay_minutes": 12}' in params
        assert ["late", "visit"] in params
        assert "::jsonb" in sql

    def test_unguarded_overwrites_tier(self):
        sql, _ = _build_upsert("k", _fields("critical"), False, NOW)
        assert "escalation_level = EXCLUDED.escalation_level" in sql
        assert "admin_notified = CASE" not in sql

    def test_without_level_never_advances(self):
        fields = _fields()
        del fields["escalation_level"]
        sql, _ = _build_upsert("k", fields, True, NOW)
        assert "CASE WHEN FALSE" in sql


class TestBuildWhere:
    def test_empty_filter(self):
        assert _build_where(AlertFilter()) == ("", [])

    def test_param_numbering(self):
        since = NOW - timedelta(days=1)
        where, params = _build_where(
            AlertFilter(status="active", source_type="vehicle", open_only=True, created_after=since)
        )
        assert where == (
            "WHERE status = $1 AND source_type = $2 "
            "AND status = ANY($3::text[]) AND created_at >= $4"
        )
        assert params == ["active", "vehicle", ["acknowledged", "active", "escalated"], since]

    def test_is_read_false_is_applied(self):
        where, params = _build_where(AlertFilter(is_read=False))
        assert where == "WHERE is_read = $1"
        assert params == [False]


class TestUpsert:
    @pytest.mark.asyncio
    async def test_insert(self, repo, conn):
        conn.fetchrow.side_effect = [None, _make_db_row()]

        result = await repo.upsert_alert("visit:V-100:late", _fields(), now=NOW)

        assert result.created is True
        assert result.escalated is False
        assert result.record.id == 7
        assert conn.fetchrow.call_count == 2
        assert "FOR UPDATE" in conn.fetchrow.call_args_list[0].args[0]

    @pytest.mark.asyncio
    async def test_update_that_escalates(self, repo, conn):
        conn.fetchrow.side_effect = [
            _make_db_row(),
            _make_db_row(
                inserted=False,
                escalation_level="escalated",
                escalation_count=1,
                last_escalated_at=NOW,
            ),
        ]

        result = await repo.upsert_alert("visit:V-100:late", _fields("escalated"), now=NOW)

        assert result.created is False
        assert result.escalated is True
        assert result.record.escalation_count == 1

    @pytest.mark.asyncio
    async def test_operator_closed_record_skipped(self, repo, conn):
        conn.fetchrow.return_value = _make_db_row(
            status="resolved", is_resolved=True, resolved_by="ops-lead",
        )

        result = await repo.upsert_alert("visit:V-100:late", _fields(), now=NOW)

        assert result.skipped is True
        conn.fetchrow.assert_called_once()
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_system_resolved_record_archived_and_reinserted(self, repo, conn):
        conn.fetchrow.side_effect = [
            _make_db_row(status="resolved", is_resolved=True, resolved_by="system"),
            _make_db_row(id=8),
        ]

        result = await repo.upsert_alert("visit:V-100:late", _fields(), now=NOW)

        assert result.reopened is True
        assert result.created is True
        assert result.record.id == 8
        archive_sql = conn.execute.call_args.args[0]
        assert "status = 'archived'" in archive_sql
        assert "is_resolved = FALSE" in archive_sql
        assert conn.execute.call_args.args[1:] == (7, NOW)

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, repo, conn):
        with pytest.raises(AlertStoreError):
            await repo.upsert_alert("k", {"status": "resolved"}, now=NOW)
        conn.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_postgres_error_wrapped(self, repo, conn):
        conn.fetchrow.side_effect = asyncpg.PostgresError("connection lost")
        with pytest.raises(AlertStoreError, match="visit:V-100:late"):
            await repo.upsert_alert("visit:V-100:late", _fields(), now=NOW)


class TestQueries:
    @pytest.mark.asyncio
    async def test_query_alerts_appends_limit_and_offset(self, repo, mock_db):
        mock_db.fetch.return_value = [_make_db_row(), _make_db_row(id=8)]

        alerts = await repo.query_alerts(AlertFilter(status="active", limit=50, offset=10))

        assert [a.id for a in alerts] == [7, 8]
        sql, *params = mock_db.fetch.call_args.args
        assert "ORDER BY created_at DESC" in sql
        assert "LIMIT $2" in sql
        assert "OFFSET $3" in sql
        assert params == ["active", 50, 10]

    @pytest.mark.asyncio
    async def test_count_alerts(self, repo, mock_db):
        mock_db.fetchval.return_value = 4
        assert await repo.count_alerts(AlertFilter(severity="critical")) == 4

    @pytest.mark.asyncio
    async def test_count_alerts_none(self, repo, mock_db):
        mock_db.fetchval.return_value = None
        assert await repo.count_alerts(AlertFilter()) == 0

    @pytest.mark.asyncio
    async def test_get_alert_not_found(self, repo, mock_db):
        mock_db.fetchrow.return_value = None
        assert await repo.get_alert(99) is None


class TestLifecycleWrites:
    @pytest.mark.asyncio
    async def test_resolve_alert(self, repo, mock_db):
        mock_db.fetchrow.return_value = _make_db_row(
            status="resolved", is_resolved=True, resolved_by="system",
        )

        record = await repo.resolve_alert("visit:V-100:late", at=NOW)

        assert record.status == "resolved"
        args = mock_db.fetchrow.call_args.args
        assert args[1:4] == ("visit:V-100:late", NOW, "system")

    @pytest.mark.asyncio
    async def test_mark_dispatched_sets_flags(self, repo, mock_db):
        mock_db.fetchrow.return_value = _make_db_row(admin_notified=True, push_sent=True)

        await repo.mark_dispatched(7, ["push", "admin"], at=NOW)

        sql = mock_db.fetchrow.call_args.args[0]
        assert "admin_notified = TRUE" in sql
        assert "push_sent_at = $2" in sql
        assert "sms_sent" not in sql

    @pytest.mark.asyncio
    async def test_advance_level_requires_level(self, repo):
        with pytest.raises(AlertStoreError):
            await repo.advance_level(7, {"severity": "high"})

    @pytest.mark.asyncio
    async def test_advance_level_not_higher_returns_current(self, repo, mock_db):
        mock_db.fetchrow.side_effect = [None, _make_db_row(escalation_level="critical")]

        result = await repo.advance_level(7, {"escalation_level": "escalated"}, at=NOW)

        assert result.escalated is False
        assert result.record.escalation_level == "critical"
        assert "escalation_rank < $4" in mock_db.fetchrow.call_args_list[0].args[0]

    @pytest.mark.asyncio
    async def test_update_alert_with_allowed_statuses(self, repo, mock_db):
        mock_db.fetchrow.return_value = None

        result = await repo.update_alert(
            7, {"status": "archived"}, allowed_statuses=frozenset({"resolved", "dismissed"}),
        )

        assert result is None
        sql, *params = mock_db.fetchrow.call_args.args
        assert "status = ANY($3::text[])" in sql
        assert params == [7, "archived", ["dismissed", "resolved"]]

    @pytest.mark.asyncio
    async def test_ensure_schema(self, repo, mock_db):
        await repo.ensure_schema()
        sql = mock_db.execute.call_args.args[0]
        assert "CREATE TABLE IF NOT EXISTS unified_alerts" in sql
        assert "uq_unified_alerts_live_key" in sql
