"""Tests for the in-memory AlertStore: guarded upsert and lifecycle writes."""

import asyncio
from datetime import timedelta

import pytest

from src.alerts.store import AlertFilter, AlertStoreError, InMemoryAlertStore

KEY = "visit:V-100:late"


def _fields(level: str = "initial", severity: str = "medium", **kwargs) -> dict:
    fields = {
        "source_type": "late_visit",
        "title": f"Late Visit Alert - {level.upper()}: Visit #V-100",
        "message": "Agent hasn't arrived",
        "escalation_level": level,
        "severity": severity,
        "category": "info",
        "priority": severity,
        "source_entity_id": "V-100",
        "created_by": "late_visit_monitor",
    }
    fields.update(kwargs)
    return fields


@pytest.fixture
def store():
    return InMemoryAlertStore()


class TestUpsert:
    @pytest.mark.asyncio
    async def test_insert_creates_record(self, store, t0):
        result = await store.upsert_alert(KEY, _fields(), now=t0)
        assert result.created is True
        assert result.record.id == 1
        assert result.record.status == "active"
        assert result.record.escalation_count == 0
        assert result.record.created_at == t0

    @pytest.mark.asyncio
    async def test_idempotent_for_same_level(self, store, t0):
        first = await store.upsert_alert(KEY, _fields(), now=t0)
        second = await store.upsert_alert(KEY, _fields(), now=t0 + timedelta(minutes=2))

        assert second.created is False
        assert second.escalated is False
        assert second.record.id == first.record.id
        assert second.record.escalation_count == 0
        assert await store.count_alerts(AlertFilter()) == 1

    @pytest.mark.asyncio
    async def test_escalation_advances_and_resets_flags(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        await store.mark_dispatched(created.record.id, ["admin", "push"], at=t0)

        at = t0 + timedelta(minutes=23)
        result = await store.upsert_alert(KEY, _fields("escalated", "high"), now=at)

        record = result.record
        assert result.escalated is True
        assert record.escalation_level == "escalated"
        assert record.severity == "high"
        assert record.escalation_count == 1
        assert record.last_escalated_at == at
        assert record.admin_notified is False
        assert record.admin_notified_at is None
        assert record.push_sent is False

    @pytest.mark.asyncio
    async def test_lower_level_never_downgrades(self, store, t0):
        await store.upsert_alert(KEY, _fields("critical", "critical"), now=t0)
        result = await store.upsert_alert(KEY, _fields("initial", "medium"), now=t0 + timedelta(minutes=1))

        assert result.escalated is False
        assert result.record.escalation_level == "critical"
        assert result.record.severity == "critical"
        assert result.record.escalation_count == 0

    @pytest.mark.asyncio
    async def test_non_guarded_fields_refresh(self, store, t0):
        await store.upsert_alert(KEY, _fields(delay_minutes=12), now=t0)
        result = await store.upsert_alert(KEY, _fields(delay_minutes=14), now=t0 + timedelta(minutes=2))
        assert result.record.delay_minutes == 14
        assert result.record.updated_at == t0 + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_insert_only_fields_kept(self, store, t0):
        await store.upsert_alert(KEY, _fields(), now=t0)
        result = await store.upsert_alert(
            KEY, _fields(created_by="visit_alert_sync"), now=t0 + timedelta(minutes=1),
        )
        assert result.record.created_by == "late_visit_monitor"

    @pytest.mark.asyncio
    async def test_unguarded_write_takes_values_as_given(self, store, t0):
        await store.upsert_alert(KEY, _fields("escalated", "high"), now=t0)
        result = await store.upsert_alert(
            KEY, _fields("initial", "medium"), escalation_guard=False, now=t0 + timedelta(minutes=1),
        )
        assert result.record.escalation_level == "initial"
        assert result.escalated is False

    @pytest.mark.asyncio
    async def test_rejects_store_owned_fields(self, store, t0):
        with pytest.raises(AlertStoreError, match="Unsupported fields"):
            await store.upsert_alert(KEY, _fields(status="resolved"), now=t0)

    @pytest.mark.asyncio
    async def test_concurrent_upserts_create_one_record(self, store, t0):
        results = await asyncio.gather(*(
            store.upsert_alert(KEY, _fields(level), now=t0)
            for level in ("initial", "critical", "escalated", "initial")
        ))

        assert sum(r.created for r in results) == 1
        assert await store.count_alerts(AlertFilter()) == 1
        record = await store.get_by_key(KEY)
        assert record.escalation_level == "critical"


class TestClosedRecords:
    @pytest.mark.asyncio
    async def test_auto_resolved_record_reopens_as_new_occurrence(self, store, t0):
        first = await store.upsert_alert(KEY, _fields(), now=t0)
        await store.resolve_alert(KEY, at=t0 + timedelta(minutes=5))

        result = await store.upsert_alert(KEY, _fields(), now=t0 + timedelta(hours=3))

        assert result.created is True
        assert result.reopened is True
        assert result.record.id != first.record.id
        old = await store.get_alert(first.record.id)
        assert old.status == "archived"
        assert old.is_resolved is False
        assert len(await store.query_alerts(AlertFilter())) == 2
        assert await store.count_alerts(AlertFilter(status="active")) == 1

    @pytest.mark.asyncio
    async def test_operator_resolved_record_is_sticky(self, store, t0):
        await store.upsert_alert(KEY, _fields(), now=t0)
        await store.resolve_alert(KEY, actor="ops-lead", at=t0 + timedelta(minutes=5))

        result = await store.upsert_alert(KEY, _fields("critical"), now=t0 + timedelta(minutes=60))

        assert result.skipped is True
        assert result.record.status == "resolved"
        assert result.record.escalation_level == "initial"

    @pytest.mark.asyncio
    async def test_dismissed_record_is_sticky(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        await store.update_alert(created.record.id, {"status": "dismissed", "dismissed_by": "ops"})
        result = await store.upsert_alert(KEY, _fields(), now=t0 + timedelta(minutes=2))
        assert result.skipped is True


class TestLifecycleWrites:
    @pytest.mark.asyncio
    async def test_resolve_sets_system_actor(self, store, t0):
        await store.upsert_alert(KEY, _fields(), now=t0)
        record = await store.resolve_alert(KEY, at=t0 + timedelta(minutes=70))
        assert record.status == "resolved"
        assert record.is_resolved is True
        assert record.resolved_by == "system"
        assert record.resolved_at == t0 + timedelta(minutes=70)

    @pytest.mark.asyncio
    async def test_resolve_unknown_key_returns_none(self, store):
        assert await store.resolve_alert("visit:nope:late") is None

    @pytest.mark.asyncio
    async def test_mark_dispatched_sets_flags_and_timestamp(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        record = await store.mark_dispatched(created.record.id, ["admin", "email"], at=t0)
        assert record.admin_notified is True
        assert record.admin_notified_at == t0
        assert record.email_sent is True
        assert record.sms_sent is False
        assert record.notification_sent_at == t0

    @pytest.mark.asyncio
    async def test_mark_dispatched_with_no_delivery_still_stamps(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        record = await store.mark_dispatched(created.record.id, [], at=t0)
        assert record.notification_sent_at == t0
        assert record.admin_notified is False

    @pytest.mark.asyncio
    async def test_advance_level(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        result = await store.advance_level(
            created.record.id,
            {"escalation_level": "escalated", "severity": "high"},
            at=t0 + timedelta(minutes=1),
        )
        assert result.escalated is True
        assert result.record.escalation_count == 1
        assert result.record.severity == "high"

    @pytest.mark.asyncio
    async def test_advance_level_on_closed_record(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        await store.resolve_alert(KEY)
        assert await store.advance_level(created.record.id, {"escalation_level": "critical"}) is None

    @pytest.mark.asyncio
    async def test_update_alert_respects_allowed_statuses(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        updated = await store.update_alert(
            created.record.id, {"status": "archived"}, allowed_statuses=frozenset({"resolved"}),
        )
        assert updated is None
        assert (await store.get_alert(created.record.id)).status == "active"

    @pytest.mark.asyncio
    async def test_update_alert_validates_result(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        with pytest.raises(ValueError):
            await store.update_alert(created.record.id, {"is_resolved": True})

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store, t0):
        created = await store.upsert_alert(KEY, _fields(), now=t0)
        created.record.title = "changed"
        assert (await store.get_alert(created.record.id)).title != "changed"


class TestQueries:
    @pytest.mark.asyncio
    async def test_filters_and_ordering(self, store, t0):
        await store.upsert_alert("visit:V-1:late", _fields(source_entity_id="V-1"), now=t0)
        await store.upsert_alert(
            "vehicle:T-7:low_fuel",
            _fields(source_type="vehicle", source_entity_id="T-7", severity="high"),
            now=t0 + timedelta(minutes=1),
        )
        await store.upsert_alert("visit:V-2:late", _fields(source_entity_id="V-2"), now=t0 + timedelta(minutes=2))

        newest_first = await store.query_alerts(AlertFilter())
        assert [r.alert_key for r in newest_first] == [
            "visit:V-2:late", "vehicle:T-7:low_fuel", "visit:V-1:late",
        ]
        vehicles = await store.query_alerts(AlertFilter(source_type="vehicle"))
        assert [r.source_entity_id for r in vehicles] == ["T-7"]
        assert await store.count_alerts(AlertFilter(severity="high")) == 1

    @pytest.mark.asyncio
    async def test_limit_and_offset(self, store, t0):
        for i in range(5):
            await store.upsert_alert(f"message:{i}", _fields(source_type="message"), now=t0 + timedelta(minutes=i))
        page = await store.query_alerts(AlertFilter(limit=2, offset=1))
        assert [r.alert_key for r in page] == ["message:3", "message:2"]
        assert await store.count_alerts(AlertFilter(limit=2)) == 5

    @pytest.mark.asyncio
    async def test_open_only_and_created_after(self, store, t0):
        await store.upsert_alert("message:1", _fields(source_type="message"), now=t0)
        await store.upsert_alert("message:2", _fields(source_type="message"), now=t0 + timedelta(days=1))
        await store.resolve_alert("message:1")

        assert await store.count_alerts(AlertFilter(open_only=True)) == 1
        assert await store.count_alerts(AlertFilter(created_after=t0 + timedelta(hours=1))) == 1
