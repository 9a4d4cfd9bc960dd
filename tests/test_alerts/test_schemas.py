"""Tests for the AlertRecord dataclass."""

from datetime import datetime, timezone

import pytest

from src.alerts.schemas import AlertRecord


def _record(**kwargs) -> AlertRecord:
    defaults = {
        "alert_key": "vehicle:T-7:low_fuel",
        "source_type": "vehicle",
        "title": "Low fuel: vehicle ABC-123",
        "message": "Vehicle ABC-123 is at 12% fuel.",
    }
    defaults.update(kwargs)
    return AlertRecord(**defaults)


class TestValidation:
    def test_defaults(self):
        record = _record()
        assert record.status == "active"
        assert record.escalation_level == "initial"
        assert record.escalation_count == 0
        assert record.is_open is True

    @pytest.mark.parametrize(
        "field_name, value",
        [
            ("source_type", "spaceship"),
            ("severity", "warning"),
            ("priority", "urgent"),
            ("status", "open"),
            ("escalation_level", "extreme"),
            ("category", "danger"),
        ],
    )
    def test_rejects_unknown_vocabulary(self, field_name, value):
        with pytest.raises(ValueError, match=f"Invalid {field_name}"):
            _record(**{field_name: value})

    def test_is_resolved_requires_resolved_status(self):
        with pytest.raises(ValueError, match="is_resolved"):
            _record(is_resolved=True, status="active")

    def test_tags_sorted_and_unique(self):
        record = _record(tags=["fuel", "vehicle", "fuel"])
        assert record.tags == ["fuel", "vehicle"]


class TestProperties:
    @pytest.mark.parametrize("status", ["active", "acknowledged", "escalated"])
    def test_open_statuses(self, status):
        assert _record(status=status).is_open is True

    @pytest.mark.parametrize("status", ["resolved", "dismissed", "archived"])
    def test_closed_statuses(self, status):
        kwargs = {"status": status}
        if status == "resolved":
            kwargs["is_resolved"] = True
        assert _record(**kwargs).is_open is False

    def test_escalation_rank(self):
        assert _record(escalation_level="critical").escalation_rank == 2

    def test_channel_flag(self):
        record = _record(supervisor_notified=True)
        assert record.channel_flag("supervisor") is True
        assert record.channel_flag("sms") is False


class TestSerialization:
    def test_to_dict_isoformats_datetimes(self):
        at = datetime(2026, 3, 4, 9, 35, tzinfo=timezone.utc)
        data = _record(id=5, last_escalated_at=at, metadata={"fuel_level_percent": 12.0}).to_dict()
        assert data["id"] == 5
        assert data["last_escalated_at"] == "2026-03-04T09:35:00+00:00"
        assert data["metadata"] == {"fuel_level_percent": 12.0}

    def test_from_dict_parses_strings_and_ignores_unknown(self):
        record = AlertRecord.from_dict({
            "alert_key": "message:42",
            "source_type": "message",
            "title": "Message from Omar",
            "message": "hi",
            "created_at": "2026-03-04T09:01:00+00:00",
            "metadata": '{"is_urgent": false}',
            "tags": None,
            "escalation_rank": 0,
            "inserted": True,
        })
        assert record.created_at == datetime(2026, 3, 4, 9, 1, tzinfo=timezone.utc)
        assert record.metadata == {"is_urgent": False}
        assert record.tags == []

    def test_dict_roundtrip_preserves_record(self):
        record = _record(id=9, severity="high", category="warning", tags=["vehicle"])
        assert AlertRecord.from_dict(record.to_dict()) == record
