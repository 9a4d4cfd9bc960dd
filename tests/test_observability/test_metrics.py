"""Tests for the Prometheus metrics collector."""

from prometheus_client import REGISTRY

from src.observability.metrics import get_metrics


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestMetricsCollector:
    def test_singleton(self):
        assert get_metrics() is get_metrics()

    def test_record_tick(self):
        metrics = get_metrics()
        before = _sample("ops_alerts_ticks_total", {"job": "stock", "outcome": "success"})
        count_before = _sample("ops_alerts_tick_latency_seconds_count", {"job": "stock"})

        metrics.record_tick("stock", "success", latency=0.3)
        metrics.record_tick("stock", "success")

        assert _sample("ops_alerts_ticks_total", {"job": "stock", "outcome": "success"}) == before + 2
        assert _sample("ops_alerts_tick_latency_seconds_count", {"job": "stock"}) == count_before + 1

    def test_record_detection_states(self):
        metrics = get_metrics()
        violation = {"source_type": "vehicle", "state": "violation"}
        cleared = {"source_type": "vehicle", "state": "cleared"}
        v_before = _sample("ops_alerts_detections_total", violation)
        c_before = _sample("ops_alerts_detections_total", cleared)

        metrics.record_detection("vehicle")
        metrics.record_detection("vehicle", cleared=True)
        metrics.record_detection("vehicle", cleared=True)

        assert _sample("ops_alerts_detections_total", violation) == v_before + 1
        assert _sample("ops_alerts_detections_total", cleared) == c_before + 2

    def test_record_notification(self):
        metrics = get_metrics()
        failed = {"channel": "sms", "outcome": "failed"}
        before = _sample("ops_alerts_notifications_total", failed)

        metrics.record_notification("sms", delivered=False)

        assert _sample("ops_alerts_notifications_total", failed) == before + 1
