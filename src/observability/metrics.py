"""
Prometheus metrics for the alert lifecycle engine.

Defines and exposes metrics for:
- Scheduler ticks per monitored domain (outcome, latency)
- Detections, created / escalated / resolved alerts
- Notification delivery per channel
- Source tables that were unavailable during a tick

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for tick latency histograms (in seconds)
TICK_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class MetricsCollector:
    """
    Prometheus metrics collector for the alert engine.

    Usage:
        metrics = get_metrics()
        metrics.record_tick("late_visit", "success", latency=0.42)
        metrics.record_notification("sms", delivered=True)
    """

    def __init__(self):
        self.ticks = Counter(
            "ops_alerts_ticks_total",
            "Scheduler ticks per job",
            ["job", "outcome"],  # outcome: success, error
        )

        self.tick_latency = Histogram(
            "ops_alerts_tick_latency_seconds",
            "Wall time of a single scheduler tick",
            ["job"],
            buckets=TICK_BUCKETS,
        )

        self.detections = Counter(
            "ops_alerts_detections_total",
            "Conditions observed on source records",
            ["source_type", "state"],  # state: violation, cleared
        )

        self.alerts_created = Counter(
            "ops_alerts_created_total",
            "Unified alert records created",
            ["source_type"],
        )

        self.alerts_escalated = Counter(
            "ops_alerts_escalated_total",
            "Tier transitions applied to alert records",
            ["level"],
        )

        self.alerts_resolved = Counter(
            "ops_alerts_resolved_total",
            "Alert records resolved because the condition cleared",
            ["source_type"],
        )

        self.detection_errors = Counter(
            "ops_alerts_detection_errors_total",
            "Detections that failed inside an otherwise healthy tick",
            ["source_type"],
        )

        self.notifications = Counter(
            "ops_alerts_notifications_total",
            "Notification attempts per channel",
            ["channel", "outcome"],  # outcome: delivered, failed
        )

        self.source_unavailable = Counter(
            "ops_alerts_source_unavailable_total",
            "Source reads that degraded to an empty result",
            ["table"],
        )

        self.scheduler_running = Gauge(
            "ops_alerts_scheduler_running",
            "Scheduler state (1=running, 0=stopped)",
        )

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info("Prometheus metrics server started on port %d", port)

    def record_tick(self, job: str, outcome: str, latency: float | None = None) -> None:
        self.ticks.labels(job=job, outcome=outcome).inc()
        if latency is not None:
            self.tick_latency.labels(job=job).observe(latency)

    def record_detection(self, source_type: str, cleared: bool = False) -> None:
        state = "cleared" if cleared else "violation"
        self.detections.labels(source_type=source_type, state=state).inc()

    def record_notification(self, channel: str, delivered: bool) -> None:
        outcome = "delivered" if delivered else "failed"
        self.notifications.labels(channel=channel, outcome=outcome).inc()


# Global metrics instance (prometheus registers collectors process-wide)
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
