"""Alert lifecycle engine for delivery operations.

Components:
- AlertRecord: Dataclass mapping to the unified_alerts table
- AlertStore / InMemoryAlertStore / AlertRepository: Persistence with the escalation guard
- EscalationPolicy / MonitorConfig: Pydantic settings for thresholds and cadence
- Monitors: Per-domain detectors plus the visit alert reconciler
- AlertSynthesizer: Renders detections into alert fields
- AlertService: Tick path (upsert, mirror, dispatch) and operator actions
- NotificationChannel / NotificationDispatcher: Tier-gated delivery
- AlertScheduler: One periodic task per monitor
- AlertStatsAggregator: Dashboard rollups
- build_engine: Composition root
"""

from src.alerts.channels import (
    CircuitBreaker,
    EmailChannel,
    LogChannel,
    NotificationChannel,
    SmsChannel,
    WebhookChannel,
)
from src.alerts.config import EscalationPolicy, MonitorConfig
from src.alerts.dispatcher import NotificationConfig, NotificationDispatcher
from src.alerts.engine import AlertEngine, build_engine
from src.alerts.repository import AlertRepository
from src.alerts.scheduler import AlertScheduler
from src.alerts.schemas import AlertRecord
from src.alerts.service import AlertService, InvalidTransitionError, TickResult
from src.alerts.stats import AlertStats, AlertStatsAggregator
from src.alerts.store import AlertFilter, AlertStore, AlertStoreError, InMemoryAlertStore
from src.alerts.synthesizer import AlertSynthesizer, Detection

__all__ = [
    "AlertEngine",
    "AlertFilter",
    "AlertRecord",
    "AlertRepository",
    "AlertScheduler",
    "AlertService",
    "AlertStats",
    "AlertStatsAggregator",
    "AlertStore",
    "AlertStoreError",
    "AlertSynthesizer",
    "CircuitBreaker",
    "Detection",
    "EmailChannel",
    "EscalationPolicy",
    "InMemoryAlertStore",
    "InvalidTransitionError",
    "LogChannel",
    "MonitorConfig",
    "NotificationChannel",
    "NotificationConfig",
    "NotificationDispatcher",
    "SmsChannel",
    "TickResult",
    "WebhookChannel",
    "build_engine",
]
