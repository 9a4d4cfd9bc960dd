"""
Composition root for the alert engine.

``build_engine`` wires the store, source readers, synthesizer, dispatcher,
notified-tier cache, monitors and scheduler from configuration and returns
an ``AlertEngine`` that owns them. Nothing here is a module global: the
API lifespan (or a test) builds one engine and passes it around.
"""

import functools
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import redis.asyncio as redis
import structlog

from src.alerts.channels import NotificationChannel
from src.alerts.config import MonitorConfig
from src.alerts.deduplication import InMemoryNotifiedCache, NotifiedCache, RedisNotifiedCache
from src.alerts.dispatcher import NotificationConfig, NotificationDispatcher, build_channels
from src.alerts.monitors import (
    DeliveryMonitor,
    LateVisitMonitor,
    MessageMonitor,
    Monitor,
    StockMonitor,
    VehicleMonitor,
    VisitAlertReconciler,
)
from src.alerts.repository import AlertRepository
from src.alerts.scheduler import AlertScheduler
from src.alerts.service import AlertService, TickResult
from src.alerts.stats import AlertStatsAggregator
from src.alerts.store import AlertStore, InMemoryAlertStore
from src.alerts.synthesizer import AlertSynthesizer
from src.config.settings import Settings, get_settings
from src.observability.metrics import MetricsCollector, get_metrics
from src.sources.repository import SourceRepository
from src.storage.database import Database

logger = structlog.get_logger(__name__)


@dataclass
class AlertEngine:
    """Everything one running alert engine owns."""

    settings: Settings
    monitor_config: MonitorConfig
    database: Database
    store: AlertStore
    sources: SourceRepository
    service: AlertService
    dispatcher: NotificationDispatcher
    scheduler: AlertScheduler
    stats: AlertStatsAggregator
    monitors: dict[str, Monitor] = field(default_factory=dict)
    metrics: MetricsCollector | None = None
    redis_client: Any = None
    owns_redis: bool = False

    async def start(self) -> None:
        """Connect, prepare the schema and start the scheduler per settings.

        A database that cannot be reached is fatal for the Postgres backend.
        With the in-memory backend the engine still starts; source reads
        then fail per tick and are reported by the scheduler.
        """
        try:
            await self.database.connect()
        except Exception as e:
            if self.settings.alerts_store_backend == "postgres":
                raise
            logger.warning("Database unavailable, source monitors will fail", error=str(e))

        if self.settings.alerts_ensure_schema:
            await self.store.ensure_schema()

        if self.settings.metrics_enabled and self.metrics is not None:
            self.metrics.start_server()

        if self.settings.alerts_scheduler_enabled:
            await self.scheduler.start()

        logger.info(
            "Alert engine started",
            backend=self.settings.alerts_store_backend,
            scheduler=self.scheduler.is_running,
            jobs=sorted(self.monitors),
        )

    async def stop(self) -> None:
        """Stop the scheduler and release connections."""
        await self.scheduler.stop()
        if self.owns_redis and self.redis_client is not None:
            await self.redis_client.aclose()
        await self.database.close()
        logger.info("Alert engine stopped")

    async def run_job(self, name: str) -> TickResult:
        """Run one monitor immediately (KeyError if unknown)."""
        return await self.scheduler.run_now(name)


def _build_store(settings: Settings, database: Database) -> AlertStore:
    if settings.alerts_store_backend == "memory":
        return InMemoryAlertStore()
    return AlertRepository(database)


def _build_cache(
    config: MonitorConfig,
    redis_client: Any,
) -> NotifiedCache:
    ttl = timedelta(hours=config.notified_cache_ttl_hours).total_seconds()
    if redis_client is not None:
        return RedisNotifiedCache(redis_client, ttl_seconds=int(ttl))
    return InMemoryNotifiedCache(ttl_seconds=ttl)


def build_monitors(
    sources: SourceRepository,
    store: AlertStore,
    config: MonitorConfig,
) -> list[Monitor]:
    """One monitor per scheduler job, named like its ``MonitorConfig`` policy."""
    return [
        LateVisitMonitor(sources, store, config.late_visit),
        MessageMonitor(
            sources,
            config.messages,
            lookback=timedelta(hours=config.message_lookback_hours),
        ),
        VehicleMonitor(sources, store, config),
        StockMonitor(sources, store, config),
        DeliveryMonitor(sources, store, config.deliveries),
        VisitAlertReconciler(sources, config.visit_sync, late_policy=config.late_visit),
    ]


def build_engine(
    settings: Settings | None = None,
    monitor_config: MonitorConfig | None = None,
    notification_config: NotificationConfig | None = None,
    database: Database | None = None,
    redis_client: Any = None,
    channels: list[NotificationChannel] | None = None,
    metrics: MetricsCollector | None = None,
) -> AlertEngine:
    """
    Build a fully wired alert engine.

    Args:
        settings: Application settings (defaults to ``get_settings()``)
        monitor_config: Monitor policies (defaults to ``ALERTS_*`` env)
        notification_config: Channel endpoints (defaults to ``NOTIFICATIONS_*`` env)
        database: Database to use instead of one built from settings
        redis_client: Redis client for the shared notified cache; one is
            created from ``REDIS_URL`` when configured and none is given
        channels: Channels to use instead of those built from configuration
        metrics: Metrics collector (defaults to the process-wide one)

    Returns:
        AlertEngine, not yet started
    """
    settings = settings or get_settings()
    monitor_config = monitor_config or MonitorConfig()
    notification_config = notification_config or NotificationConfig()
    metrics = metrics or get_metrics()

    if database is None:
        database = Database(
            str(settings.database_url),
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )

    owns_redis = False
    if redis_client is None and settings.redis_configured:
        redis_client = redis.from_url(
            str(settings.redis_url),
            encoding="utf-8",
            decode_responses=True,
        )
        owns_redis = True

    store = _build_store(settings, database)
    sources = SourceRepository(database, metrics=metrics)
    if channels is None:
        channels = build_channels(notification_config)
    dispatcher = NotificationDispatcher(channels, config=notification_config, metrics=metrics)

    service = AlertService(
        store,
        AlertSynthesizer(),
        dispatcher,
        config=monitor_config,
        sources=sources,
        notified_cache=_build_cache(monitor_config, redis_client),
        metrics=metrics,
    )

    scheduler = AlertScheduler(metrics=metrics)
    monitors: dict[str, Monitor] = {}
    for monitor in build_monitors(sources, store, monitor_config):
        if not monitor.policy.enabled:
            logger.info("Monitor disabled", job=monitor.name)
            continue
        monitors[monitor.name] = monitor
        scheduler.add_job(
            monitor.name,
            functools.partial(service.run_monitor, monitor),
            interval_seconds=monitor.policy.check_interval_seconds,
            jitter_seconds=monitor.policy.jitter_seconds,
        )

    return AlertEngine(
        settings=settings,
        monitor_config=monitor_config,
        database=database,
        store=store,
        sources=sources,
        service=service,
        dispatcher=dispatcher,
        scheduler=scheduler,
        stats=AlertStatsAggregator(store),
        monitors=monitors,
        metrics=metrics,
        redis_client=redis_client,
        owns_redis=owns_redis,
    )
