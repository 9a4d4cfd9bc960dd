"""
Dependency injection for FastAPI endpoints.

The alert engine is built in the application lifespan and kept on
``app.state.engine``; these providers hand out its parts so tests can
override any one of them with ``app.dependency_overrides``.
"""

from fastapi import HTTPException, Request, status

from src.alerts.engine import AlertEngine
from src.alerts.scheduler import AlertScheduler
from src.alerts.service import AlertService
from src.alerts.stats import AlertStatsAggregator
from src.alerts.store import AlertStore
from src.storage.database import Database


def get_engine(request: Request) -> AlertEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Alert engine not initialized",
        )
    return engine


def get_alert_service(request: Request) -> AlertService:
    return get_engine(request).service


def get_alert_store(request: Request) -> AlertStore:
    return get_engine(request).store


def get_stats_aggregator(request: Request) -> AlertStatsAggregator:
    return get_engine(request).stats


def get_scheduler(request: Request) -> AlertScheduler:
    return get_engine(request).scheduler


def get_database(request: Request) -> Database:
    return get_engine(request).database
