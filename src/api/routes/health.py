"""
Health check endpoint with infrastructure checks.
"""

import time

import structlog
from fastapi import APIRouter, Depends

from src.alerts.engine import AlertEngine
from src.api.dependencies import get_engine
from src.api.models import ComponentHealth, HealthResponse
from src.storage.database import Database

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _check_database(db: Database) -> ComponentHealth:
    """Check database connectivity and measure latency."""
    start = time.perf_counter()
    try:
        healthy = await db.health_check()
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            status="healthy" if healthy else "unhealthy",
            latency_ms=round(latency_ms, 2),
        )
    except Exception as e:
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            status="unhealthy",
            latency_ms=round(latency_ms, 2),
            details={"error": str(e)},
        )


async def _check_redis(redis_client) -> ComponentHealth:
    """Check Redis connectivity and measure latency."""
    start = time.perf_counter()
    try:
        await redis_client.ping()
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(status="healthy", latency_ms=round(latency_ms, 2))
    except Exception as e:
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            status="unhealthy",
            latency_ms=round(latency_ms, 2),
            details={"error": str(e)},
        )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description="Check the health of the alert engine and its dependencies.",
)
async def health_check(engine: AlertEngine = Depends(get_engine)) -> HealthResponse:
    """
    Check service health.

    Status logic:
    - unhealthy: database is down and alerts are stored in Postgres
    - degraded: database down with the in-memory store, Redis down, or a
      source table unavailable
    - healthy: all components operational
    """
    components: dict[str, ComponentHealth] = {}
    components["database"] = await _check_database(engine.database)
    if engine.redis_client is not None:
        components["redis"] = await _check_redis(engine.redis_client)

    backend = engine.settings.alerts_store_backend
    unavailable = sorted(engine.sources.unavailable_tables)
    db_down = components["database"].status == "unhealthy"

    if db_down and backend == "postgres":
        overall = "unhealthy"
    elif db_down or unavailable or any(c.status == "unhealthy" for c in components.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthResponse(
        status=overall,
        store_backend=backend,
        scheduler_running=engine.scheduler.is_running,
        components=components,
        unavailable_sources=unavailable,
    )
