"""Scheduler status and manual monitor runs."""

import time

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from src.alerts.scheduler import AlertScheduler
from src.api.auth import verify_api_key
from src.api.dependencies import get_scheduler
from src.api.models import ErrorResponse, MonitoringStatusResponse, TickResultResponse

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get(
    "/monitoring/status",
    response_model=MonitoringStatusResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid API key"}},
    summary="Scheduler status",
)
async def monitoring_status(
    api_key: str = Depends(verify_api_key),
    scheduler: AlertScheduler = Depends(get_scheduler),
) -> MonitoringStatusResponse:
    return MonitoringStatusResponse(**scheduler.status())


@router.post(
    "/monitoring/{job}/run",
    response_model=TickResultResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        404: {"model": ErrorResponse, "description": "Unknown job"},
        500: {"model": ErrorResponse, "description": "Tick failed"},
    },
    summary="Run a monitor now",
    description="Runs one tick of the named monitor, serialized with its scheduled ticks.",
)
async def run_monitor(
    job: str,
    api_key: str = Depends(verify_api_key),
    scheduler: AlertScheduler = Depends(get_scheduler),
) -> TickResultResponse:
    if job not in scheduler.jobs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown job {job!r}. Registered: {sorted(scheduler.jobs)}",
        )

    start_time = time.perf_counter()
    try:
        result = await scheduler.run_now(job)
    except Exception as e:
        logger.error("Manual run failed", job=job, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Job {job} failed: {e}",
        )

    latency_ms = (time.perf_counter() - start_time) * 1000
    logger.info("Manual run finished", job=job, latency_ms=round(latency_ms, 2))
    return TickResultResponse(
        job=result.job,
        detections=result.detections,
        created=result.created,
        escalated=result.escalated,
        updated=result.updated,
        resolved=result.resolved,
        skipped=result.skipped,
        dispatched=result.dispatched,
        errors=result.errors,
        error_keys=result.error_keys,
        latency_ms=round(latency_ms, 2),
    )
