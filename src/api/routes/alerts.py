"""Alert endpoints for listing, inspecting and acting on unified alerts."""

import time

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from src.alerts.schemas import VALID_SEVERITIES, VALID_SOURCE_TYPES, VALID_STATUSES, AlertRecord
from src.alerts.service import AlertService, InvalidTransitionError
from src.alerts.stats import AlertStatsAggregator
from src.api.auth import verify_api_key
from src.api.dependencies import get_alert_service, get_stats_aggregator
from src.api.models import (
    AlertActionRequest,
    AlertActionResponse,
    AlertItem,
    AlertsResponse,
    AlertStatsResponse,
    ErrorResponse,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


def _to_item(record: AlertRecord) -> AlertItem:
    return AlertItem(**record.to_dict())


def _check_choice(name: str, value: str | None, valid: frozenset[str]) -> None:
    if value is not None and value not in valid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid {name} {value!r}. Must be one of: {sorted(valid)}",
        )


@router.get(
    "/alerts",
    response_model=AlertsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        422: {"model": ErrorResponse, "description": "Invalid filter parameter"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
    summary="List alerts",
    description=(
        "List unified alerts, newest first. Defaults to active alerts; "
        "pass status=all to include every status."
    ),
)
async def list_alerts(
    status_filter: str = Query(
        default="active",
        alias="status",
        description="Lifecycle status, or 'all'",
    ),
    severity: str | None = Query(default=None, description="low, medium, high or critical"),
    source_type: str | None = Query(default=None, description="Domain that raised the alert"),
    is_read: bool | None = Query(default=None, description="Filter by read flag"),
    limit: int = Query(default=50, ge=1, le=500, description="Maximum alerts to return"),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertsResponse:
    start_time = time.perf_counter()

    try:
        alert_status = None if status_filter == "all" else status_filter
        _check_choice("status", alert_status, VALID_STATUSES)
        _check_choice("severity", severity, VALID_SEVERITIES)
        _check_choice("source_type", source_type, VALID_SOURCE_TYPES)

        filters = {
            "status": alert_status,
            "severity": severity,
            "source_type": source_type,
            "is_read": is_read,
        }
        records = await service.list_alerts(**filters, limit=limit, offset=offset)
        total = await service.count_alerts(**filters)
        items = [_to_item(r) for r in records]
        latency_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "Alerts listed",
            returned=len(items),
            total=total,
            status=status_filter,
            severity=severity,
            source_type=source_type,
            latency_ms=round(latency_ms, 2),
        )
        return AlertsResponse(alerts=items, total=total, latency_ms=round(latency_ms, 2))

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to list alerts: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list alerts: {str(e)}",
        )


@router.get(
    "/alerts/stats",
    response_model=AlertStatsResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid API key"}},
    summary="Alert statistics",
    description="Counts by status and severity, unread, created today and this week.",
)
async def alert_stats(
    api_key: str = Depends(verify_api_key),
    aggregator: AlertStatsAggregator = Depends(get_stats_aggregator),
) -> AlertStatsResponse:
    start_time = time.perf_counter()
    stats = await aggregator.compute()
    latency_ms = (time.perf_counter() - start_time) * 1000
    return AlertStatsResponse(**stats.to_dict(), latency_ms=round(latency_ms, 2))


@router.get(
    "/alerts/{alert_id}",
    response_model=AlertItem,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        404: {"model": ErrorResponse, "description": "Alert not found"},
    },
    summary="Get alert",
)
async def get_alert(
    alert_id: int = Path(..., ge=1, description="Alert identifier"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertItem:
    record = await service.store.get_alert(alert_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Alert {alert_id} not found",
        )
    return _to_item(record)


@router.post(
    "/alerts/{alert_id}/actions",
    response_model=AlertActionResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        404: {"model": ErrorResponse, "description": "Alert not found"},
        409: {"model": ErrorResponse, "description": "Action not allowed in current status"},
        422: {"model": ErrorResponse, "description": "Invalid action"},
    },
    summary="Apply an operator action",
    description=(
        "mark_read, mark_unread, acknowledge, escalate, resolve, dismiss or "
        "archive. Only forward status transitions are accepted."
    ),
)
async def alert_action(
    request: AlertActionRequest,
    alert_id: int = Path(..., ge=1, description="Alert identifier"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertActionResponse:
    start_time = time.perf_counter()

    try:
        record = await service.perform_action(alert_id, request.action, request.user_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Alert {alert_id} not found",
        )

    latency_ms = (time.perf_counter() - start_time) * 1000
    logger.info(
        "Alert action applied",
        alert_id=alert_id,
        action=request.action,
        user_id=request.user_id,
        status=record.status,
    )
    return AlertActionResponse(
        alert=_to_item(record),
        action=request.action,
        latency_ms=round(latency_ms, 2),
    )
