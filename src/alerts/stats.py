"""Read-side rollups over the alert store for the dashboard.

Every figure is computed on demand from ``count_alerts`` so there are no
counters to drift out of sync with the records. Each count is independent:
one failing query yields 0 for that figure and the rest still load.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from src.alerts.store import AlertFilter, AlertStore

logger = logging.getLogger(__name__)


@dataclass
class AlertStats:
    total: int = 0
    active: int = 0
    acknowledged: int = 0
    resolved: int = 0
    dismissed: int = 0
    archived: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    unread: int = 0
    today: int = 0
    this_week: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def start_of_day(now: datetime) -> datetime:
    """UTC midnight of ``now``'s day."""
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """UTC midnight of the most recent Sunday (today if it is Sunday)."""
    day = start_of_day(now)
    # weekday(): Monday=0 ... Sunday=6
    return day - timedelta(days=(day.weekday() + 1) % 7)


class AlertStatsAggregator:
    """Compute ``AlertStats`` from the current store state."""

    def __init__(self, store: AlertStore) -> None:
        self._store = store

    async def _count(self, label: str, alert_filter: AlertFilter) -> int:
        try:
            return await self._store.count_alerts(alert_filter)
        except Exception as e:
            logger.warning("Alert stats count %s failed, reporting 0: %s", label, e)
            return 0

    async def compute(self, now: datetime | None = None) -> AlertStats:
        now = now or datetime.now(timezone.utc)
        stats = AlertStats(total=await self._count("total", AlertFilter()))

        for status in ("active", "acknowledged", "resolved", "dismissed", "archived"):
            setattr(stats, status, await self._count(status, AlertFilter(status=status)))
        for severity in ("critical", "high", "medium", "low"):
            setattr(stats, severity, await self._count(severity, AlertFilter(severity=severity)))

        stats.unread = await self._count("unread", AlertFilter(is_read=False))
        stats.today = await self._count("today", AlertFilter(created_after=start_of_day(now)))
        stats.this_week = await self._count(
            "this_week", AlertFilter(created_after=start_of_week(now)),
        )
        return stats
