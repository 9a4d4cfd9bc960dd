"""Per-domain condition detectors.

Each monitor reads its source table(s), classifies every violating row into
an escalation tier and returns ``Detection`` objects. Monitors that can see
a condition clear also emit cleared detections for the open alerts they
own, so the service can resolve them. Monitors never write; the service
applies what they return.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from src.alerts.config import EscalationPolicy, MonitorConfig
from src.alerts.deduplication import build_alert_key
from src.alerts.escalation import classify_delay, classify_shortfall, is_overdue
from src.alerts.mappings import level_for_raw_severity, map_raw_alert_type
from src.alerts.rules import MESSAGE_SEVERITY_RULES, KeywordRule, classify_message, message_level
from src.alerts.store import AlertFilter, AlertStore
from src.alerts.synthesizer import Detection
from src.sources.repository import SourceRepository
from src.sources.schemas import PENDING_VISIT_STATUSES, VisitRecord

logger = logging.getLogger(__name__)


def late_condition_cleared(visit: VisitRecord) -> bool:
    """A late-arrival condition clears once the visit started or left the pending states."""
    return visit.has_started or visit.status not in PENDING_VISIT_STATUSES


class Monitor(ABC):
    """A detector bound to one scheduler job."""

    name: str = ""
    source_type: str = ""

    def __init__(self, policy: EscalationPolicy) -> None:
        self.policy = policy

    @abstractmethod
    async def detect(self, now: datetime) -> list[Detection]:
        """Return the detections observed at ``now``."""


async def _open_entity_ids(store: AlertStore, source_type: str) -> set[str]:
    records = await store.query_alerts(AlertFilter(source_type=source_type, open_only=True))
    return {r.source_entity_id for r in records if r.source_entity_id}


class LateVisitMonitor(Monitor):
    """Visits whose agent has not arrived past the grace period."""

    name = "late_visit"
    source_type = "late_visit"

    def __init__(
        self,
        sources: SourceRepository,
        store: AlertStore,
        policy: EscalationPolicy,
    ) -> None:
        super().__init__(policy)
        self._sources = sources
        self._store = store

    def _detection(self, visit: VisitRecord, level: str, now: datetime, cleared: bool = False) -> Detection:
        return Detection(
            kind="late_visit",
            alert_key=build_alert_key("visit", visit.visit_id, "late"),
            source_type=self.source_type,
            level=level,
            source=visit,
            observed_at=now,
            cleared=cleared,
        )

    def _evaluate(self, visit: VisitRecord, open_ids: set[str], now: datetime) -> Detection | None:
        if late_condition_cleared(visit):
            if visit.visit_id in open_ids:
                return self._detection(visit, "initial", now, cleared=True)
            return None
        if not is_overdue(
            visit.scheduled_start_time,
            visit.actual_start_time,
            now,
            self.policy.grace_period,
        ):
            return None
        level = classify_delay(now - visit.scheduled_start_time, self.policy)
        return self._detection(visit, level, now)

    async def detect(self, now: datetime) -> list[Detection]:
        open_ids = await _open_entity_ids(self._store, self.source_type)
        detections: list[Detection] = []
        seen: set[str] = set()

        for visit in await self._sources.read_visits(now):
            seen.add(visit.visit_id)
            try:
                detection = self._evaluate(visit, open_ids, now)
            except Exception as e:
                logger.error("Skipping visit %s in late check: %s", visit.visit_id, e)
                continue
            if detection is not None:
                detections.append(detection)

        # Open alerts whose visit dropped out of the pending set
        stale = sorted(open_ids - seen)
        for visit in await self._sources.read_visits_by_ids(stale):
            if late_condition_cleared(visit):
                detections.append(self._detection(visit, "initial", now, cleared=True))

        return detections


class MessageMonitor(Monitor):
    """Representative chat messages, classified by keyword rules."""

    name = "messages"
    source_type = "message"

    def __init__(
        self,
        sources: SourceRepository,
        policy: EscalationPolicy,
        lookback: timedelta = timedelta(hours=24),
        rules: tuple[KeywordRule, ...] = MESSAGE_SEVERITY_RULES,
    ) -> None:
        super().__init__(policy)
        self._sources = sources
        self._lookback = lookback
        self._rules = rules
        self._last_check: datetime | None = None

    @property
    def last_check(self) -> datetime | None:
        return self._last_check

    def reset(self) -> None:
        """Rescan the full lookback window on the next tick."""
        self._last_check = None

    async def detect(self, now: datetime) -> list[Detection]:
        since = self._last_check or now - self._lookback
        messages = await self._sources.read_messages(since)
        if "chat_messages" not in self._sources.unavailable_tables:
            self._last_check = now

        detections: list[Detection] = []
        for msg in messages:
            if not msg.has_representative:
                logger.warning(
                    "Skipping message %s: representative %s not found",
                    msg.message_id, msg.representative_id,
                )
                continue
            severity = classify_message(msg.content, self._rules)
            detections.append(Detection(
                kind="message",
                alert_key=build_alert_key("message", msg.message_id),
                source_type=self.source_type,
                level=message_level(severity),
                severity=severity,
                source=msg,
                observed_at=now,
            ))
        return detections


class VehicleMonitor(Monitor):
    """Vehicles whose fuel level fell below the low-fuel threshold."""

    name = "vehicles"
    source_type = "vehicle"

    def __init__(
        self,
        sources: SourceRepository,
        store: AlertStore,
        config: MonitorConfig,
    ) -> None:
        super().__init__(config.vehicles)
        self._sources = sources
        self._store = store
        self._config = config

    async def detect(self, now: datetime) -> list[Detection]:
        open_ids = await _open_entity_ids(self._store, self.source_type)
        detections: list[Detection] = []

        for vehicle in await self._sources.read_vehicles():
            fuel = vehicle.fuel_level_percent
            if fuel is None:
                continue
            low = fuel < self._config.low_fuel_threshold
            if not low and vehicle.vehicle_id not in open_ids:
                continue
            level = "initial"
            if low:
                level = classify_shortfall(
                    fuel,
                    self._config.escalated_fuel_threshold,
                    self._config.critical_fuel_threshold,
                )
            detections.append(Detection(
                kind="vehicle",
                alert_key=build_alert_key("vehicle", vehicle.vehicle_id, "low_fuel"),
                source_type=self.source_type,
                level=level,
                source=vehicle,
                observed_at=now,
                cleared=not low,
            ))
        return detections


class StockMonitor(Monitor):
    """Inventory positions at or below their minimum stock level."""

    name = "stock"
    source_type = "stock"

    def __init__(
        self,
        sources: SourceRepository,
        store: AlertStore,
        config: MonitorConfig,
    ) -> None:
        super().__init__(config.stock)
        self._sources = sources
        self._store = store
        self._config = config

    async def detect(self, now: datetime) -> list[Detection]:
        open_ids = await _open_entity_ids(self._store, self.source_type)
        detections: list[Detection] = []

        for item in await self._sources.read_stock():
            ratio = item.stock_ratio
            if ratio is None:
                continue
            low = ratio <= 1.0
            if not low and item.item_id not in open_ids:
                continue
            level = "initial"
            if low:
                level = classify_shortfall(
                    ratio,
                    self._config.escalated_stock_ratio,
                    self._config.critical_stock_ratio,
                )
            detections.append(Detection(
                kind="stock",
                alert_key=build_alert_key("stock", item.item_id, "low_stock"),
                source_type=self.source_type,
                level=level,
                source=item,
                observed_at=now,
                cleared=not low,
            ))
        return detections


class DeliveryMonitor(Monitor):
    """Deliveries still open past their scheduled time plus grace."""

    name = "deliveries"
    source_type = "delivery"

    def __init__(
        self,
        sources: SourceRepository,
        store: AlertStore,
        policy: EscalationPolicy,
    ) -> None:
        super().__init__(policy)
        self._sources = sources
        self._store = store

    async def detect(self, now: datetime) -> list[Detection]:
        deliveries = await self._sources.read_deliveries(now)
        detections: list[Detection] = []
        still_open: set[str] = set()

        for delivery in deliveries:
            still_open.add(delivery.delivery_id)
            if not is_overdue(delivery.scheduled_for, delivery.completed_at, now, self.policy.grace_period):
                continue
            detections.append(Detection(
                kind="delivery",
                alert_key=build_alert_key("delivery", delivery.delivery_id, "delayed"),
                source_type=self.source_type,
                level=classify_delay(now - delivery.scheduled_for, self.policy),
                source=delivery,
                observed_at=now,
            ))

        if "delivery_tasks" in self._sources.unavailable_tables:
            return detections

        # Open alerts whose delivery is no longer pending were completed or cancelled
        for record in await self._store.query_alerts(
            AlertFilter(source_type=self.source_type, open_only=True)
        ):
            if record.source_entity_id and record.source_entity_id not in still_open:
                detections.append(Detection(
                    kind="delivery",
                    alert_key=record.alert_key,
                    source_type=self.source_type,
                    level="initial",
                    source=None,
                    observed_at=now,
                    cleared=True,
                ))
        return detections


class VisitAlertReconciler(Monitor):
    """Mirror raw alert columns on ``visit_management`` into unified alerts.

    Uses the same alert keys as live detection and goes through the same
    guarded upsert, so it can run concurrently with ``LateVisitMonitor``
    without double escalation. Late arrivals that the live monitor is
    already tracking (pending and overdue under its policy) are left to it.
    """

    name = "visit_sync"
    source_type = "visit"

    def __init__(
        self,
        sources: SourceRepository,
        policy: EscalationPolicy,
        late_policy: EscalationPolicy,
    ) -> None:
        super().__init__(policy)
        self._sources = sources
        self._late_policy = late_policy

    def _reconcile(self, visit: VisitRecord, now: datetime) -> Detection | None:
        source_type, condition = map_raw_alert_type(visit.alert_type)
        cleared = False

        if condition == "late":
            if late_condition_cleared(visit):
                cleared = True
            elif is_overdue(
                visit.scheduled_start_time,
                visit.actual_start_time,
                now,
                self._late_policy.grace_period,
            ):
                return None

        # A raw alert read on the source is resolved
        if visit.is_alert_read:
            cleared = True

        return Detection(
            kind="visit_alert",
            alert_key=build_alert_key("visit", visit.visit_id, condition),
            source_type=source_type,
            level=level_for_raw_severity(visit.alert_severity),
            source=visit,
            observed_at=now,
            cleared=cleared,
        )

    async def detect(self, now: datetime) -> list[Detection]:
        detections: list[Detection] = []
        for visit in await self._sources.read_visit_alerts():
            try:
                detection = self._reconcile(visit, now)
            except Exception as e:
                logger.error("Skipping visit %s in alert sync: %s", visit.visit_id, e)
                continue
            if detection is not None:
                detections.append(detection)
        return detections
