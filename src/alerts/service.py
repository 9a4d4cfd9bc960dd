"""Alert service orchestrating detection, upsert, mirroring and dispatch.

The tick path for one monitor is:

    detect -> synthesize -> guarded upsert -> (mirror onto source) -> dispatch

Every detection is applied independently: a failure on one is logged and
counted while the rest of the batch proceeds. Dispatch happens only when
the stored record says its current tier was never notified
(``needs_dispatch``); the in-process notified cache merely stops two
concurrent ticks from notifying the same tier twice.

Operator actions (read, acknowledge, escalate, resolve, dismiss, archive)
also live here so they share the escalation guard and the dispatcher.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.alerts.config import EscalationPolicy, MonitorConfig
from src.alerts.deduplication import NotifiedCache, needs_dispatch
from src.alerts.dispatcher import DispatchReport, NotificationDispatcher
from src.alerts.escalation import next_level
from src.alerts.mappings import category_for, max_severity, priority_for, severity_for_level
from src.alerts.monitors import Monitor
from src.alerts.schemas import OPEN_STATUSES, SYSTEM_ACTOR, VALID_STATUSES, AlertRecord
from src.alerts.store import AlertFilter, AlertStore
from src.alerts.synthesizer import AlertSynthesizer, Detection
from src.observability.metrics import MetricsCollector
from src.sources.repository import SourceRepository

logger = logging.getLogger(__name__)

# Action -> statuses it may start from (None: any status).
ALLOWED_TRANSITIONS: dict[str, frozenset[str] | None] = {
    "mark_read": None,
    "mark_unread": None,
    "acknowledge": frozenset({"active", "escalated"}),
    "escalate": OPEN_STATUSES,
    "resolve": OPEN_STATUSES,
    "dismiss": OPEN_STATUSES,
    "archive": frozenset({"resolved", "dismissed"}),
}

VALID_ACTIONS: frozenset[str] = frozenset(ALLOWED_TRANSITIONS)

# Alert source_type -> MonitorConfig policy used when an operator escalates.
_SOURCE_POLICY: dict[str, str] = {
    "late_visit": "late_visit",
    "visit": "visit_sync",
    "message": "messages",
    "user": "messages",
    "vehicle": "vehicles",
    "stock": "stock",
    "warehouse": "stock",
    "delivery": "deliveries",
}


class InvalidTransitionError(Exception):
    """Raised when an operator action is not allowed from the current status."""

    def __init__(self, alert_id: int, status: str, action: str) -> None:
        self.alert_id = alert_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} alert {alert_id} in status {status!r}")


@dataclass
class TickResult:
    """Counts for one monitor tick."""

    job: str
    detections: int = 0
    created: int = 0
    escalated: int = 0
    updated: int = 0
    resolved: int = 0
    skipped: int = 0
    dispatched: int = 0
    errors: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_keys: list[str] = field(default_factory=list)


class AlertService:
    """Applies detections to the store and runs operator actions.

    Args:
        store: Alert store (Postgres or in-memory).
        synthesizer: Renders detections into alert drafts.
        dispatcher: Notification dispatcher.
        config: Monitor configuration (policy lookup for operator escalation).
        sources: Source repository used to mirror late-visit state back onto
            ``visit_management``; mirroring is off when None.
        notified_cache: Optional in-process or Redis notified-tier cache.
        metrics: Optional Prometheus collector.
    """

    def __init__(
        self,
        store: AlertStore,
        synthesizer: AlertSynthesizer,
        dispatcher: NotificationDispatcher,
        config: MonitorConfig | None = None,
        sources: SourceRepository | None = None,
        notified_cache: NotifiedCache | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._synthesizer = synthesizer
        self._dispatcher = dispatcher
        self._config = config or MonitorConfig()
        self._sources = sources
        self._cache = notified_cache
        self._metrics = metrics

    @property
    def store(self) -> AlertStore:
        return self._store

    async def run_monitor(self, monitor: Monitor, now: datetime | None = None) -> TickResult:
        """Run one tick of ``monitor`` and apply every detection.

        Errors raised by ``monitor.detect`` propagate to the caller (the
        scheduler's per-tick guard); errors applying a single detection are
        counted in the result.
        """
        now = now or datetime.now(timezone.utc)
        result = TickResult(job=monitor.name, started_at=now)

        detections = await monitor.detect(now)
        result.detections = len(detections)

        for detection in detections:
            try:
                outcome, report = await self.apply_detection(detection, monitor.policy)
            except Exception as e:
                result.errors += 1
                result.error_keys.append(detection.alert_key)
                logger.error("Failed to apply detection %s: %s", detection.alert_key, e)
                if self._metrics is not None:
                    self._metrics.detection_errors.labels(source_type=detection.source_type).inc()
                continue

            setattr(result, outcome, getattr(result, outcome) + 1)
            if report is not None and report.delivered:
                result.dispatched += 1

        result.finished_at = datetime.now(timezone.utc)
        if result.created or result.escalated or result.resolved or result.errors:
            logger.info(
                "Tick %s: %d detections, %d created, %d escalated, %d resolved, %d errors",
                result.job, result.detections, result.created,
                result.escalated, result.resolved, result.errors,
            )
        return result

    async def apply_detection(
        self,
        detection: Detection,
        policy: EscalationPolicy,
    ) -> tuple[str, DispatchReport | None]:
        """Apply one detection.

        Returns:
            (outcome, dispatch report) where outcome is one of ``created``,
            ``escalated``, ``updated``, ``resolved``, ``skipped``.
        """
        if self._metrics is not None:
            self._metrics.record_detection(detection.source_type, cleared=detection.cleared)

        if detection.cleared:
            record = await self._store.resolve_alert(
                detection.alert_key, SYSTEM_ACTOR, at=detection.observed_at,
            )
            if record is None:
                return "skipped", None
            logger.info("Resolved %s: condition cleared", detection.alert_key)
            if self._metrics is not None:
                self._metrics.alerts_resolved.labels(source_type=record.source_type).inc()
            return "resolved", None

        draft = self._synthesizer.synthesize(detection)
        result = await self._store.upsert_alert(
            draft.alert_key,
            draft.fields,
            escalation_guard=True,
            now=detection.observed_at,
        )
        if result.skipped:
            return "skipped", None

        record = result.record

        if result.created:
            outcome = "created"
            logger.info(
                "Created %s at level %s%s",
                record.alert_key, record.escalation_level,
                " (new occurrence)" if result.reopened else "",
            )
            if self._metrics is not None:
                self._metrics.alerts_created.labels(source_type=record.source_type).inc()
        elif result.escalated:
            outcome = "escalated"
            logger.info(
                "Escalated %s to %s (count=%d)",
                record.alert_key, record.escalation_level, record.escalation_count,
            )
            if self._metrics is not None:
                self._metrics.alerts_escalated.labels(level=record.escalation_level).inc()
        else:
            outcome = "updated"

        if detection.kind == "late_visit" and outcome in ("created", "escalated"):
            await self._mirror_late_visit(record)

        report = None
        if needs_dispatch(record):
            report = await self._dispatch(record, policy, detection.observed_at)
        return outcome, report

    async def _dispatch(
        self,
        record: AlertRecord,
        policy: EscalationPolicy,
        at: datetime,
    ) -> DispatchReport | None:
        level = record.escalation_level
        # One claim per occurrence: a reopened alert has a new id
        claim_key = f"{record.alert_key}#{record.id}"
        if self._cache is not None and not await self._cache.claim(claim_key, level):
            logger.debug("Tier %s of %s already claimed for dispatch", level, record.alert_key)
            return None

        try:
            report = await self._dispatcher.dispatch(record, policy)
            await self._store.mark_dispatched(record.id, report.delivered, at=at)
        except Exception:
            if self._cache is not None:
                await self._cache.release(claim_key, level)
            raise
        return report

    async def _mirror_late_visit(self, record: AlertRecord) -> None:
        if self._sources is None or not record.source_entity_id:
            return
        delay = record.delay_minutes or 0
        await self._sources.update_visit(
            record.source_entity_id,
            {
                "status": "late",
                "is_late": True,
                "alert_type": "late_arrival",
                "alert_severity": record.severity,
                "alert_message": f"Visit is {delay} minutes late",
            },
        )

    def _policy_for(self, record: AlertRecord) -> EscalationPolicy:
        job = _SOURCE_POLICY.get(record.source_type, "late_visit")
        return self._config.policy_for(job)

    async def perform_action(
        self,
        alert_id: int,
        action: str,
        actor: str,
    ) -> AlertRecord | None:
        """Apply an operator action to an alert.

        Args:
            alert_id: Store id of the alert.
            action: One of ``VALID_ACTIONS``.
            actor: Operator performing the action.

        Returns:
            The updated record, or None if the alert does not exist.

        Raises:
            ValueError: Unknown action.
            InvalidTransitionError: Action not allowed from the current status.
        """
        if action not in VALID_ACTIONS:
            raise ValueError(f"Unknown action {action!r}. Must be one of: {sorted(VALID_ACTIONS)}")

        record = await self._store.get_alert(alert_id)
        if record is None:
            return None

        allowed = ALLOWED_TRANSITIONS[action]
        if allowed is not None and record.status not in allowed:
            raise InvalidTransitionError(alert_id, record.status, action)

        if action == "escalate":
            return await self._escalate(record)

        now = datetime.now(timezone.utc)
        fields: dict = {
            "mark_read": {"is_read": True},
            "mark_unread": {"is_read": False},
            "acknowledge": {
                "status": "acknowledged",
                "is_read": True,
                "acknowledged_at": now,
                "acknowledged_by": actor,
            },
            "resolve": {
                "status": "resolved",
                "is_resolved": True,
                "resolved_at": now,
                "resolved_by": actor,
            },
            "dismiss": {"status": "dismissed", "dismissed_at": now, "dismissed_by": actor},
            "archive": {"status": "archived", "is_resolved": False, "archived_at": now},
        }[action]

        updated = await self._store.update_alert(alert_id, fields, allowed_statuses=allowed)
        if updated is None:
            current = await self._store.get_alert(alert_id)
            if current is None:
                return None
            raise InvalidTransitionError(alert_id, current.status, action)

        logger.info("Alert %s: %s by %s", record.alert_key, action, actor)
        return updated

    async def _escalate(self, record: AlertRecord) -> AlertRecord:
        level = next_level(record.escalation_level)
        if level == record.escalation_level:
            return record

        severity = max_severity(record.severity, severity_for_level(level))
        now = datetime.now(timezone.utc)
        result = await self._store.advance_level(
            record.id,
            {
                "escalation_level": level,
                "severity": severity,
                "category": category_for(severity),
                "priority": priority_for(severity),
            },
            at=now,
        )
        if result is None:
            current = await self._store.get_alert(record.id)
            status = current.status if current else "unknown"
            raise InvalidTransitionError(record.id, status, "escalate")

        updated = result.record
        if result.escalated:
            logger.info("Alert %s manually escalated to %s", updated.alert_key, level)
            if self._metrics is not None:
                self._metrics.alerts_escalated.labels(level=level).inc()
            if needs_dispatch(updated):
                await self._dispatch(updated, self._policy_for(updated), now)
                updated = await self._store.get_alert(updated.id) or updated
        return updated

    async def list_alerts(self, status: str | None = "active", **filters) -> list[AlertRecord]:
        """Convenience query used by the dashboard (``status=None`` for all)."""
        if status is not None and status not in VALID_STATUSES:
            raise ValueError(f"Invalid status {status!r}")
        return await self._store.query_alerts(AlertFilter(status=status, **filters))

    async def count_alerts(self, status: str | None = "active", **filters) -> int:
        """Number of alerts matching the dashboard filters, ignoring paging."""
        if status is not None and status not in VALID_STATUSES:
            raise ValueError(f"Invalid status {status!r}")
        return await self._store.count_alerts(AlertFilter(status=status, **filters))
