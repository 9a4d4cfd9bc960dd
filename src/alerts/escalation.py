"""Stateless escalation classifier.

Maps elapsed time or condition magnitude to an escalation tier. No I/O,
no state: the monitors call these while building detections and the
store compares ranks when applying them.
"""

from datetime import datetime, timedelta

from src.alerts.config import EscalationPolicy
from src.alerts.schemas import ESCALATION_LEVELS


def level_rank(level: str) -> int:
    """Position of ``level`` in the tier order (initial=0 ... critical=2).

    Raises:
        ValueError: If ``level`` is not a known tier.
    """
    try:
        return ESCALATION_LEVELS.index(level)
    except ValueError:
        raise ValueError(
            f"Invalid escalation level {level!r}. "
            f"Must be one of: {list(ESCALATION_LEVELS)}"
        ) from None


def max_level(a: str, b: str) -> str:
    """Return the higher of two tiers."""
    return a if level_rank(a) >= level_rank(b) else b


def next_level(level: str) -> str:
    """Tier one step above ``level`` (critical stays critical)."""
    rank = min(level_rank(level) + 1, len(ESCALATION_LEVELS) - 1)
    return ESCALATION_LEVELS[rank]


def is_overdue(
    scheduled_time: datetime,
    actual_time: datetime | None,
    now: datetime,
    grace_period: timedelta,
) -> bool:
    """Check whether a scheduled event has passed its grace period unstarted.

    Args:
        scheduled_time: When the event should have started.
        actual_time: When it actually started, if recorded.
        now: Evaluation time.
        grace_period: Window after ``scheduled_time`` with no violation.

    Returns:
        True if ``now - scheduled_time > grace_period`` and nothing started.
    """
    if actual_time is not None:
        return False
    return now - scheduled_time > grace_period


def classify_delay(delay: timedelta, policy: EscalationPolicy) -> str:
    """Classify an overdue delay into an escalation tier.

    - ``delay < threshold`` -> initial
    - ``threshold <= delay < threshold * critical_multiplier`` -> escalated
    - ``delay >= threshold * critical_multiplier`` -> critical

    Args:
        delay: ``now - scheduled_time``.
        policy: Domain policy supplying the thresholds.

    Returns:
        One of ``initial``, ``escalated``, ``critical``.
    """
    if delay >= policy.critical_threshold:
        return "critical"
    if delay >= policy.escalation_threshold:
        return "escalated"
    return "initial"


def classify_shortfall(
    value: float,
    escalate_at: float,
    critical_at: float,
) -> str:
    """Classify a "lower is worse" magnitude (fuel %, stock ratio).

    Args:
        value: Measured value.
        escalate_at: Value at or below which the tier is escalated.
        critical_at: Value at or below which the tier is critical.

    Returns:
        One of ``initial``, ``escalated``, ``critical``.
    """
    if value <= critical_at:
        return "critical"
    if value <= escalate_at:
        return "escalated"
    return "initial"


def delay_minutes(scheduled_time: datetime, now: datetime) -> int:
    """Whole minutes elapsed since ``scheduled_time`` (never negative)."""
    return max(0, int((now - scheduled_time).total_seconds() // 60))
