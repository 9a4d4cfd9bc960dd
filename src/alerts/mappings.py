"""Canonical vocabulary mappings into the unified alert schema.

Source tables carry their own alert vocabularies (``alert_severity``,
``priority``, ``alert_type`` on ``visit_management``). Every translation
into the unified vocabulary goes through the tables below; lookups fall
back to the documented defaults instead of guessing.
"""

# Raw domain severity -> unified severity.
RAW_SEVERITY_MAP: dict[str, str] = {
    "low": "low",
    "medium": "medium",
    "high": "high",
    "critical": "critical",
    "urgent": "critical",
}
DEFAULT_SEVERITY = "medium"

# Raw domain priority -> unified priority.
RAW_PRIORITY_MAP: dict[str, str] = {
    "low": "low",
    "normal": "medium",
    "medium": "medium",
    "high": "high",
    "urgent": "critical",
    "critical": "critical",
}
DEFAULT_PRIORITY = "medium"

# Raw visit alert type -> (unified source_type, alert key condition).
RAW_ALERT_TYPE_MAP: dict[str, tuple[str, str]] = {
    "late_arrival": ("late_visit", "late"),
    "time_exceeded": ("visit", "time_exceeded"),
    "no_show": ("visit", "no_show"),
    "early_completion": ("visit", "early_completion"),
}
DEFAULT_ALERT_TYPE = ("visit", "general")

# Unified severity -> category shown on the dashboard.
SEVERITY_CATEGORY: dict[str, str] = {
    "critical": "critical",
    "high": "warning",
    "medium": "info",
    "low": "info",
}

# Unified severity -> priority.
SEVERITY_PRIORITY: dict[str, str] = {
    "critical": "critical",
    "high": "high",
    "medium": "medium",
    "low": "low",
}

# Escalation tier -> unified severity for time-driven alerts.
LEVEL_SEVERITY: dict[str, str] = {
    "initial": "medium",
    "escalated": "high",
    "critical": "critical",
}

# Raw severity -> escalation tier when no elapsed time is available.
RAW_SEVERITY_LEVEL: dict[str, str] = {
    "critical": "critical",
    "high": "escalated",
    "medium": "initial",
    "low": "initial",
}


def map_raw_severity(raw: str | None) -> str:
    """Translate a source-table severity into the unified vocabulary."""
    return RAW_SEVERITY_MAP.get((raw or "").strip().lower(), DEFAULT_SEVERITY)


def map_raw_priority(raw: str | None) -> str:
    """Translate a source-table priority into the unified vocabulary."""
    return RAW_PRIORITY_MAP.get((raw or "").strip().lower(), DEFAULT_PRIORITY)


def map_raw_alert_type(raw: str | None) -> tuple[str, str]:
    """Translate a visit ``alert_type`` into (source_type, condition)."""
    return RAW_ALERT_TYPE_MAP.get((raw or "").strip().lower(), DEFAULT_ALERT_TYPE)


def category_for(severity: str) -> str:
    return SEVERITY_CATEGORY.get(severity, "info")


def priority_for(severity: str) -> str:
    return SEVERITY_PRIORITY.get(severity, DEFAULT_PRIORITY)


def severity_for_level(level: str) -> str:
    return LEVEL_SEVERITY[level]


def level_for_raw_severity(raw: str | None) -> str:
    return RAW_SEVERITY_LEVEL[map_raw_severity(raw)]


# Ordered lowest to highest.
SEVERITY_ORDER: tuple[str, ...] = ("low", "medium", "high", "critical")


def max_severity(a: str, b: str) -> str:
    """Return the more severe of two unified severities."""
    return a if SEVERITY_ORDER.index(a) >= SEVERITY_ORDER.index(b) else b
