"""Keyword rule table for classifying representative messages.

Each rule maps a keyword set to a unified severity. Rules are evaluated
from the highest severity down and the first match wins, so a message
that mentions both "question" and "emergency" is critical. Matching is
case-insensitive on whole words.
"""

import re
from dataclasses import dataclass

from src.alerts.mappings import SEVERITY_ORDER
from src.alerts.schemas import VALID_SEVERITIES


@dataclass(frozen=True)
class KeywordRule:
    """A keyword set that classifies matching text as ``severity``."""

    severity: str
    keywords: frozenset[str]

    def __post_init__(self) -> None:
        if self.severity not in VALID_SEVERITIES:
            raise ValueError(
                f"Invalid severity {self.severity!r}. "
                f"Must be one of: {sorted(VALID_SEVERITIES)}"
            )

    @property
    def pattern(self) -> re.Pattern[str]:
        alternatives = "|".join(sorted(re.escape(k) for k in self.keywords))
        return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)

    def matches(self, text: str) -> bool:
        return bool(self.keywords) and self.pattern.search(text) is not None


MESSAGE_SEVERITY_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        "critical",
        frozenset({"critical", "emergency", "urgent", "help", "stuck", "broken", "accident"}),
    ),
    KeywordRule(
        "high",
        frozenset({"problem", "issue", "delay", "delayed", "late", "asap"}),
    ),
    KeywordRule(
        "medium",
        frozenset({"important", "question", "update", "info", "quick", "fast"}),
    ),
)

URGENT_KEYWORDS: frozenset[str] = frozenset(
    {"urgent", "emergency", "help", "stuck", "broken", "critical", "accident"}
)

# Message severity -> escalation tier used for tier-gated dispatch.
MESSAGE_SEVERITY_LEVEL: dict[str, str] = {
    "critical": "critical",
    "high": "escalated",
    "medium": "initial",
    "low": "initial",
}


def classify_message(
    text: str,
    rules: tuple[KeywordRule, ...] = MESSAGE_SEVERITY_RULES,
) -> str:
    """Classify message text into a unified severity.

    Args:
        text: Message body.
        rules: Rule table; order does not matter, the highest severity
            among matching rules wins.

    Returns:
        The highest matching severity, or ``low`` if no rule matches.
    """
    ranked = sorted(rules, key=lambda r: SEVERITY_ORDER.index(r.severity), reverse=True)
    for rule in ranked:
        if rule.matches(text):
            return rule.severity
    return "low"


def is_urgent_message(text: str) -> bool:
    """Whether the text contains any of the urgent keywords."""
    return KeywordRule("critical", URGENT_KEYWORDS).matches(text)


def message_level(severity: str) -> str:
    """Escalation tier for a message of the given severity."""
    return MESSAGE_SEVERITY_LEVEL.get(severity, "initial")
