"""Alert identity and notified-tier tracking.

``build_alert_key`` produces the stable business key every detection of the
same occurrence shares. The persisted ``notification_sent_at`` versus
``last_escalated_at`` comparison (``needs_dispatch``) is the source of truth
for whether a tier still needs notifying; a ``NotifiedCache`` only saves a
store round trip when the same process already dispatched that tier.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from src.alerts.schemas import AlertRecord

logger = logging.getLogger(__name__)


def build_alert_key(
    entity_kind: str,
    entity_id: str | int,
    condition: str | None = None,
) -> str:
    """Build the stable alert key for a condition on an entity.

    Examples: ``visit:V-100:late``, ``vehicle:T-7:low_fuel``, ``message:42``.
    No time component: the same unresolved condition always maps to the
    same key regardless of when it is detected.

    Raises:
        ValueError: If ``entity_kind`` or ``entity_id`` is empty.
    """
    kind = str(entity_kind).strip()
    ident = str(entity_id).strip()
    if not kind or not ident:
        raise ValueError("entity_kind and entity_id are required for an alert key")
    parts = [kind, ident]
    if condition:
        parts.append(condition.strip())
    return ":".join(parts)


def needs_dispatch(record: AlertRecord) -> bool:
    """Whether the record's current tier has not been dispatched yet.

    True for an open record that was never dispatched, or whose last
    dispatch predates its most recent tier advance.
    """
    if not record.is_open:
        return False
    if record.notification_sent_at is None:
        return True
    if record.last_escalated_at is None:
        return False
    return record.notification_sent_at < record.last_escalated_at


class NotifiedCache(ABC):
    """Remembers which (alert_key, tier) pairs were already dispatched."""

    @abstractmethod
    async def claim(self, alert_key: str, level: str) -> bool:
        """Claim the pair for dispatch.

        Returns:
            True if this caller should dispatch, False if the pair was
            already claimed.
        """

    @abstractmethod
    async def release(self, alert_key: str, level: str) -> None:
        """Forget a claim so the pair can be dispatched again."""


class InMemoryNotifiedCache(NotifiedCache):
    """Per-process cache with a TTL, keyed by (alert_key, level)."""

    def __init__(self, ttl_seconds: float = 24 * 3600) -> None:
        self._ttl = ttl_seconds
        self._claims: dict[tuple[str, str], float] = {}

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, at in self._claims.items() if now - at >= self._ttl]
        for k in expired:
            del self._claims[k]

    async def claim(self, alert_key: str, level: str) -> bool:
        now = time.monotonic()
        self._evict_expired(now)
        key = (alert_key, level)
        if key in self._claims:
            return False
        self._claims[key] = now
        return True

    async def release(self, alert_key: str, level: str) -> None:
        self._claims.pop((alert_key, level), None)

    def __len__(self) -> int:
        return len(self._claims)


class RedisNotifiedCache(NotifiedCache):
    """Shared cache using Redis ``SET NX`` with a TTL.

    Key format: ``alert:notified:{alert_key}:{level}``. Redis failures
    allow the dispatch: a duplicate notification is preferred over a
    silent one, and the persisted flags still stop repeats on the next
    tick.
    """

    def __init__(self, redis_client: Any, ttl_seconds: int = 24 * 3600) -> None:
        self._redis = redis_client
        self._ttl = int(ttl_seconds)

    @staticmethod
    def _key(alert_key: str, level: str) -> str:
        return f"alert:notified:{alert_key}:{level}"

    async def claim(self, alert_key: str, level: str) -> bool:
        try:
            was_set = await self._redis.set(
                self._key(alert_key, level), "1", nx=True, ex=self._ttl,
            )
            return bool(was_set)
        except Exception as e:
            logger.warning("Redis notified-cache claim failed, allowing dispatch: %s", e)
            return True

    async def release(self, alert_key: str, level: str) -> None:
        try:
            await self._redis.delete(self._key(alert_key, level))
        except Exception as e:
            logger.warning("Redis notified-cache release failed: %s", e)
