"""Velocity tracking over fixed time windows.

Every (identity, identity type, action) pair owns one counter per window
bucket. ``window_start = floor(now / window) * window``, so all events of the
same hour (for a 60 minute window) share a bucket and an expired bucket simply
reads as zero.

Two backends are provided:

- :class:`SqlVelocityStore` uses ``INSERT ... ON CONFLICT DO UPDATE ...
  RETURNING`` on the ``velocity_windows`` table, a single atomic statement on
  SQLite and PostgreSQL.
- :class:`RedisVelocityStore` uses ``INCR`` + ``EXPIRE`` in a MULTI/EXEC
  pipeline.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import redis
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from schemas.fraud_schemas import IdentityType, TransactionContext, VelocityCheck
from storage.database import Clock, dialect_insert, utcnow
from storage.records import VelocityWindow

logger = logging.getLogger("fraud-velocity")

EPOCH = datetime(1970, 1, 1)

# Redis keys outlive their window slightly so late readers still see the final count
REDIS_EXPIRY_GRACE = timedelta(minutes=5)


def window_bounds(now: datetime, window_minutes: int) -> Tuple[datetime, datetime]:
    """Return ``(window_start, window_end)`` of the fixed bucket containing ``now``."""
    if window_minutes <= 0:
        raise ValueError(f"window_minutes must be positive, got {window_minutes}")
    window_seconds = window_minutes * 60
    elapsed = int((now - EPOCH).total_seconds())
    start = EPOCH + timedelta(seconds=(elapsed // window_seconds) * window_seconds)
    return start, start + timedelta(seconds=window_seconds)


def normalize_identity(identity_value: str, identity_type: IdentityType) -> str:
    value = str(identity_value).strip()
    if identity_type == IdentityType.EMAIL:
        return value.lower()
    return value


class VelocityStore(ABC):
    """Storage backend for windowed counters."""

    @abstractmethod
    def increment(
        self,
        identifier: str,
        identifier_type: str,
        action: str,
        window_start: datetime,
        window_end: datetime,
    ) -> int:
        """Atomically add one to the bucket and return the new count."""

    @abstractmethod
    def read(
        self,
        identifier: str,
        identifier_type: str,
        action: str,
        window_start: datetime,
    ) -> int:
        """Current count of the bucket, zero if it does not exist."""

    @abstractmethod
    def purge_expired(self, older_than: datetime) -> int:
        """Drop buckets that ended before ``older_than``; return how many were removed."""

    @abstractmethod
    def active_windows(self, now: datetime) -> int:
        """Number of buckets whose window has not ended yet."""


class SqlVelocityStore(VelocityStore):
    """Velocity counters persisted in the ``velocity_windows`` table."""

    def __init__(self, session: Session):
        self.session = session

    def increment(self, identifier, identifier_type, action, window_start, window_end) -> int:
        table = VelocityWindow.__table__
        now = utcnow()
        stmt = dialect_insert(self.session, table).values(
            identifier=identifier,
            identifier_type=identifier_type,
            action=action,
            count=1,
            window_start=window_start,
            window_end=window_end,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["identifier", "identifier_type", "action", "window_start"],
            set_={"count": table.c["count"] + 1, "updated_at": now},
        ).returning(table.c["count"])
        return int(self.session.execute(stmt).scalar_one())

    def read(self, identifier, identifier_type, action, window_start) -> int:
        stmt = select(VelocityWindow.count).where(
            VelocityWindow.identifier == identifier,
            VelocityWindow.identifier_type == identifier_type,
            VelocityWindow.action == action,
            VelocityWindow.window_start == window_start,
        )
        count = self.session.execute(stmt).scalar_one_or_none()
        return int(count or 0)

    def purge_expired(self, older_than: datetime) -> int:
        result = self.session.execute(
            delete(VelocityWindow).where(VelocityWindow.window_end < older_than)
        )
        return int(result.rowcount or 0)

    def active_windows(self, now: datetime) -> int:
        stmt = select(func.count(VelocityWindow.id)).where(VelocityWindow.window_end > now)
        return int(self.session.execute(stmt).scalar_one())


class RedisVelocityStore(VelocityStore):
    """Velocity counters held in Redis; keys expire shortly after their window ends."""

    def __init__(self, client: redis.Redis, prefix: str = "fraud:velocity"):
        self.redis = client
        self.prefix = prefix

    def _key(self, identifier: str, identifier_type: str, action: str, window_start: datetime) -> str:
        bucket = int((window_start - EPOCH).total_seconds())
        return f"{self.prefix}:{identifier_type}:{action}:{identifier}:{bucket}"

    def increment(self, identifier, identifier_type, action, window_start, window_end) -> int:
        key = self._key(identifier, identifier_type, action, window_start)
        ttl = int((window_end - window_start + REDIS_EXPIRY_GRACE).total_seconds())
        pipe = self.redis.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, ttl)
        count, _ = pipe.execute()
        return int(count)

    def read(self, identifier, identifier_type, action, window_start) -> int:
        value = self.redis.get(self._key(identifier, identifier_type, action, window_start))
        return int(value) if value is not None else 0

    def purge_expired(self, older_than: datetime) -> int:
        # Redis expires keys on its own
        return 0

    def active_windows(self, now: datetime) -> int:
        return sum(1 for _ in self.redis.scan_iter(match=f"{self.prefix}:*"))


class VelocityTracker:
    """Count identity actions per fixed window and compare them to thresholds.

    Parameters
    ----------
    store : VelocityStore
        Counter backend.
    clock : Clock, optional
        Source of the current (naive UTC) time.
    """

    def __init__(self, store: VelocityStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or utcnow

    def track(
        self,
        identity_value: str,
        identity_type: IdentityType,
        action_type: str = "order",
        window_minutes: int = 60,
    ) -> int:
        """Record one action and return the count of the current window, this action included."""
        start, end = window_bounds(self.clock(), window_minutes)
        return self.store.increment(
            normalize_identity(identity_value, identity_type),
            IdentityType(identity_type).value,
            action_type,
            start,
            end,
        )

    def current_count(
        self,
        identity_value: str,
        identity_type: IdentityType,
        action_type: str = "order",
        window_minutes: int = 60,
    ) -> int:
        start, _ = window_bounds(self.clock(), window_minutes)
        return self.store.read(
            normalize_identity(identity_value, identity_type),
            IdentityType(identity_type).value,
            action_type,
            start,
        )

    def is_over_limit(
        self,
        identity_value: str,
        identity_type: IdentityType,
        threshold: int,
        window_minutes: int = 60,
        action_type: str = "order",
    ) -> bool:
        """Read-only check: has the current window already exceeded ``threshold``?"""
        return self.current_count(identity_value, identity_type, action_type, window_minutes) > threshold

    def track_and_check(
        self,
        identity_value: str,
        identity_type: IdentityType,
        threshold: int,
        action_type: str = "order",
        window_minutes: int = 60,
    ) -> VelocityCheck:
        """Record one action and decide from the count the increment returned.

        The decision never depends on a second read, so concurrent callers
        each see a distinct count.
        """
        count = self.track(identity_value, identity_type, action_type, window_minutes)
        over_limit = count > threshold
        if over_limit:
            logger.warning(
                f"Velocity limit exceeded for {IdentityType(identity_type).value} "
                f"({action_type}): {count} > {threshold} in {window_minutes}m"
            )
        return VelocityCheck(count=count, threshold=threshold, over_limit=over_limit)

    def track_transaction(
        self,
        context: TransactionContext,
        window_minutes: int = 60,
        action_type: str = "order",
    ) -> Dict[str, int]:
        """Track every identity present on a transaction.

        Returns
        -------
        Dict[str, int]
            ``velocity_<identity type>_<action>`` features, one per tracked identity.
        """
        features: Dict[str, int] = {}
        for identity_type, value in context.identities():
            count = self.track(value, identity_type, action_type, window_minutes)
            features[f"velocity_{identity_type.value}_{action_type}"] = count
        return features

    def cleanup(self, older_than: Optional[datetime] = None) -> int:
        """Remove windows that ended before ``older_than`` (default: one day ago)."""
        cutoff = older_than or self.clock() - timedelta(days=1)
        removed = self.store.purge_expired(cutoff)
        if removed:
            logger.info(f"Removed {removed} expired velocity windows")
        return removed

    def active_windows(self) -> int:
        return self.store.active_windows(self.clock())


__all__ = [
    "window_bounds",
    "VelocityStore",
    "SqlVelocityStore",
    "RedisVelocityStore",
    "VelocityTracker",
]
