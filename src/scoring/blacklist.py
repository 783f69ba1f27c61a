"""Blacklist lookups and maintenance.

Email values are stored as the SHA-256 hex digest of the lower-cased address,
so the table never holds raw emails. Every other identity is stored as given.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from schemas.fraud_schemas import BlacklistMatch, BlacklistSeverity, IdentityType, TransactionContext
from scoring.errors import BlacklistLookupError
from scoring.settings import LookupFailurePolicy
from storage.database import dialect_insert, utcnow
from storage.records import BlacklistEntry

logger = logging.getLogger("fraud-blacklist")

AUTO_BLACKLIST_REASON = "Multiple fraud attempts detected"
AUTO_BLACKLIST_NOTES = "Auto-blacklisted by fraud detection system"


def stored_value(identity_type: IdentityType, value: Any) -> str:
    """Value as persisted in the blacklist table (emails hashed)."""
    text = str(value).strip()
    if IdentityType(identity_type) == IdentityType.EMAIL:
        return hashlib.sha256(text.lower().encode("utf-8")).hexdigest()
    return text


class BlacklistChecker:
    """Check transactions against the blacklist and manage its entries.

    Parameters
    ----------
    session : Session
        Database session.
    failure_policy : LookupFailurePolicy
        Behaviour when the blacklist cannot be read. ``FAIL_OPEN`` treats the
        transaction as not blacklisted, ``FAIL_CLOSED`` raises
        :class:`BlacklistLookupError`.
    """

    def __init__(
        self,
        session: Session,
        failure_policy: LookupFailurePolicy = LookupFailurePolicy.FAIL_OPEN,
    ):
        self.session = session
        self.failure_policy = failure_policy

    def check(self, context: TransactionContext) -> BlacklistMatch:
        """Check ip, email, user and device of a transaction; the first active hit wins."""
        try:
            for identity_type, value in context.identities():
                entry = self.is_blacklisted(identity_type, value)
                if entry is not None:
                    logger.warning(
                        f"Blacklist hit for order {context.order_id}: "
                        f"type={identity_type.value}, severity={entry.severity}"
                    )
                    return BlacklistMatch(
                        is_blacklisted=True,
                        type=identity_type,
                        reason=entry.reason,
                        severity=entry.severity,
                        entry_id=entry.id,
                    )
        except SQLAlchemyError as exc:
            self.session.rollback()
            if self.failure_policy == LookupFailurePolicy.FAIL_CLOSED:
                raise BlacklistLookupError(f"Blacklist lookup failed: {exc}") from exc
            logger.error(f"Blacklist lookup failed, continuing without it: {exc}")
        return BlacklistMatch(is_blacklisted=False)

    def is_blacklisted(self, identity_type: IdentityType, value: Any) -> Optional[BlacklistEntry]:
        """Return the active entry for a value and count the hit, or ``None``."""
        stmt = select(BlacklistEntry).where(
            BlacklistEntry.type == IdentityType(identity_type).value,
            BlacklistEntry.value == stored_value(identity_type, value),
            BlacklistEntry.is_active.is_(True),
        )
        entry = self.session.execute(stmt).scalar_one_or_none()
        if entry is None:
            return None
        entry.hit_count = BlacklistEntry.hit_count + 1
        self.session.flush()
        return entry

    def get(self, identity_type: IdentityType, value: Any) -> Optional[BlacklistEntry]:
        stmt = select(BlacklistEntry).where(
            BlacklistEntry.type == IdentityType(identity_type).value,
            BlacklistEntry.value == stored_value(identity_type, value),
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def add(
        self,
        identity_type: IdentityType,
        value: Any,
        reason: str,
        severity: BlacklistSeverity = BlacklistSeverity.MEDIUM,
        added_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> BlacklistEntry:
        """Create an entry or update and reactivate the existing one.

        The row is created with ``INSERT ... ON CONFLICT DO NOTHING`` on the
        unique (type, value) key, so concurrent adds never duplicate it.
        """
        kind = IdentityType(identity_type).value
        key = stored_value(identity_type, value)
        now = utcnow()
        stmt = dialect_insert(self.session, BlacklistEntry.__table__).values(
            type=kind,
            value=key,
            reason=reason,
            severity=BlacklistSeverity(severity).value,
            is_active=True,
            hit_count=0,
            added_by=added_by,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        self.session.execute(stmt.on_conflict_do_nothing(index_elements=["type", "value"]))

        entry = self.get(identity_type, value)
        self.session.refresh(entry)
        entry.reason = reason
        entry.severity = BlacklistSeverity(severity).value
        entry.is_active = True
        if notes is not None:
            entry.notes = notes
        if added_by is not None:
            entry.added_by = added_by
        self.session.flush()
        logger.info(f"Blacklisted {kind} entry {entry.id} (severity={entry.severity})")
        return entry

    def remove(self, identity_type: IdentityType, value: Any) -> bool:
        """Deactivate an entry; returns ``False`` when there was nothing to deactivate."""
        entry = self.get(identity_type, value)
        if entry is None or not entry.is_active:
            return False
        entry.is_active = False
        self.session.flush()
        logger.info(f"Removed {entry.type} entry {entry.id} from blacklist")
        return True

    def auto_blacklist(
        self,
        value: Any,
        identity_type: IdentityType,
        reason: str = AUTO_BLACKLIST_REASON,
    ) -> BlacklistEntry:
        """System-generated entry with high severity and no expiry.

        An entry that is already active is returned untouched.
        """
        existing = self.get(identity_type, value)
        if existing is not None and existing.is_active:
            return existing
        logger.warning(f"Auto-blacklisting {IdentityType(identity_type).value}: {reason}")
        return self.add(
            identity_type,
            value,
            reason,
            severity=BlacklistSeverity.HIGH,
            notes=AUTO_BLACKLIST_NOTES,
        )

    def statistics(self) -> Dict[str, Any]:
        """Counts of entries by type and severity, plus total hits."""
        total = self.session.execute(select(func.count(BlacklistEntry.id))).scalar_one()
        active = self.session.execute(
            select(func.count(BlacklistEntry.id)).where(BlacklistEntry.is_active.is_(True))
        ).scalar_one()
        by_type = self.session.execute(
            select(BlacklistEntry.type, func.count(BlacklistEntry.id))
            .where(BlacklistEntry.is_active.is_(True))
            .group_by(BlacklistEntry.type)
        ).all()
        by_severity = self.session.execute(
            select(BlacklistEntry.severity, func.count(BlacklistEntry.id))
            .where(BlacklistEntry.is_active.is_(True))
            .group_by(BlacklistEntry.severity)
        ).all()
        total_hits = self.session.execute(
            select(func.coalesce(func.sum(BlacklistEntry.hit_count), 0))
        ).scalar_one()
        return {
            "total_entries": int(total),
            "active_entries": int(active),
            "by_type": {kind: int(count) for kind, count in by_type},
            "by_severity": {severity: int(count) for severity, count in by_severity},
            "total_hits": int(total_hits),
        }


__all__ = [
    "AUTO_BLACKLIST_REASON",
    "stored_value",
    "BlacklistChecker",
]
