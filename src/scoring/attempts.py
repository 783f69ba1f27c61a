"""Fraud attempt audit log and the auto-blacklist policy built on top of it."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from preprocessing.order_features import FeatureSet
from schemas.fraud_schemas import AttemptType, IdentityType, RiskLevel, TransactionContext
from scoring.blacklist import AUTO_BLACKLIST_REASON, BlacklistChecker
from scoring.settings import AutoBlacklistPolicy
from storage.database import Clock, utcnow
from storage.records import BlacklistEntry, FraudAttempt

logger = logging.getLogger("fraud-attempts")

BASE_SEVERITY: Dict[str, int] = {
    AttemptType.CARD_TESTING.value: 8,
    AttemptType.IDENTITY_THEFT.value: 10,
    AttemptType.FRIENDLY_FRAUD.value: 5,
    AttemptType.BOT_ACTIVITY.value: 5,
    AttemptType.BLACKLIST_MATCH.value: 9,
}
DEFAULT_SEVERITY = 5
HIGH_AMOUNT = 1000.0

IDENTITY_COLUMNS = {
    IdentityType.IP: FraudAttempt.ip_address,
    IdentityType.USER: FraudAttempt.user_id,
    IdentityType.DEVICE: FraudAttempt.device_fingerprint,
}


def classify_attempt(features: FeatureSet) -> AttemptType:
    """Name the abuse pattern a high-risk order most resembles."""
    amount = features.get("order_amount", 0.0)
    orders = features.get("user_orders_count", 0)
    if amount < 10 and orders == 0:
        return AttemptType.CARD_TESTING
    if amount > 500 and orders == 0:
        return AttemptType.IDENTITY_THEFT
    if features.get("all_digital"):
        return AttemptType.FRIENDLY_FRAUD
    return AttemptType.BOT_ACTIVITY


def severity_for(attempt_type: AttemptType, amount: float = 0.0, repeat_offender: bool = False) -> int:
    """Base severity of the attempt type, raised for repeat offenders and large amounts (max 10)."""
    severity = BASE_SEVERITY.get(AttemptType(attempt_type).value, DEFAULT_SEVERITY)
    if repeat_offender:
        severity = min(10, severity + 2)
    if amount > HIGH_AMOUNT:
        severity = min(10, severity + 1)
    return severity


class FraudAttemptLog:
    """Append-only log of detected fraud attempts.

    Parameters
    ----------
    session : Session
        Database session.
    blacklist : BlacklistChecker
        Used to create auto-blacklist entries.
    policy : AutoBlacklistPolicy, optional
        Attempt count, window and minimum severity that trigger auto-blacklisting.
    clock : Clock, optional
        Source of the current (naive UTC) time.
    """

    def __init__(
        self,
        session: Session,
        blacklist: BlacklistChecker,
        policy: Optional[AutoBlacklistPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.session = session
        self.blacklist = blacklist
        self.policy = policy or AutoBlacklistPolicy()
        self.clock = clock or utcnow

    def log_attempt(
        self,
        context: TransactionContext,
        attempt_type: AttemptType,
        attempt_data: Optional[Dict[str, Any]] = None,
        severity: Optional[int] = None,
        blocked: bool = False,
        block_reason: Optional[str] = None,
    ) -> FraudAttempt:
        data = dict(attempt_data or {})
        data.setdefault("amount", context.amount)
        if severity is None:
            severity = severity_for(
                attempt_type, context.amount, repeat_offender=bool(data.get("repeat_offender"))
            )
        attempt = FraudAttempt(
            user_id=context.user_id,
            order_id=context.order_id,
            attempt_type=AttemptType(attempt_type).value,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            device_fingerprint=context.device_fingerprint,
            attempt_data=data,
            severity=severity,
            blocked=blocked,
            block_reason=block_reason,
            created_at=self.clock(),
        )
        self.session.add(attempt)
        self.session.flush()
        logger.info(
            f"Logged {attempt.attempt_type} attempt for order {context.order_id} "
            f"(severity={severity}, blocked={blocked})"
        )
        return attempt

    def recent_attempts(
        self,
        identifier: Any,
        identity_type: IdentityType = IdentityType.IP,
        hours: int = 24,
        min_severity: int = 1,
    ) -> List[FraudAttempt]:
        """Attempts by one identity within the last ``hours``, newest first."""
        column = IDENTITY_COLUMNS.get(IdentityType(identity_type))
        if column is None:
            raise ValueError(f"Attempts are not tracked by {identity_type}")
        if identity_type == IdentityType.USER:
            identifier = int(identifier)
        since = self.clock() - timedelta(hours=hours)
        stmt = (
            select(FraudAttempt)
            .where(column == identifier)
            .where(FraudAttempt.created_at > since)
            .where(FraudAttempt.severity >= min_severity)
            .order_by(FraudAttempt.created_at.desc(), FraudAttempt.id.desc())
        )
        return list(self.session.execute(stmt).scalars())

    def should_blacklist(self, identifier: Any, identity_type: IdentityType) -> bool:
        attempts = self.recent_attempts(
            identifier,
            identity_type,
            hours=self.policy.window_hours,
            min_severity=self.policy.min_severity,
        )
        return len(attempts) >= self.policy.attempt_threshold

    def check_auto_blacklist(self, context: TransactionContext, level: RiskLevel) -> List[BlacklistEntry]:
        """Blacklist the IP and user once they reach the attempt threshold.

        Only high and critical evaluations are considered. The attempt logged
        for the current evaluation counts towards the threshold.
        """
        if RiskLevel(level) not in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            return []

        entries: List[BlacklistEntry] = []
        candidates = [(IdentityType.IP, context.ip_address), (IdentityType.USER, context.user_id)]
        for identity_type, identifier in candidates:
            if identifier is None or identifier == "":
                continue
            if self.should_blacklist(identifier, identity_type):
                entries.append(
                    self.blacklist.auto_blacklist(identifier, identity_type, AUTO_BLACKLIST_REASON)
                )
        return entries

    def statistics(self, days: int = 30) -> Dict[str, Any]:
        since: datetime = self.clock() - timedelta(days=days)
        recent = FraudAttempt.created_at > since

        total = self.session.execute(select(func.count(FraudAttempt.id)).where(recent)).scalar_one()
        blocked = self.session.execute(
            select(func.count(FraudAttempt.id)).where(recent, FraudAttempt.blocked.is_(True))
        ).scalar_one()
        high_severity = self.session.execute(
            select(func.count(FraudAttempt.id)).where(recent, FraudAttempt.severity >= 7)
        ).scalar_one()
        unique_ips = self.session.execute(
            select(func.count(func.distinct(FraudAttempt.ip_address))).where(recent)
        ).scalar_one()
        by_type = self.session.execute(
            select(FraudAttempt.attempt_type, func.count(FraudAttempt.id))
            .where(recent)
            .group_by(FraudAttempt.attempt_type)
        ).all()
        repeat_offenders = self.session.execute(
            select(FraudAttempt.ip_address)
            .where(recent, FraudAttempt.ip_address.is_not(None))
            .group_by(FraudAttempt.ip_address)
            .having(func.count(FraudAttempt.id) >= 3)
        ).all()

        return {
            "total_attempts": int(total),
            "blocked_attempts": int(blocked),
            "high_severity": int(high_severity),
            "unique_ips": int(unique_ips),
            "by_type": {attempt_type: int(count) for attempt_type, count in by_type},
            "repeat_offenders": len(repeat_offenders),
        }


__all__ = [
    "BASE_SEVERITY",
    "classify_attempt",
    "severity_for",
    "FraudAttemptLog",
]
