"""Operational jobs for the fraud scoring database.

``fraud-seed-rules`` installs the built-in rule set and
``fraud-velocity-cleanup`` drops velocity windows that ended more than a
day ago. Both read the same ``FRAUD_*`` environment as the API and the
consumer, and are meant to run from cron or a deployment hook.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from scoring.settings import FraudSettings
from scoring.velocity import SqlVelocityStore, VelocityTracker
from serving.fraud_evaluator import get_settings, install_default_rules
from storage.database import Clock, create_session_factory, session_scope, utcnow

logger = logging.getLogger("fraud-maintenance")


def _factory(settings: Optional[FraudSettings]) -> sessionmaker[Session]:
    settings = settings or get_settings()
    return create_session_factory(settings.database_url)


def seed_rules(settings: Optional[FraudSettings] = None) -> int:
    """Install any missing default rules; returns how many were added."""
    added = install_default_rules(_factory(settings))
    logger.info(f"Default rule seeding finished, {added} rules added")
    return added


def cleanup_velocity(
    settings: Optional[FraudSettings] = None,
    older_than: Optional[datetime] = None,
    clock: Optional[Clock] = None,
) -> int:
    """Delete expired rows from ``velocity_windows``.

    Parameters
    ----------
    settings : FraudSettings, optional
        Settings naming the database. Loaded from the environment when omitted.
    older_than : datetime, optional
        Windows that ended before this instant are removed. Defaults to one
        day before ``clock()``.
    clock : Clock, optional
        Source of the current (naive UTC) time.

    Returns
    -------
    int
        Number of rows removed.
    """
    with session_scope(_factory(settings)) as session:
        # Redis counters expire on their own, only the SQL table needs purging
        tracker = VelocityTracker(SqlVelocityStore(session), clock or utcnow)
        removed = tracker.cleanup(older_than)
    logger.info(f"Velocity cleanup finished, {removed} windows removed")
    return removed


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def seed_rules_main() -> None:
    """Entry-point for seeding the default fraud rules."""
    _configure_logging()
    try:
        seed_rules()
    except Exception as exc:
        logger.error(f"Rule seeding failed: {exc}")
        sys.exit(1)


def cleanup_velocity_main() -> None:
    """Entry-point for purging expired velocity windows."""
    _configure_logging()
    try:
        cleanup_velocity()
    except Exception as exc:
        logger.error(f"Velocity cleanup failed: {exc}")
        sys.exit(1)


__all__ = ["seed_rules", "cleanup_velocity", "seed_rules_main", "cleanup_velocity_main"]
