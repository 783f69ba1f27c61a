"""Tests for rule seeding, velocity cleanup and their console entry points."""

import pytest
from sqlalchemy import func, select

from schemas.fraud_schemas import IdentityType
from scoring.default_rules import DEFAULT_RULES
from scoring.settings import FraudSettings
from scoring.velocity import SqlVelocityStore, VelocityTracker
from serving import maintenance
from serving.fraud_evaluator import get_session_factory
from storage.database import create_session_factory, session_scope
from storage.records import FraudRule, VelocityWindow


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'fraud.db'}"


@pytest.fixture
def file_settings(database_url):
    return FraudSettings(database_url=database_url)


def count_rows(database_url, model):
    with session_scope(create_session_factory(database_url)) as session:
        return session.execute(select(func.count(model.id))).scalar_one()


class TestSeedRules:

    def test_installs_defaults_once(self, database_url, file_settings):
        assert maintenance.seed_rules(file_settings) == len(DEFAULT_RULES)
        assert maintenance.seed_rules(file_settings) == 0
        assert count_rows(database_url, FraudRule) == len(DEFAULT_RULES)

    def test_cached_session_factory_seeds_rules(self, database_url):
        try:
            get_session_factory(database_url)
        finally:
            get_session_factory.cache_clear()
        assert count_rows(database_url, FraudRule) == len(DEFAULT_RULES)

    def test_seeding_can_be_turned_off(self, database_url):
        try:
            get_session_factory(database_url, seed_rules=False)
        finally:
            get_session_factory.cache_clear()
        assert count_rows(database_url, FraudRule) == 0

    def test_entry_point_exits_on_failure(self, monkeypatch):
        def broken(settings=None):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(maintenance, "seed_rules", broken)
        with pytest.raises(SystemExit) as exc_info:
            maintenance.seed_rules_main()
        assert exc_info.value.code == 1


class TestVelocityCleanup:

    def test_removes_windows_older_than_a_day(self, database_url, file_settings, clock):
        with session_scope(create_session_factory(database_url)) as session:
            tracker = VelocityTracker(SqlVelocityStore(session), clock)
            tracker.track("203.0.113.10", IdentityType.IP)
            clock.advance(days=2)
            tracker.track("203.0.113.10", IdentityType.IP)

        removed = maintenance.cleanup_velocity(file_settings, clock=clock)

        assert removed == 1
        assert count_rows(database_url, VelocityWindow) == 1

    def test_explicit_cutoff(self, database_url, file_settings, clock):
        with session_scope(create_session_factory(database_url)) as session:
            VelocityTracker(SqlVelocityStore(session), clock).track("device-abc", IdentityType.DEVICE)

        assert maintenance.cleanup_velocity(file_settings, older_than=clock()) == 0
        assert maintenance.cleanup_velocity(file_settings, older_than=clock.advance(hours=2)) == 1

    def test_entry_point_exits_on_failure(self, monkeypatch):
        def broken(settings=None, older_than=None, clock=None):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(maintenance, "cleanup_velocity", broken)
        with pytest.raises(SystemExit) as exc_info:
            maintenance.cleanup_velocity_main()
        assert exc_info.value.code == 1
