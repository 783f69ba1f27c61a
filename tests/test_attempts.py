"""Tests for fraud attempt logging and auto-blacklisting."""

from types import MappingProxyType

import pytest

from schemas.fraud_schemas import AttemptType, IdentityType, RiskLevel, TransactionContext
from scoring.attempts import FraudAttemptLog, classify_attempt, severity_for
from scoring.blacklist import BlacklistChecker
from scoring.settings import AutoBlacklistPolicy


@pytest.fixture
def attempt_log(session, clock):
    return FraudAttemptLog(session, BlacklistChecker(session), clock=clock)


def context_for(order_id, clock, ip="198.51.100.20", user_id=None, amount=200.0):
    return TransactionContext(
        order_id=order_id,
        user_id=user_id,
        amount=amount,
        ip_address=ip,
        device_fingerprint="device-xyz",
        timestamp=clock(),
    )


class TestClassifyAttempt:

    def test_tiny_first_order_is_card_testing(self):
        features = MappingProxyType({"order_amount": 5.0, "user_orders_count": 0, "all_digital": False})
        assert classify_attempt(features) is AttemptType.CARD_TESTING

    def test_large_first_order_is_identity_theft(self):
        features = MappingProxyType({"order_amount": 900.0, "user_orders_count": 0})
        assert classify_attempt(features) is AttemptType.IDENTITY_THEFT

    def test_digital_basket_is_friendly_fraud(self):
        features = MappingProxyType({"order_amount": 60.0, "user_orders_count": 4, "all_digital": True})
        assert classify_attempt(features) is AttemptType.FRIENDLY_FRAUD

    def test_everything_else_is_bot_activity(self):
        features = MappingProxyType({"order_amount": 60.0, "user_orders_count": 4, "all_digital": False})
        assert classify_attempt(features) is AttemptType.BOT_ACTIVITY


class TestSeverity:

    def test_base_severities(self):
        assert severity_for(AttemptType.CARD_TESTING) == 8
        assert severity_for(AttemptType.IDENTITY_THEFT) == 10
        assert severity_for(AttemptType.BOT_ACTIVITY) == 5

    def test_large_amount_adds_one_capped_at_ten(self):
        assert severity_for(AttemptType.CARD_TESTING, amount=1500.0) == 9
        assert severity_for(AttemptType.IDENTITY_THEFT, amount=1500.0) == 10

    def test_repeat_offender(self):
        assert severity_for(AttemptType.FRIENDLY_FRAUD, repeat_offender=True) == 7


class TestAttemptLog:

    def test_log_attempt_copies_identity(self, attempt_log, clock):
        attempt = attempt_log.log_attempt(
            context_for(1, clock, user_id=3), AttemptType.CARD_TESTING, blocked=True, block_reason="score 95"
        )
        assert attempt.ip_address == "198.51.100.20"
        assert attempt.user_id == 3
        assert attempt.severity == 8
        assert attempt.blocked is True
        assert attempt.attempt_data["amount"] == 200.0

    def test_recent_attempts_respect_window(self, attempt_log, clock):
        attempt_log.log_attempt(context_for(1, clock), AttemptType.BOT_ACTIVITY)
        clock.advance(hours=25)
        attempt_log.log_attempt(context_for(2, clock), AttemptType.BOT_ACTIVITY)

        recent = attempt_log.recent_attempts("198.51.100.20", IdentityType.IP, hours=24)
        assert [attempt.order_id for attempt in recent] == [2]

    def test_statistics(self, attempt_log, clock):
        for order_id in range(3):
            attempt_log.log_attempt(context_for(order_id, clock), AttemptType.CARD_TESTING, blocked=True)
        attempt_log.log_attempt(context_for(9, clock, ip="192.0.2.1"), AttemptType.BOT_ACTIVITY)

        stats = attempt_log.statistics(days=30)
        assert stats["total_attempts"] == 4
        assert stats["blocked_attempts"] == 3
        assert stats["high_severity"] == 3
        assert stats["unique_ips"] == 2
        assert stats["by_type"] == {"card_testing": 3, "bot_activity": 1}
        assert stats["repeat_offenders"] == 1


class TestAutoBlacklist:

    def test_fifth_attempt_in_a_day_blacklists_the_ip(self, session, attempt_log, clock):
        checker = attempt_log.blacklist
        for order_id in range(1, 5):
            context = context_for(order_id, clock)
            attempt_log.log_attempt(context, AttemptType.BOT_ACTIVITY)
            assert attempt_log.check_auto_blacklist(context, RiskLevel.HIGH) == []
            clock.advance(hours=1)

        context = context_for(5, clock)
        attempt_log.log_attempt(context, AttemptType.BOT_ACTIVITY)
        entries = attempt_log.check_auto_blacklist(context, RiskLevel.HIGH)

        assert len(entries) == 1
        assert entries[0].type == "ip"
        assert entries[0].severity == "high"
        assert checker.is_blacklisted(IdentityType.IP, "198.51.100.20") is not None

    def test_medium_risk_never_blacklists(self, attempt_log, clock):
        for order_id in range(6):
            attempt_log.log_attempt(context_for(order_id, clock), AttemptType.BOT_ACTIVITY)
        assert attempt_log.check_auto_blacklist(context_for(7, clock), RiskLevel.MEDIUM) == []

    def test_user_is_blacklisted_alongside_ip(self, attempt_log, clock):
        for order_id in range(5):
            attempt_log.log_attempt(context_for(order_id, clock, user_id=11), AttemptType.BOT_ACTIVITY)
        entries = attempt_log.check_auto_blacklist(context_for(5, clock, user_id=11), RiskLevel.CRITICAL)
        assert sorted(entry.type for entry in entries) == ["ip", "user"]

    def test_policy_minimum_severity(self, session, clock):
        policy = AutoBlacklistPolicy(attempt_threshold=2, min_severity=7)
        attempt_log = FraudAttemptLog(session, BlacklistChecker(session), policy, clock)
        for order_id in range(3):
            attempt_log.log_attempt(context_for(order_id, clock), AttemptType.BOT_ACTIVITY)
        assert attempt_log.check_auto_blacklist(context_for(4, clock), RiskLevel.HIGH) == []

        attempt_log.log_attempt(context_for(5, clock), AttemptType.CARD_TESTING)
        attempt_log.log_attempt(context_for(6, clock), AttemptType.CARD_TESTING)
        assert len(attempt_log.check_auto_blacklist(context_for(6, clock), RiskLevel.HIGH)) == 1
