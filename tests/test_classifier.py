"""Tests for risk classification and automated order actions."""

import pytest

from schemas.fraud_schemas import RecommendedAction, RiskLevel, ScoreStatus
from scoring.classifier import RiskClassifier
from scoring.settings import STRICT_THRESHOLDS, THRESHOLD_POLICIES, RiskThresholds
from storage.records import FraudScore


class TestClassify:

    @pytest.mark.parametrize(
        "score, level",
        [
            (0, RiskLevel.MINIMAL),
            (29, RiskLevel.MINIMAL),
            (30, RiskLevel.LOW),
            (39, RiskLevel.LOW),
            (40, RiskLevel.MEDIUM),
            (59, RiskLevel.MEDIUM),
            (60, RiskLevel.HIGH),
            (89, RiskLevel.HIGH),
            (90, RiskLevel.CRITICAL),
            (100, RiskLevel.CRITICAL),
        ],
    )
    def test_standard_thresholds(self, score, level):
        assert RiskClassifier().classify(score) is level

    def test_strict_policy_lowers_critical_bound(self):
        classifier = RiskClassifier(STRICT_THRESHOLDS)
        assert classifier.classify(80) is RiskLevel.CRITICAL
        assert classifier.classify(79) is RiskLevel.HIGH
        assert THRESHOLD_POLICIES["strict"] is STRICT_THRESHOLDS

    def test_level_is_monotonic_in_score(self):
        order = list(RiskLevel)
        classifier = RiskClassifier()
        levels = [order.index(classifier.classify(score)) for score in range(101)]
        assert levels == sorted(levels)

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValueError):
            RiskThresholds(critical=50, high=60)


class TestStatusAndAction:

    def test_initial_status(self):
        assert RiskClassifier.initial_status(RiskLevel.CRITICAL) is ScoreStatus.UNDER_REVIEW
        assert RiskClassifier.initial_status(RiskLevel.HIGH) is ScoreStatus.UNDER_REVIEW
        assert RiskClassifier.initial_status(RiskLevel.MEDIUM) is ScoreStatus.PENDING
        assert RiskClassifier.initial_status(RiskLevel.LOW) is ScoreStatus.APPROVED
        assert RiskClassifier.initial_status(RiskLevel.MINIMAL) is ScoreStatus.APPROVED

    def test_recommended_action(self):
        assert RiskClassifier.recommended_action(RiskLevel.CRITICAL) is RecommendedAction.BLOCK
        assert RiskClassifier.recommended_action(RiskLevel.HIGH) is RecommendedAction.REVIEW
        assert RiskClassifier.recommended_action(RiskLevel.MEDIUM) is RecommendedAction.FLAG
        assert RiskClassifier.recommended_action(RiskLevel.MINIMAL) is RecommendedAction.APPROVE


class TestAutomatedAction:

    def score_for(self, order, level, status="pending"):
        return FraudScore(order_id=order.id, total_score=0, risk_level=level, status=status)

    def test_critical_cancels_order(self, make_order):
        order = make_order()
        score = self.score_for(order, "critical")
        RiskClassifier().apply_automated_action(order, score)
        assert order.status == "cancelled"
        assert score.status == "rejected"

    def test_high_holds_order_for_review(self, make_order):
        order = make_order()
        score = self.score_for(order, "high")
        RiskClassifier().apply_automated_action(order, score)
        assert order.status == "pending_fraud_review"
        assert score.status == "under_review"

    def test_medium_flags_but_keeps_processing(self, make_order):
        order = make_order()
        score = self.score_for(order, "medium")
        RiskClassifier().apply_automated_action(order, score)
        assert order.fraud_flagged is True
        assert order.status == "pending"
        assert score.status == "pending"

    @pytest.mark.parametrize("level", ["low", "minimal"])
    def test_low_risk_is_approved(self, make_order, level):
        order = make_order()
        score = self.score_for(order, level)
        RiskClassifier().apply_automated_action(order, score)
        assert score.status == "approved"
        assert order.fraud_flagged is False
