"""Map scores to risk levels and apply the automated order action."""

from __future__ import annotations

import logging
from typing import Optional

from schemas.fraud_schemas import (
    ACTION_BY_LEVEL,
    OrderStatus,
    RecommendedAction,
    RiskLevel,
    ScoreStatus,
)
from scoring.settings import STANDARD_THRESHOLDS, RiskThresholds
from storage.records import FraudScore, Order

logger = logging.getLogger("fraud-classifier")


class RiskClassifier:
    """Classify a 0-100 score against a threshold policy.

    Parameters
    ----------
    thresholds : RiskThresholds, optional
        Inclusive lower bounds of each tier. Defaults to the standard policy.
    """

    def __init__(self, thresholds: Optional[RiskThresholds] = None):
        self.thresholds = thresholds or STANDARD_THRESHOLDS

    def classify(self, score: int) -> RiskLevel:
        t = self.thresholds
        if score >= t.critical:
            return RiskLevel.CRITICAL
        if score >= t.high:
            return RiskLevel.HIGH
        if score >= t.medium:
            return RiskLevel.MEDIUM
        if score >= t.low:
            return RiskLevel.LOW
        return RiskLevel.MINIMAL

    @staticmethod
    def initial_status(level: RiskLevel) -> ScoreStatus:
        if level in (RiskLevel.CRITICAL, RiskLevel.HIGH):
            return ScoreStatus.UNDER_REVIEW
        if level == RiskLevel.MEDIUM:
            return ScoreStatus.PENDING
        return ScoreStatus.APPROVED

    @staticmethod
    def recommended_action(level: RiskLevel) -> RecommendedAction:
        return ACTION_BY_LEVEL[RiskLevel(level)]

    def apply_automated_action(self, order: Order, score: FraudScore) -> None:
        """Move the order and score into the state their risk level calls for.

        - critical: order cancelled, score rejected
        - high: order held for review, score under review
        - medium: order flagged, still processed
        - low / minimal: score approved
        """
        level = RiskLevel(score.risk_level)
        if level == RiskLevel.CRITICAL:
            order.status = OrderStatus.CANCELLED.value
            score.status = ScoreStatus.REJECTED.value
        elif level == RiskLevel.HIGH:
            order.status = OrderStatus.PENDING_FRAUD_REVIEW.value
            score.status = ScoreStatus.UNDER_REVIEW.value
        elif level == RiskLevel.MEDIUM:
            order.fraud_flagged = True
        else:
            score.status = ScoreStatus.APPROVED.value
        logger.info(
            f"Order {order.id}: level={level.value}, order_status={order.status}, "
            f"score_status={score.status}"
        )


__all__ = ["RiskClassifier"]
