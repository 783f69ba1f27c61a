"""Fraud Evaluation Service for Marketplace Orders.

This module provides the core fraud evaluation pipeline that is used by
both the Kafka consumer and the REST API:

blacklist check → feature extraction → velocity tracking → rule
evaluation → score aggregation → risk classification → automated order
action, attempt logging and auto-blacklisting.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
import redis
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from preprocessing.order_features import FeatureSet, OrderFeatureExtractor, merge_features
from schemas.fraud_schemas import (
    AttemptType,
    BlacklistMatch,
    FraudEvaluationResult,
    OrderStatus,
    RiskLevel,
    ScoreStatus,
    TransactionContext,
)
from scoring.aggregator import ScoreAggregator
from scoring.attempts import FraudAttemptLog, classify_attempt
from scoring.blacklist import BlacklistChecker
from scoring.classifier import RiskClassifier
from scoring.errors import OrderNotFoundError, ScoreNotFoundError
from scoring.rules import RuleEvaluator
from scoring.settings import FraudSettings, ScoringMode, load_settings
from scoring.signals import RiskSignalProvider, build_signal_providers
from scoring.velocity import RedisVelocityStore, SqlVelocityStore, VelocityStore, VelocityTracker
from storage.database import Clock, create_session_factory, session_scope, utcnow
from storage.records import FraudRule, FraudScore, Order

logger = logging.getLogger("fraud-evaluator")

SAFE_DEFAULT_SCORE = 50
HIGH_RISK_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)


class FraudEvaluator:
    """Fraud evaluator for marketplace orders.

    One evaluator works on one database session; every public operation
    commits its own changes.

    Parameters
    ----------
    session : Session
        Database session.
    settings : FraudSettings, optional
        Scoring configuration. Defaults to ``FraudSettings()``.
    providers : Sequence[RiskSignalProvider], optional
        External signal providers. Built from the settings in ensemble mode
        when omitted.
    velocity_store : VelocityStore, optional
        Counter backend. Defaults to the ``velocity_windows`` table.
    clock : Clock, optional
        Source of the current (naive UTC) time.
    """

    def __init__(
        self,
        session: Session,
        settings: Optional[FraudSettings] = None,
        providers: Optional[Sequence[RiskSignalProvider]] = None,
        velocity_store: Optional[VelocityStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.session = session
        self.settings = settings or FraudSettings()
        self.clock = clock or utcnow

        if providers is None:
            providers = (
                build_signal_providers(self.settings)
                if self.settings.scoring_mode == ScoringMode.ENSEMBLE
                else []
            )

        self.blacklist = BlacklistChecker(session, self.settings.lookup_failure_policy)
        self.extractor = OrderFeatureExtractor(session)
        self.velocity = VelocityTracker(velocity_store or SqlVelocityStore(session), self.clock)
        self.rules = RuleEvaluator(session)
        self.aggregator = ScoreAggregator(
            self.settings.scoring_mode,
            self.settings.weights,
            providers,
            signal_fallbacks={config.name: config.fallback for config in self.settings.signals},
        )
        self.classifier = RiskClassifier(self.settings.thresholds)
        self.attempts = FraudAttemptLog(session, self.blacklist, self.settings.auto_blacklist, self.clock)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_order(self, order_id: int) -> FraudScore:
        """Run the full pipeline for one order and persist its fraud score.

        Parameters
        ----------
        order_id : int
            Order to evaluate.

        Returns
        -------
        FraudScore
            Persisted score. When the pipeline fails unexpectedly, a safe
            default score (50, medium, under review) is persisted instead.

        Raises
        ------
        OrderNotFoundError
            If the order does not exist.
        """
        order = self._load_order(order_id)
        user_id = order.user_id

        try:
            # Snapshot errors fall back to the safe default as well
            context = TransactionContext.from_order(order)
            score = self._evaluate(order, context)
            self.session.commit()
        except Exception as exc:
            logger.exception(f"Fraud analysis failed for order {order_id}, storing safe default")
            self.session.rollback()
            score = self._store_safe_default(order_id, user_id, exc)
        return score

    def _evaluate(self, order: Order, context: TransactionContext) -> FraudScore:
        match = self.blacklist.check(context)

        # Counted before any short-circuit and committed so the counts survive later failures
        velocity = self.velocity.track_transaction(
            context,
            window_minutes=self.settings.velocity_window_minutes,
            action_type=self.settings.velocity_action,
        )
        self.session.commit()

        if match.is_blacklisted:
            return self._reject_blacklisted(order, context, match, velocity)

        features = merge_features(self.extractor.extract(context), velocity)
        rule_results = self.rules.evaluate(features, order_id=order.id)
        aggregate = self.aggregator.aggregate(rule_results, features)
        level = self.classifier.classify(aggregate.total_score)

        breakdown: Dict[str, Any] = aggregate.breakdown.model_dump()
        breakdown["rules"] = rule_results.model_dump()

        score = FraudScore(
            order_id=order.id,
            user_id=context.user_id,
            total_score=aggregate.total_score,
            risk_level=level.value,
            triggered_rules=rule_results.triggered_rule_ids,
            score_breakdown=breakdown,
            analysis_data=dict(features),
            status=self.classifier.initial_status(level).value,
            created_at=self.clock(),
        )
        self.session.add(score)
        self.session.flush()

        self.classifier.apply_automated_action(order, score)

        if level in HIGH_RISK_LEVELS:
            self._log_high_risk_attempt(context, features, score, level)

        self.session.flush()
        logger.info(
            f"Order {order.id}: score={score.total_score}, level={score.risk_level}, "
            f"action={self.classifier.recommended_action(level).value}, "
            f"rules={len(rule_results.triggered)}/{rule_results.total_rules_checked}"
        )
        return score

    def _reject_blacklisted(
        self,
        order: Order,
        context: TransactionContext,
        match: BlacklistMatch,
        velocity: Dict[str, int],
    ) -> FraudScore:
        self.attempts.log_attempt(
            context,
            AttemptType.BLACKLIST_MATCH,
            attempt_data={"blacklist_type": match.type, "blacklist_entry_id": match.entry_id},
            blocked=True,
            block_reason=match.reason,
        )
        score = FraudScore(
            order_id=order.id,
            user_id=context.user_id,
            total_score=100,
            risk_level=RiskLevel.CRITICAL.value,
            triggered_rules=[],
            score_breakdown={"mode": "blacklist", "blacklist": match.model_dump()},
            analysis_data=dict(velocity),
            status=ScoreStatus.REJECTED.value,
            created_at=self.clock(),
        )
        self.session.add(score)
        self.session.flush()
        self.classifier.apply_automated_action(order, score)
        self.session.flush()
        logger.warning(f"Order {order.id} rejected: blacklisted {match.type} ({match.reason})")
        return score

    def _log_high_risk_attempt(
        self,
        context: TransactionContext,
        features: FeatureSet,
        score: FraudScore,
        level: RiskLevel,
    ) -> None:
        attempt_type = classify_attempt(features)
        blocked = level == RiskLevel.CRITICAL
        self.attempts.log_attempt(
            context,
            attempt_type,
            attempt_data={
                "fraud_score_id": score.id,
                "total_score": score.total_score,
                "risk_level": level.value,
            },
            blocked=blocked,
            block_reason=f"Risk score {score.total_score} ({level.value})" if blocked else None,
        )
        self.attempts.check_auto_blacklist(context, level)

    def _store_safe_default(self, order_id: int, user_id: Optional[int], exc: Exception) -> FraudScore:
        score = FraudScore(
            order_id=order_id,
            user_id=user_id,
            total_score=SAFE_DEFAULT_SCORE,
            risk_level=RiskLevel.MEDIUM.value,
            triggered_rules=[],
            score_breakdown={"error": str(exc) or type(exc).__name__},
            analysis_data={},
            status=ScoreStatus.UNDER_REVIEW.value,
            created_at=self.clock(),
        )
        self.session.add(score)
        self.session.commit()
        return score

    def reanalyze_order(self, order_id: int) -> FraudScore:
        """Drop existing scores of an order and analyze it again.

        Velocity is tracked again as well, so a re-analysis counts as one more
        order in the current window.
        """
        self._load_order(order_id)
        self.session.execute(delete(FraudScore).where(FraudScore.order_id == order_id))
        self.session.commit()
        logger.info(f"Re-analyzing order {order_id}")
        return self.analyze_order(order_id)

    def bulk_analyze(self, order_ids: Iterable[int]) -> Dict[int, FraudScore]:
        """Analyze several orders, skipping ids that do not exist."""
        results: Dict[int, FraudScore] = {}
        for order_id in order_ids:
            try:
                results[order_id] = self.analyze_order(order_id)
            except OrderNotFoundError:
                logger.warning(f"Skipping missing order {order_id} in bulk analysis")
        return results

    # ------------------------------------------------------------------
    # Review workflow
    # ------------------------------------------------------------------

    def approve(self, score_id: int, reviewer_id: Optional[int] = None, notes: Optional[str] = None) -> FraudScore:
        """Approve a score; an order held for review resumes processing."""
        score = self._load_score(score_id)
        self._mark_reviewed(score, ScoreStatus.APPROVED, reviewer_id, notes)
        if score.order is not None and score.order.status == OrderStatus.PENDING_FRAUD_REVIEW.value:
            score.order.status = OrderStatus.PROCESSING.value
        self.session.commit()
        logger.info(f"Fraud score {score_id} approved by {reviewer_id}")
        return score

    def reject(self, score_id: int, reviewer_id: Optional[int] = None, notes: Optional[str] = None) -> FraudScore:
        """Reject a score and cancel its order."""
        score = self._load_score(score_id)
        self._mark_reviewed(score, ScoreStatus.REJECTED, reviewer_id, notes)
        if score.order is not None:
            score.order.status = OrderStatus.CANCELLED.value
        self.session.commit()
        logger.info(f"Fraud score {score_id} rejected by {reviewer_id}")
        return score

    def mark_false_positive(
        self, score_id: int, reviewer_id: Optional[int] = None, notes: Optional[str] = None
    ) -> FraudScore:
        score = self._load_score(score_id)
        score.false_positive = True
        return self.approve(score_id, reviewer_id, notes)

    def _mark_reviewed(
        self,
        score: FraudScore,
        status: ScoreStatus,
        reviewer_id: Optional[int],
        notes: Optional[str],
    ) -> None:
        score.status = status.value
        score.reviewed_by = reviewer_id
        score.reviewed_at = self.clock()
        score.review_notes = notes

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_score(self, order_id: int) -> FraudScore:
        """Latest fraud score of an order."""
        stmt = (
            select(FraudScore)
            .where(FraudScore.order_id == order_id)
            .order_by(FraudScore.created_at.desc(), FraudScore.id.desc())
            .limit(1)
        )
        score = self.session.execute(stmt).scalar_one_or_none()
        if score is None:
            raise ScoreNotFoundError(order_id, "fraud score for order")
        return score

    def pending_reviews(self, limit: int = 50) -> List[FraudScore]:
        """Scores awaiting a reviewer, riskiest first."""
        stmt = (
            select(FraudScore)
            .where(FraudScore.status.in_([ScoreStatus.PENDING.value, ScoreStatus.UNDER_REVIEW.value]))
            .order_by(FraudScore.total_score.desc(), FraudScore.created_at.asc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def analysis_summary(self, score: FraudScore) -> Dict[str, Any]:
        """Score details with the triggered rules resolved to names."""
        rule_ids = list(score.triggered_rules or [])
        rules = []
        if rule_ids:
            stmt = select(FraudRule).where(FraudRule.id.in_(rule_ids)).order_by(FraudRule.id)
            rules = [
                {
                    "id": rule.id,
                    "name": rule.name,
                    "type": rule.rule_type,
                    "score_contribution": rule.risk_score,
                }
                for rule in self.session.execute(stmt).scalars()
            ]
        return {
            "order_id": score.order_id,
            "total_score": score.total_score,
            "risk_level": score.risk_level,
            "recommended_action": self.classifier.recommended_action(RiskLevel(score.risk_level)).value,
            "triggered_rules": rules,
            "score_breakdown": score.score_breakdown,
            "analysis_data": score.analysis_data,
            "status": score.status,
        }

    def score_statistics(self, days: int = 30) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=days)
        recent = FraudScore.created_at > since

        total = self.session.execute(select(func.count(FraudScore.id)).where(recent)).scalar_one()
        by_level = self.session.execute(
            select(FraudScore.risk_level, func.count(FraudScore.id)).where(recent).group_by(FraudScore.risk_level)
        ).all()
        by_status = self.session.execute(
            select(FraudScore.status, func.count(FraudScore.id)).where(recent).group_by(FraudScore.status)
        ).all()
        false_positives = self.session.execute(
            select(func.count(FraudScore.id)).where(recent, FraudScore.false_positive.is_(True))
        ).scalar_one()
        avg_score = self.session.execute(select(func.avg(FraudScore.total_score)).where(recent)).scalar_one()
        pending = self.session.execute(
            select(func.count(FraudScore.id)).where(
                FraudScore.status.in_([ScoreStatus.PENDING.value, ScoreStatus.UNDER_REVIEW.value])
            )
        ).scalar_one()

        by_status_map = {status: int(count) for status, count in by_status}
        return {
            "total_analyzed": int(total),
            "by_risk_level": {level: int(count) for level, count in by_level},
            "by_status": by_status_map,
            "blocked_orders": by_status_map.get(ScoreStatus.REJECTED.value, 0),
            "false_positives": int(false_positives),
            "avg_score": round(float(avg_score), 2) if avg_score is not None else 0.0,
            "pending_review": int(pending),
        }

    def get_analytics(self, days: int = 30) -> Dict[str, Any]:
        """Dashboard statistics across scores, attempts, blacklist, rules and velocity."""
        return {
            "period_days": days,
            "scores": self.score_statistics(days),
            "attempts": self.attempts.statistics(days),
            "blacklist": self.blacklist.statistics(),
            "top_rules": self.rules.top_rules(),
            "velocity": {"active_windows": self.velocity.active_windows()},
        }

    def _load_order(self, order_id: int) -> Order:
        order = self.session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def _load_score(self, score_id: int) -> FraudScore:
        score = self.session.get(FraudScore, score_id)
        if score is None:
            raise ScoreNotFoundError(score_id)
        return score


# Process-wide resources shared by API requests and consumer messages


@lru_cache(maxsize=1)
def get_settings() -> FraudSettings:
    return load_settings()


def install_default_rules(factory: sessionmaker[Session]) -> int:
    """Seed the built-in rule set into the database behind ``factory``."""
    with session_scope(factory) as session:
        return RuleEvaluator(session).seed_default_rules()


@lru_cache(maxsize=4)
def get_session_factory(database_url: str, seed_rules: bool = True) -> sessionmaker[Session]:
    """Get or create the session factory for a database URL.

    The schema is created on first use and, unless ``seed_rules`` is false,
    any missing default rules are installed.
    """
    factory = create_session_factory(database_url)
    if seed_rules:
        install_default_rules(factory)
    return factory


@lru_cache(maxsize=4)
def get_redis_client(redis_url: str) -> redis.Redis:
    return redis.Redis.from_url(redis_url)


@lru_cache(maxsize=1)
def get_http_client() -> httpx.Client:
    return httpx.Client()


def build_evaluator(session: Session, settings: Optional[FraudSettings] = None) -> FraudEvaluator:
    """Create an evaluator wired to the configured Redis and ML service."""
    settings = settings or get_settings()
    velocity_store: Optional[VelocityStore] = None
    if settings.redis_url:
        velocity_store = RedisVelocityStore(get_redis_client(settings.redis_url))
    providers: List[RiskSignalProvider] = []
    if settings.scoring_mode == ScoringMode.ENSEMBLE:
        providers = build_signal_providers(settings, client=get_http_client())
    return FraudEvaluator(session, settings, providers=providers, velocity_store=velocity_store)


def evaluate_order(order_id: int) -> dict:
    """Convenience function for evaluating a single order.

    Parameters
    ----------
    order_id : int
        Identifier of a persisted order.

    Returns
    -------
    dict
        Fraud evaluation result as dictionary (camelCase keys).
    """
    settings = get_settings()
    with session_scope(get_session_factory(settings.database_url, settings.seed_default_rules)) as session:
        score = build_evaluator(session, settings).analyze_order(order_id)
        return FraudEvaluationResult.from_score(score).model_dump(by_alias=True)


__all__ = [
    "FraudEvaluator",
    "get_settings",
    "install_default_rules",
    "get_session_factory",
    "build_evaluator",
    "evaluate_order",
]
