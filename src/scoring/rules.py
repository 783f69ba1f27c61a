"""Declarative fraud rule evaluation and rule management.

Rules are persisted in ``fraud_rules`` with a JSON condition set (see
:mod:`schemas.rule_schemas`). Evaluation runs every active rule, ordered by
priority (highest first, ties broken by id), against one feature set.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from preprocessing.order_features import FeatureSet
from schemas.fraud_schemas import RuleHit, RuleMiss, RuleResults
from schemas.rule_schemas import RuleCondition, RuleConditionSet, RuleDefinition, RuleUpdate
from scoring.default_rules import DEFAULT_RULES
from scoring.errors import RuleNotFoundError, RuleValidationError
from storage.database import dialect_insert, utcnow
from storage.records import FraudRule, RuleTriggerEvent

logger = logging.getLogger("fraud-rules")

_MISSING = object()


def check_condition(actual: Any, op: str, expected: Any) -> bool:
    """Apply one operator; unknown operators and type mismatches are ``False``."""
    if op == "exists":
        return actual is not None
    if actual is None:
        return False
    try:
        if op == "==":
            return actual == expected
        elif op == "!=":
            return actual != expected
        elif op == ">":
            return actual > expected
        elif op == ">=":
            return actual >= expected
        elif op == "<":
            return actual < expected
        elif op == "<=":
            return actual <= expected
        elif op == "in":
            return actual in expected
        elif op == "not_in":
            return actual not in expected
        elif op == "is_true":
            return bool(actual)
        elif op == "is_false":
            return not bool(actual)
    except TypeError:
        return False
    return False


def matches(condition_set: RuleConditionSet, features: FeatureSet) -> bool:
    """Evaluate a whole condition set; a missing feature makes its predicate false."""

    def predicate(condition: RuleCondition) -> bool:
        actual = features.get(condition.feature, _MISSING)
        if actual is _MISSING:
            return False
        return check_condition(actual, condition.op, condition.value)

    results = (predicate(condition) for condition in condition_set.predicates)
    if condition_set.match == "any":
        return any(results)
    return all(results)


class RuleEvaluator:
    """Run active fraud rules and manage the rule table.

    Parameters
    ----------
    session : Session
        Database session used for rule reads and trigger bookkeeping.
    """

    def __init__(self, session: Session):
        self.session = session

    def active_rules(self) -> List[FraudRule]:
        stmt = (
            select(FraudRule)
            .where(FraudRule.is_active.is_(True))
            .order_by(FraudRule.priority.desc(), FraudRule.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def evaluate(self, features: FeatureSet, order_id: Optional[int] = None) -> RuleResults:
        """Evaluate all active rules against ``features``.

        Parameters
        ----------
        features : FeatureSet
            Features of the transaction under evaluation.
        order_id : int, optional
            When given, each triggered rule also records a deduplicated
            (rule, order) trigger event.

        Returns
        -------
        RuleResults
            Triggered and not-triggered rules, in evaluation order.
        """
        results = RuleResults()
        for rule in self.active_rules():
            results.total_rules_checked += 1
            try:
                condition_set = RuleConditionSet.model_validate(rule.conditions)
            except ValidationError as exc:
                logger.warning(f"Skipping rule {rule.id} with invalid conditions: {exc}")
                results.not_triggered.append(RuleMiss(rule_id=rule.id, rule_name=rule.name))
                continue

            if not matches(condition_set, features):
                results.not_triggered.append(RuleMiss(rule_id=rule.id, rule_name=rule.name))
                continue

            results.triggered.append(
                RuleHit(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    rule_type=rule.rule_type,
                    score=rule.risk_score,
                    action=rule.action,
                )
            )
            self._record_trigger(rule, order_id)

        return results

    def _record_trigger(self, rule: FraudRule, order_id: Optional[int]) -> None:
        # Raw counter, bumped on every evaluation; rendered as trigger_count + 1
        rule.trigger_count = FraudRule.trigger_count + 1
        self.session.flush()
        if order_id is None:
            return
        stmt = dialect_insert(self.session, RuleTriggerEvent.__table__).values(
            rule_id=rule.id, order_id=order_id, created_at=utcnow()
        )
        self.session.execute(stmt.on_conflict_do_nothing(index_elements=["rule_id", "order_id"]))

    def unique_trigger_count(self, rule_id: int) -> int:
        """Number of distinct orders that triggered a rule."""
        stmt = select(func.count(RuleTriggerEvent.id)).where(RuleTriggerEvent.rule_id == rule_id)
        return int(self.session.execute(stmt).scalar_one())

    def get_rule(self, rule_id: int) -> FraudRule:
        rule = self.session.get(FraudRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def list_rules(self, active: Optional[bool] = None, rule_type: Optional[str] = None) -> List[FraudRule]:
        stmt = select(FraudRule).order_by(FraudRule.priority.desc(), FraudRule.id.asc())
        if active is not None:
            stmt = stmt.where(FraudRule.is_active.is_(active))
        if rule_type is not None:
            stmt = stmt.where(FraudRule.rule_type == rule_type)
        return list(self.session.execute(stmt).scalars())

    def create_rule(self, definition: RuleDefinition | Dict[str, Any]) -> FraudRule:
        """Validate and persist a new rule."""
        if not isinstance(definition, RuleDefinition):
            try:
                definition = RuleDefinition.model_validate(definition)
            except ValidationError as exc:
                raise RuleValidationError(str(exc)) from exc

        rule = FraudRule(
            name=definition.name,
            description=definition.description,
            rule_type=definition.rule_type,
            conditions=definition.conditions.model_dump(),
            risk_score=definition.risk_score,
            action=definition.action,
            is_active=definition.is_active,
            priority=definition.priority,
        )
        self.session.add(rule)
        self.session.flush()
        logger.info(f"Created fraud rule {rule.id}: {rule.name}")
        return rule

    def update_rule(self, rule_id: int, changes: RuleUpdate) -> FraudRule:
        rule = self.get_rule(rule_id)
        for field, value in changes.model_dump(exclude_unset=True).items():
            if value is None and field != "description":
                raise RuleValidationError(f"Field '{field}' cannot be null")
            setattr(rule, field, value)
        self.session.flush()
        return rule

    def seed_default_rules(self) -> int:
        """Install the default rules whose names are not present yet; returns how many were added."""
        existing = set(self.session.execute(select(FraudRule.name)).scalars())
        added = 0
        for definition in DEFAULT_RULES:
            if definition["name"] in existing:
                continue
            self.create_rule(definition)
            added += 1
        if added:
            logger.info(f"Seeded {added} default fraud rules")
        return added

    def top_rules(self, limit: int = 10) -> List[Dict[str, Any]]:
        stmt = (
            select(FraudRule)
            .where(FraudRule.trigger_count > 0)
            .order_by(FraudRule.trigger_count.desc(), FraudRule.id.asc())
            .limit(limit)
        )
        return [
            {
                "rule_id": rule.id,
                "name": rule.name,
                "trigger_count": rule.trigger_count,
                "unique_trigger_count": self.unique_trigger_count(rule.id),
            }
            for rule in self.session.execute(stmt).scalars()
        ]


__all__ = [
    "check_condition",
    "matches",
    "RuleEvaluator",
]
