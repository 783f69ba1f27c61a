"""Pydantic models describing fraud rule definitions and their conditions.

A rule's ``conditions`` column stores a :class:`RuleConditionSet` dumped to
JSON::

    {"match": "all", "predicates": [{"feature": "order_amount", "op": ">", "value": 1000}]}
"""

from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_OPERATORS = frozenset(
    {"==", "!=", ">", ">=", "<", "<=", "in", "not_in", "is_true", "is_false", "exists"}
)

RuleTypeName = Literal["velocity", "amount", "pattern", "geographic", "custom"]
RuleActionName = Literal["flag", "review", "block", "none"]


class RuleCondition(BaseModel):
    """A single ``feature <op> value`` predicate."""

    model_config = ConfigDict(frozen=True)

    feature: str = Field(..., min_length=1)
    op: str
    value: Any = None

    @field_validator("op")
    @classmethod
    def _known_operator(cls, op: str) -> str:
        if op not in SUPPORTED_OPERATORS:
            raise ValueError(
                f"Unsupported operator '{op}', expected one of: {', '.join(sorted(SUPPORTED_OPERATORS))}"
            )
        return op


class RuleConditionSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    match: Literal["all", "any"] = "all"
    predicates: List[RuleCondition] = Field(..., min_length=1)


class RuleDefinition(BaseModel):
    """Payload used to create a fraud rule."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rule_type: RuleTypeName
    conditions: RuleConditionSet
    risk_score: int = Field(..., ge=0, le=100)
    action: RuleActionName = "flag"
    is_active: bool = True
    priority: int = 0


class RuleUpdate(BaseModel):
    """Partial update of a fraud rule; unset fields are left untouched."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    rule_type: Optional[RuleTypeName] = None
    conditions: Optional[RuleConditionSet] = None
    risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    action: Optional[RuleActionName] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None


class RuleView(BaseModel):
    """Read model of a persisted fraud rule."""

    id: int
    name: str
    description: Optional[str] = None
    rule_type: str
    conditions: dict
    risk_score: int
    action: str
    is_active: bool
    priority: int
    trigger_count: int

    model_config = ConfigDict(from_attributes=True)


__all__ = [
    "SUPPORTED_OPERATORS",
    "RuleCondition",
    "RuleConditionSet",
    "RuleDefinition",
    "RuleUpdate",
    "RuleView",
]
