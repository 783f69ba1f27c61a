"""Data models for order fraud evaluation.

This module defines the Pydantic models exchanged between the pipeline
stages (transaction context, rule results, score breakdown) and the
messages published on the fraud-evaluation-result Kafka topic.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(str, Enum):
    """Risk tiers, lowest first."""
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ScoreStatus(str, Enum):
    """Review status of a persisted fraud score."""
    APPROVED = "approved"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    REJECTED = "rejected"


class RecommendedAction(str, Enum):
    """Recommended actions based on risk assessment."""
    APPROVE = "approve"
    FLAG = "flag"
    REVIEW = "review"
    BLOCK = "block"


class OrderStatus(str, Enum):
    """Order states the fraud pipeline moves orders into."""
    PENDING = "pending"
    PROCESSING = "processing"
    PENDING_FRAUD_REVIEW = "pending_fraud_review"
    CANCELLED = "cancelled"


class IdentityType(str, Enum):
    """Identity dimensions tracked for velocity and blacklisting."""
    USER = "user"
    IP = "ip"
    EMAIL = "email"
    DEVICE = "device"


class AttemptType(str, Enum):
    """Abuse patterns recorded in the fraud attempt log."""
    CARD_TESTING = "card_testing"
    IDENTITY_THEFT = "identity_theft"
    FRIENDLY_FRAUD = "friendly_fraud"
    BOT_ACTIVITY = "bot_activity"
    BLACKLIST_MATCH = "blacklist_match"


class BlacklistSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    PERMANENT = "permanent"


class OrderLine(BaseModel):
    """A single line item of the evaluated order."""

    model_config = ConfigDict(frozen=True)

    price: float = Field(..., ge=0)
    quantity: int = Field(default=1, ge=1)
    is_digital: bool = False


class TransactionContext(BaseModel):
    """Immutable snapshot of one evaluation request.

    Built once per evaluation from the order being scored; only derived
    artifacts (features, scores, attempts) are ever persisted.
    """

    model_config = ConfigDict(frozen=True)

    order_id: int
    user_id: Optional[int] = None
    email: Optional[str] = None
    amount: float = Field(..., ge=0)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    billing_address: Optional[str] = None
    shipping_address: Optional[str] = None
    billing_country: Optional[str] = None
    shipping_country: Optional[str] = None
    ip_country: Optional[str] = None
    payment_method: Optional[str] = None
    card_last4: Optional[str] = None
    items: Tuple[OrderLine, ...] = ()
    timestamp: datetime

    @classmethod
    def from_order(cls, order: Any) -> "TransactionContext":
        """Snapshot an order record (and its user and items)."""
        user = order.user
        email = (user.email if user is not None else None) or order.billing_email
        return cls(
            order_id=order.id,
            user_id=order.user_id,
            email=email,
            amount=float(order.total_amount),
            ip_address=order.ip_address,
            user_agent=order.user_agent,
            device_fingerprint=order.device_fingerprint,
            billing_address=order.billing_address,
            shipping_address=order.shipping_address,
            billing_country=order.billing_country,
            shipping_country=order.shipping_country,
            ip_country=order.ip_country,
            payment_method=order.payment_method,
            card_last4=order.card_last4,
            items=tuple(
                OrderLine(price=item.price, quantity=item.quantity, is_digital=item.is_digital)
                for item in order.items
            ),
            timestamp=order.created_at,
        )

    def identities(self) -> List[Tuple[IdentityType, str]]:
        """Identity dimensions present on this transaction."""
        candidates = [
            (IdentityType.IP, self.ip_address),
            (IdentityType.EMAIL, self.email),
            (IdentityType.USER, self.user_id),
            (IdentityType.DEVICE, self.device_fingerprint),
        ]
        return [(kind, str(value)) for kind, value in candidates if value not in (None, "")]


class RuleHit(BaseModel):
    rule_id: int
    rule_name: str
    rule_type: str
    score: int
    action: str


class RuleMiss(BaseModel):
    rule_id: int
    rule_name: str


class RuleResults(BaseModel):
    """Outcome of running every active rule against one feature set."""

    triggered: List[RuleHit] = Field(default_factory=list)
    not_triggered: List[RuleMiss] = Field(default_factory=list)
    total_rules_checked: int = 0

    @property
    def triggered_rule_ids(self) -> List[int]:
        return [hit.rule_id for hit in self.triggered]


class SignalScore(BaseModel):
    """A value in [0, 1] reported by one risk signal provider."""

    model_config = ConfigDict(frozen=True)

    source: str
    value: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    fallback: bool = False


class ScoreBreakdown(BaseModel):
    """How the total score was assembled."""

    mode: str
    rule_score: int
    components: Dict[str, float] = Field(default_factory=dict)
    fallbacks: List[str] = Field(default_factory=list)
    weights: Dict[str, float] = Field(default_factory=dict)


class AggregateScore(BaseModel):
    total_score: int = Field(..., ge=0, le=100)
    breakdown: ScoreBreakdown


class BlacklistMatch(BaseModel):
    """Result of checking a transaction's identities against the blacklist."""

    is_blacklisted: bool = False
    type: Optional[IdentityType] = None
    reason: Optional[str] = None
    severity: Optional[str] = None
    entry_id: Optional[int] = None

    model_config = ConfigDict(use_enum_values=True)


class VelocityCheck(BaseModel):
    """Count returned by an atomic increment and the decision derived from it."""

    count: int = Field(..., ge=0)
    threshold: int
    over_limit: bool


class OrderEvent(BaseModel):
    """Schema for the order-created Kafka topic."""

    order_id: int = Field(..., alias="orderId", description="Identifier of the created order")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FraudEvaluationResult(BaseModel):
    """Schema for the fraud-evaluation-result Kafka topic and API responses."""

    order_id: int = Field(..., alias="orderId")
    fraud_score_id: int = Field(..., alias="fraudScoreId")
    total_score: int = Field(..., alias="totalScore", ge=0, le=100)
    risk_level: RiskLevel = Field(..., alias="riskLevel")
    status: ScoreStatus
    recommended_action: RecommendedAction = Field(..., alias="recommendedAction")
    triggered_rules: List[int] = Field(default_factory=list, alias="triggeredRules")
    evaluated_at: str = Field(..., alias="evaluatedAt")

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    @classmethod
    def from_score(cls, score: Any) -> "FraudEvaluationResult":
        """Create result from a persisted fraud score record.

        Action policy:
        - critical → BLOCK
        - high → REVIEW
        - medium → FLAG
        - low / minimal → APPROVE
        """
        level = RiskLevel(score.risk_level)
        return cls(
            order_id=score.order_id,
            fraud_score_id=score.id,
            total_score=score.total_score,
            risk_level=level,
            status=ScoreStatus(score.status),
            recommended_action=ACTION_BY_LEVEL[level],
            triggered_rules=list(score.triggered_rules or []),
            evaluated_at=score.created_at.isoformat() + "Z",
        )


class FraudScoreView(BaseModel):
    """Read model of a persisted fraud score."""

    id: int
    order_id: int
    user_id: Optional[int] = None
    total_score: int
    risk_level: str
    status: str
    triggered_rules: List[int] = Field(default_factory=list)
    score_breakdown: Dict[str, Any] = Field(default_factory=dict)
    analysis_data: Dict[str, Any] = Field(default_factory=dict)
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    false_positive: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


ACTION_BY_LEVEL: Dict[RiskLevel, RecommendedAction] = {
    RiskLevel.CRITICAL: RecommendedAction.BLOCK,
    RiskLevel.HIGH: RecommendedAction.REVIEW,
    RiskLevel.MEDIUM: RecommendedAction.FLAG,
    RiskLevel.LOW: RecommendedAction.APPROVE,
    RiskLevel.MINIMAL: RecommendedAction.APPROVE,
}


__all__ = [
    "RiskLevel",
    "ScoreStatus",
    "RecommendedAction",
    "OrderStatus",
    "IdentityType",
    "AttemptType",
    "BlacklistSeverity",
    "OrderLine",
    "TransactionContext",
    "RuleHit",
    "RuleMiss",
    "RuleResults",
    "SignalScore",
    "ScoreBreakdown",
    "AggregateScore",
    "BlacklistMatch",
    "VelocityCheck",
    "OrderEvent",
    "FraudEvaluationResult",
    "FraudScoreView",
    "ACTION_BY_LEVEL",
]
