"""FastAPI application for Order Fraud Detection Service.

This module provides REST API endpoints for analyzing orders, reviewing
flagged orders and managing fraud rules and the blacklist. It can be used
alongside or instead of the Kafka consumer.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterator, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from schemas.api_schemas import (
    BlacklistCreate,
    BulkAnalyzeRequest,
    BulkAnalyzeResponse,
    HealthResponse,
    RejectRequest,
    ReviewRequest,
)
from schemas.fraud_schemas import FraudEvaluationResult, FraudScoreView, IdentityType
from schemas.rule_schemas import RuleDefinition, RuleUpdate, RuleView
from scoring.errors import (
    OrderNotFoundError,
    RuleNotFoundError,
    RuleValidationError,
    ScoreNotFoundError,
)
from serving.fraud_evaluator import (
    FraudEvaluator,
    build_evaluator,
    get_session_factory,
    get_settings,
)

logger = logging.getLogger("fraud-detection-api")

# FastAPI application
app = FastAPI(
    title="Order Fraud Detection API",
    description="Score marketplace orders for fraud risk and manage fraud reviews",
    version="1.0.0",
)


def get_session() -> Iterator[Session]:
    """Request-scoped database session."""
    settings = get_settings()
    factory = get_session_factory(settings.database_url, settings.seed_default_rules)
    session = factory()
    try:
        yield session
    finally:
        session.close()


def get_evaluator(session: Session = Depends(get_session)) -> FraudEvaluator:
    return build_evaluator(session)


@app.exception_handler(OrderNotFoundError)
@app.exception_handler(ScoreNotFoundError)
@app.exception_handler(RuleNotFoundError)
def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RuleValidationError)
def rule_validation_handler(request: Request, exc: RuleValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.get("/health", response_model=HealthResponse)
def health_check(session: Session = Depends(get_session)) -> HealthResponse:
    """Health check endpoint."""
    try:
        session.execute(text("SELECT 1"))
        return HealthResponse(status="healthy", database=True)
    except SQLAlchemyError as exc:
        logger.error(f"Database health check failed: {exc}")
        return HealthResponse(status="degraded", database=False)


# Declared before /fraud/analyze/{order_id} so "bulk" is not parsed as an id
@app.post("/fraud/analyze/bulk", response_model=BulkAnalyzeResponse)
def analyze_bulk(
    request: BulkAnalyzeRequest,
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> BulkAnalyzeResponse:
    """Analyze several orders; missing orders are skipped."""
    scores = evaluator.bulk_analyze(request.order_ids)
    return BulkAnalyzeResponse(
        analyzed=len(scores),
        results={order_id: score.risk_level for order_id, score in scores.items()},
    )


@app.post("/fraud/analyze/{order_id}")
def analyze_order(order_id: int, evaluator: FraudEvaluator = Depends(get_evaluator)) -> Dict[str, Any]:
    """Analyze one order for fraud risk.

    Decision Policy (standard thresholds):
    - score ≥ 90 → CRITICAL → BLOCK (order cancelled)
    - score ≥ 60 → HIGH → REVIEW (order held)
    - score ≥ 40 → MEDIUM → FLAG
    - otherwise → LOW / MINIMAL → APPROVE
    """
    score = evaluator.analyze_order(order_id)
    return FraudEvaluationResult.from_score(score).model_dump(by_alias=True)


@app.post("/fraud/reanalyze/{order_id}")
def reanalyze_order(order_id: int, evaluator: FraudEvaluator = Depends(get_evaluator)) -> Dict[str, Any]:
    score = evaluator.reanalyze_order(order_id)
    return FraudEvaluationResult.from_score(score).model_dump(by_alias=True)


@app.get("/fraud/score/{order_id}")
def get_score(order_id: int, evaluator: FraudEvaluator = Depends(get_evaluator)) -> Dict[str, Any]:
    score = evaluator.get_score(order_id)
    return evaluator.analysis_summary(score)


@app.get("/fraud/pending-reviews")
def pending_reviews(
    limit: int = Query(default=50, ge=1, le=500),
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> List[Dict[str, Any]]:
    return [
        FraudScoreView.model_validate(score).model_dump(mode="json")
        for score in evaluator.pending_reviews(limit)
    ]


@app.post("/fraud/approve/{score_id}")
def approve(
    score_id: int,
    review: ReviewRequest,
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> Dict[str, Any]:
    score = evaluator.approve(score_id, review.reviewer_id, review.notes)
    return FraudScoreView.model_validate(score).model_dump(mode="json")


@app.post("/fraud/reject/{score_id}")
def reject(
    score_id: int,
    review: RejectRequest,
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> Dict[str, Any]:
    score = evaluator.reject(score_id, review.reviewer_id, review.notes)
    return FraudScoreView.model_validate(score).model_dump(mode="json")


@app.post("/fraud/false-positive/{score_id}")
def false_positive(
    score_id: int,
    review: ReviewRequest,
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> Dict[str, Any]:
    score = evaluator.mark_false_positive(score_id, review.reviewer_id, review.notes)
    return FraudScoreView.model_validate(score).model_dump(mode="json")


@app.get("/fraud/rules", response_model=List[RuleView])
def list_rules(
    active: Optional[bool] = None,
    rule_type: Optional[str] = Query(default=None, alias="type"),
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> List[RuleView]:
    return [RuleView.model_validate(rule) for rule in evaluator.rules.list_rules(active, rule_type)]


@app.post("/fraud/rules", response_model=RuleView, status_code=201)
def create_rule(definition: RuleDefinition, evaluator: FraudEvaluator = Depends(get_evaluator)) -> RuleView:
    rule = evaluator.rules.create_rule(definition)
    evaluator.session.commit()
    return RuleView.model_validate(rule)


@app.put("/fraud/rules/{rule_id}", response_model=RuleView)
def update_rule(
    rule_id: int,
    changes: RuleUpdate,
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> RuleView:
    rule = evaluator.rules.update_rule(rule_id, changes)
    evaluator.session.commit()
    return RuleView.model_validate(rule)


@app.post("/fraud/blacklist", status_code=201)
def add_to_blacklist(entry: BlacklistCreate, evaluator: FraudEvaluator = Depends(get_evaluator)) -> Dict[str, Any]:
    record = evaluator.blacklist.add(
        entry.type,
        entry.value,
        entry.reason,
        severity=entry.severity,
        added_by=entry.added_by,
        notes=entry.notes,
    )
    evaluator.session.commit()
    return {
        "id": record.id,
        "type": record.type,
        "reason": record.reason,
        "severity": record.severity,
        "isActive": record.is_active,
        "hitCount": record.hit_count,
    }


@app.delete("/fraud/blacklist/{identity_type}/{value}")
def remove_from_blacklist(
    identity_type: IdentityType,
    value: str,
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> Dict[str, Any]:
    if not evaluator.blacklist.remove(identity_type, value):
        raise HTTPException(status_code=404, detail="No active blacklist entry for that value")
    evaluator.session.commit()
    return {"removed": True}


@app.get("/fraud/analytics")
def analytics(
    days: int = Query(default=30, ge=1, le=365),
    evaluator: FraudEvaluator = Depends(get_evaluator),
) -> Dict[str, Any]:
    return evaluator.get_analytics(days)


def load_port() -> int:
    """Load server port from environment."""
    port_str = os.getenv("PORT", "8000")
    try:
        return int(port_str)
    except ValueError:
        return 8000


def main() -> None:
    """Entry point for running the API server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    port = load_port()
    uvicorn.run(
        "serving.fraud_api:app",
        host="0.0.0.0",
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    main()
