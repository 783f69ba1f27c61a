"""Request and response bodies of the fraud HTTP API."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.fraud_schemas import BlacklistSeverity, IdentityType


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: bool


class ReviewRequest(BaseModel):
    reviewer_id: int = Field(..., alias="reviewerId")
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class RejectRequest(BaseModel):
    """Rejections must carry the reviewer's reasoning."""

    reviewer_id: int = Field(..., alias="reviewerId")
    notes: str = Field(..., min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class BlacklistCreate(BaseModel):
    type: IdentityType
    value: str = Field(..., min_length=1, max_length=255)
    reason: str = Field(..., min_length=1, max_length=255)
    severity: BlacklistSeverity = BlacklistSeverity.MEDIUM
    added_by: Optional[int] = Field(default=None, alias="addedBy")
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class BulkAnalyzeRequest(BaseModel):
    order_ids: List[int] = Field(..., alias="orderIds", min_length=1, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class BulkAnalyzeResponse(BaseModel):
    analyzed: int
    results: Dict[int, str]


__all__ = [
    "HealthResponse",
    "ReviewRequest",
    "RejectRequest",
    "BlacklistCreate",
    "BulkAnalyzeRequest",
    "BulkAnalyzeResponse",
]
