"""Pydantic schemas for the Engagement API."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from talent_escrow.domain.enums import EngagementStatus
from talent_escrow.schemas.common import UtcDatetime


class UpdateEngagementStatusRequest(BaseModel):
    status: EngagementStatus = Field(..., description="interviewing, accepted or terminated")
    actor: str | None = Field(default=None, max_length=64)


class CompleteEngagementRequest(BaseModel):
    verified: bool = False
    approved_by: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=5_000)


class VerifyCompletionRequest(BaseModel):
    approved_by: str = Field(..., min_length=1, max_length=64)


class RaiseDisputeRequest(BaseModel):
    """Request body for raising a dispute against an engagement."""

    reason: str = Field(..., min_length=1, max_length=2_000)
    raised_by: str = Field(..., min_length=1, max_length=64)


class EngagementResponse(BaseModel):
    """Response schema for an engagement."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    offer_id: uuid.UUID
    request_id: str
    talent_profile_id: str
    company_id: str
    status: str
    start_date: UtcDatetime | None
    end_date: UtcDatetime | None
    total_amount: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    currency: str
    completion_verified: bool
    completed_at: UtcDatetime | None
    verified_by: str | None
    created_at: UtcDatetime
    updated_at: UtcDatetime


class EngagementStatusResponse(BaseModel):
    """Lightweight status check response."""

    engagement_id: uuid.UUID
    status: str
    completion_verified: bool
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
