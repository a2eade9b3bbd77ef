"""Pydantic schemas for the escrow payment API."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from talent_escrow.domain.enums import RefundReason
from talent_escrow.schemas.common import UtcDatetime


class CreateHoldRequest(BaseModel):
    """Request body for placing an escrow hold on an engagement."""

    payment_method_ref: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Provider-side payment method token",
        examples=["pm_card_visa"],
    )
    amount: Decimal | None = Field(
        default=None,
        gt=0,
        max_digits=14,
        decimal_places=2,
        description="Optional; must equal the engagement total when given",
    )


class RefundRequest(BaseModel):
    reason: RefundReason = Field(
        ...,
        description="dispute leaves the engagement disputed; any other reason terminates it",
    )


class EscrowPaymentResponse(BaseModel):
    """Response schema for an escrow payment. The payment method ref is never echoed."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    engagement_id: uuid.UUID
    status: str
    amount: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    currency: str
    provider_charge_ref: str | None
    provider_transfer_ref: str | None
    failure_reason: str | None
    refund_reason: str | None
    created_at: UtcDatetime
    held_at: UtcDatetime | None
    release_requested_at: UtcDatetime | None
    released_at: UtcDatetime | None
    refunded_at: UtcDatetime | None


class PaymentDetailResponse(BaseModel):
    payment: EscrowPaymentResponse
    history: list[EscrowPaymentResponse] = Field(description="Every attempt, newest first")
