"""Pydantic schemas for the Offer API.

PATCH /offers/{id} takes a tagged variant discriminated on ``action``;
anything that isn't accept, decline or counter is rejected by FastAPI's
validation before it reaches the service.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from talent_escrow.domain.offer_actions import (
    AcceptAction,
    CounterAction,
    CounterOfferTerms,
    DeclineAction,
)
from talent_escrow.schemas.common import UtcDatetime
from talent_escrow.schemas.engagements import EngagementResponse
from talent_escrow.schemas.payments import EscrowPaymentResponse

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateOfferRequest(BaseModel):
    """Request body for a company making an offer to a talent."""

    request_id: str = Field(..., min_length=1, max_length=64, description="The company's request")
    talent_profile_id: str = Field(..., min_length=1, max_length=64)
    company_id: str = Field(..., min_length=1, max_length=64)
    rate: Decimal = Field(
        ...,
        gt=0,
        max_digits=14,
        decimal_places=2,
        description="Gross engagement amount",
        examples=[10000],
    )
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    duration_days: int | None = Field(default=None, ge=1, le=3650)
    terms: str | None = Field(default=None, max_length=10_000)
    message: str | None = Field(default=None, max_length=5_000)


class AcceptOfferBody(BaseModel):
    """Accept the offer; with payment_method_ref the escrow hold is placed right away."""

    action: Literal["accept"]
    payment_method_ref: str | None = Field(default=None, min_length=1, max_length=128)
    actor_id: str | None = Field(default=None, max_length=64)

    def to_action(self) -> AcceptAction:
        return AcceptAction(payment_method_ref=self.payment_method_ref)


class DeclineOfferBody(BaseModel):
    action: Literal["decline"]
    reason: str | None = Field(default=None, max_length=2_000)
    actor_id: str | None = Field(default=None, max_length=64)

    def to_action(self) -> DeclineAction:
        return DeclineAction(reason=self.reason)


class CounterOfferTermsBody(BaseModel):
    """Revised terms. Omitted duration/terms are inherited from the countered offer."""

    rate: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2, examples=[12000])
    duration_days: int | None = Field(default=None, ge=1, le=3650)
    terms: str | None = Field(default=None, max_length=10_000)
    reason: str = Field(..., min_length=1, max_length=2_000)


class CounterOfferBody(BaseModel):
    action: Literal["counter"]
    counter_offer: CounterOfferTermsBody
    actor_id: str | None = Field(default=None, max_length=64)

    def to_action(self) -> CounterAction:
        terms = self.counter_offer
        return CounterAction(
            counter_offer=CounterOfferTerms(
                rate=terms.rate,
                reason=terms.reason,
                duration_days=terms.duration_days,
                terms=terms.terms,
            )
        )


RespondOfferBody = AcceptOfferBody | DeclineOfferBody | CounterOfferBody

RespondOfferRequest = Annotated[
    RespondOfferBody,
    Field(discriminator="action"),
]


class CancelOfferRequest(BaseModel):
    actor_id: str = Field(..., min_length=1, max_length=64, description="Must be the offering party")


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class OfferResponse(BaseModel):
    """Response schema for an offer row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_id: str
    talent_profile_id: str
    company_id: str
    offered_by: str
    rate: Decimal
    currency: str
    duration_days: int | None
    terms: str | None
    message: str | None
    counter_reason: str | None
    platform_fee: Decimal
    provider_amount: Decimal
    status: str
    counter_of: uuid.UUID | None
    counter_depth: int
    created_at: UtcDatetime
    expires_at: UtcDatetime
    responded_at: UtcDatetime | None


class RespondOfferResponse(BaseModel):
    """Result of accepting, declining or countering an offer."""

    model_config = ConfigDict(from_attributes=True)

    offer: OfferResponse
    engagement: EngagementResponse | None = None
    counter_offer: OfferResponse | None = None
    escrow_payment: EscrowPaymentResponse | None = None
    hold_error: str | None = Field(
        default=None,
        description="Set when the offer was accepted but the escrow hold could not be placed",
    )


class OfferChainResponse(BaseModel):
    offers: list[OfferResponse] = Field(description="Root offer first")
