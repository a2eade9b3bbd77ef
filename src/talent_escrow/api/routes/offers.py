"""Offer REST API routes.

Routes:
    POST   /api/v1/offers              — Company makes an offer
    GET    /api/v1/offers              — List offers (filters)
    GET    /api/v1/offers/{id}         — Get one offer
    GET    /api/v1/offers/{id}/chain   — Counter-offer chain, root first
    PATCH  /api/v1/offers/{id}         — Accept, decline or counter
    POST   /api/v1/offers/{id}/cancel  — Offering party withdraws
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves annotations at runtime
from typing import Annotated

from fastapi import APIRouter, Body, Depends, Query

from talent_escrow.api.deps import get_offer_service, rate_limit
from talent_escrow.domain.enums import OfferStatus
from talent_escrow.schemas.engagements import EngagementResponse
from talent_escrow.schemas.offers import (
    CancelOfferRequest,
    CreateOfferRequest,
    OfferChainResponse,
    OfferResponse,
    RespondOfferBody,
    RespondOfferResponse,
)
from talent_escrow.schemas.payments import EscrowPaymentResponse
from talent_escrow.services.offer_service import OfferService  # noqa: TC001

router = APIRouter(prefix="/api/v1/offers", tags=["Offers"])


@router.post(
    "",
    response_model=OfferResponse,
    status_code=201,
    summary="Create an offer",
    dependencies=[Depends(rate_limit("offers"))],
)
async def create_offer(
    request: CreateOfferRequest,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    """Create a pending offer from a company to a talent."""
    offer = await svc.create_offer(
        request_id=request.request_id,
        talent_profile_id=request.talent_profile_id,
        company_id=request.company_id,
        rate=request.rate,
        currency=request.currency,
        duration_days=request.duration_days,
        terms=request.terms,
        message=request.message,
    )
    return OfferResponse.model_validate(offer)


@router.get("", response_model=list[OfferResponse], summary="List offers")
async def list_offers(
    request_id: str | None = None,
    talent_profile_id: str | None = None,
    company_id: str | None = None,
    status: OfferStatus | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    svc: OfferService = Depends(get_offer_service),
) -> list[OfferResponse]:
    offers = await svc.list_offers(
        request_id=request_id,
        talent_profile_id=talent_profile_id,
        company_id=company_id,
        status=status,
        limit=limit,
    )
    return [OfferResponse.model_validate(o) for o in offers]


@router.get("/{offer_id}", response_model=OfferResponse, summary="Get an offer")
async def get_offer(
    offer_id: uuid.UUID,
    svc: OfferService = Depends(get_offer_service),
) -> OfferResponse:
    return OfferResponse.model_validate(await svc.get_offer(offer_id))


@router.get(
    "/{offer_id}/chain",
    response_model=OfferChainResponse,
    summary="Get the counter-offer chain",
)
async def get_offer_chain(
    offer_id: uuid.UUID,
    svc: OfferService = Depends(get_offer_service),
) -> OfferChainResponse:
    chain = await svc.get_counter_chain(offer_id)
    return OfferChainResponse(offers=[OfferResponse.model_validate(o) for o in chain])


@router.patch(
    "/{offer_id}",
    response_model=RespondOfferResponse,
    summary="Accept, decline or counter an offer",
    dependencies=[Depends(rate_limit("offers"))],
)
async def respond_to_offer(
    offer_id: uuid.UUID,
    body: Annotated[RespondOfferBody, Body(discriminator="action")],
    svc: OfferService = Depends(get_offer_service),
) -> RespondOfferResponse:
    """Apply the receiving party's response.

    An accept that carries payment_method_ref also places the escrow hold;
    if the hold fails the offer stays accepted and hold_error explains why.
    """
    result = await svc.respond(offer_id, body.to_action(), actor_id=body.actor_id)
    return RespondOfferResponse(
        offer=OfferResponse.model_validate(result.offer),
        engagement=(
            EngagementResponse.model_validate(result.engagement) if result.engagement else None
        ),
        counter_offer=(
            OfferResponse.model_validate(result.counter_offer) if result.counter_offer else None
        ),
        escrow_payment=(
            EscrowPaymentResponse.model_validate(result.escrow_payment)
            if result.escrow_payment
            else None
        ),
        hold_error=result.hold_error,
    )


@router.post("/{offer_id}/cancel", response_model=RespondOfferResponse, summary="Cancel an offer")
async def cancel_offer(
    offer_id: uuid.UUID,
    request: CancelOfferRequest,
    svc: OfferService = Depends(get_offer_service),
) -> RespondOfferResponse:
    offer = await svc.cancel(offer_id, request.actor_id)
    return RespondOfferResponse(offer=OfferResponse.model_validate(offer))
