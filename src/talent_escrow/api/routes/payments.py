"""Escrow payment REST API routes.

Routes:
    POST   /api/v1/payments/{engagement_id}/hold     — Hold the engagement total
    POST   /api/v1/payments/{engagement_id}/release  — Pay the talent
    POST   /api/v1/payments/{engagement_id}/refund   — Return funds to the company
    GET    /api/v1/payments/{engagement_id}          — Current payment + history
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves annotations at runtime

from fastapi import APIRouter, Depends

from talent_escrow.api.deps import get_escrow_service, rate_limit
from talent_escrow.schemas.payments import (
    CreateHoldRequest,
    EscrowPaymentResponse,
    PaymentDetailResponse,
    RefundRequest,
)
from talent_escrow.services.escrow_service import EscrowService  # noqa: TC001

router = APIRouter(
    prefix="/api/v1/payments",
    tags=["Payments"],
    dependencies=[Depends(rate_limit("payments"))],
)


@router.post(
    "/{engagement_id}/hold",
    response_model=EscrowPaymentResponse,
    summary="Place the escrow hold",
)
async def create_hold(
    engagement_id: uuid.UUID,
    request: CreateHoldRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowPaymentResponse:
    """Authorize and hold the engagement total.

    Returns `held` when the provider confirms synchronously, otherwise
    `pending` until the charge.succeeded webhook arrives.
    """
    payment = await svc.create_hold(engagement_id, request.payment_method_ref, request.amount)
    return EscrowPaymentResponse.model_validate(payment)


@router.post(
    "/{engagement_id}/release",
    response_model=EscrowPaymentResponse,
    summary="Release held funds to the talent",
)
async def release_payment(
    engagement_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowPaymentResponse:
    payment = await svc.release(engagement_id)
    return EscrowPaymentResponse.model_validate(payment)


@router.post(
    "/{engagement_id}/refund",
    response_model=EscrowPaymentResponse,
    summary="Refund held funds to the company",
)
async def refund_payment(
    engagement_id: uuid.UUID,
    request: RefundRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowPaymentResponse:
    payment = await svc.refund(engagement_id, request.reason)
    return EscrowPaymentResponse.model_validate(payment)


@router.get(
    "/{engagement_id}",
    response_model=PaymentDetailResponse,
    summary="Get the escrow payment for an engagement",
)
async def get_payment(
    engagement_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> PaymentDetailResponse:
    payment = await svc.get_payment(engagement_id)
    history = await svc.get_payment_history(engagement_id)
    return PaymentDetailResponse(
        payment=EscrowPaymentResponse.model_validate(payment),
        history=[EscrowPaymentResponse.model_validate(p) for p in history],
    )
