"""Engagement REST API routes.

Routes:
    GET    /api/v1/engagements/{id}           — Get engagement details
    GET    /api/v1/engagements/{id}/status    — Lightweight status check
    GET    /api/v1/engagements/{id}/events    — Audit trail
    PATCH  /api/v1/engagements/{id}           — Business step (interviewing, accepted, terminated)
    POST   /api/v1/engagements/{id}/complete  — Mark work complete
    POST   /api/v1/engagements/{id}/verify    — Verify completion, unlocking release
    POST   /api/v1/engagements/{id}/dispute   — Raise a dispute, freezing funds
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves annotations at runtime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from talent_escrow.api.deps import get_db_session, get_engagement_service
from talent_escrow.domain.enums import EntityType
from talent_escrow.domain.state_machine import EngagementStateMachine, allowed_events
from talent_escrow.infrastructure.database.repositories import AuditRepository
from talent_escrow.schemas.common import AuditEventResponse
from talent_escrow.schemas.engagements import (
    CompleteEngagementRequest,
    EngagementResponse,
    EngagementStatusResponse,
    RaiseDisputeRequest,
    UpdateEngagementStatusRequest,
    VerifyCompletionRequest,
)
from talent_escrow.services.engagement_service import EngagementService  # noqa: TC001

router = APIRouter(prefix="/api/v1/engagements", tags=["Engagements"])


@router.get("/{engagement_id}", response_model=EngagementResponse, summary="Get an engagement")
async def get_engagement(
    engagement_id: uuid.UUID,
    svc: EngagementService = Depends(get_engagement_service),
) -> EngagementResponse:
    return EngagementResponse.model_validate(await svc.get_engagement(engagement_id))


@router.get(
    "/{engagement_id}/status",
    response_model=EngagementStatusResponse,
    summary="Get engagement status and allowed events",
)
async def get_engagement_status(
    engagement_id: uuid.UUID,
    svc: EngagementService = Depends(get_engagement_service),
) -> EngagementStatusResponse:
    engagement = await svc.get_engagement(engagement_id)
    return EngagementStatusResponse(
        engagement_id=engagement.id,
        status=engagement.status,
        completion_verified=engagement.completion_verified,
        allowed_events=allowed_events(EngagementStateMachine, engagement.status),
    )


@router.get(
    "/{engagement_id}/events",
    response_model=list[AuditEventResponse],
    summary="Get the engagement audit trail",
)
async def get_engagement_events(
    engagement_id: uuid.UUID,
    svc: EngagementService = Depends(get_engagement_service),
    session: AsyncSession = Depends(get_db_session),
) -> list[AuditEventResponse]:
    await svc.get_engagement(engagement_id)
    events = await AuditRepository(session).get_for_entity(EntityType.ENGAGEMENT, engagement_id)
    return [AuditEventResponse.model_validate(e) for e in events]


@router.patch(
    "/{engagement_id}",
    response_model=EngagementResponse,
    summary="Move an engagement to its next business step",
)
async def update_engagement_status(
    engagement_id: uuid.UUID,
    request: UpdateEngagementStatusRequest,
    svc: EngagementService = Depends(get_engagement_service),
) -> EngagementResponse:
    engagement = await svc.advance_status(
        engagement_id, request.status, actor=request.actor or "SYSTEM"
    )
    return EngagementResponse.model_validate(engagement)


@router.post(
    "/{engagement_id}/complete",
    response_model=EngagementResponse,
    summary="Mark an active engagement complete",
)
async def complete_engagement(
    engagement_id: uuid.UUID,
    request: CompleteEngagementRequest,
    svc: EngagementService = Depends(get_engagement_service),
) -> EngagementResponse:
    engagement = await svc.complete(
        engagement_id,
        verified=request.verified,
        approved_by=request.approved_by,
        notes=request.notes,
    )
    return EngagementResponse.model_validate(engagement)


@router.post(
    "/{engagement_id}/verify",
    response_model=EngagementResponse,
    summary="Verify completion",
)
async def verify_completion(
    engagement_id: uuid.UUID,
    request: VerifyCompletionRequest,
    svc: EngagementService = Depends(get_engagement_service),
) -> EngagementResponse:
    engagement = await svc.verify_completion(engagement_id, request.approved_by)
    return EngagementResponse.model_validate(engagement)


@router.post(
    "/{engagement_id}/dispute",
    response_model=EngagementResponse,
    summary="Raise a dispute",
)
async def raise_dispute(
    engagement_id: uuid.UUID,
    request: RaiseDisputeRequest,
    svc: EngagementService = Depends(get_engagement_service),
) -> EngagementResponse:
    """Freeze the engagement's funds. Only a refund moves them afterwards."""
    engagement = await svc.dispute(engagement_id, request.reason, request.raised_by)
    return EngagementResponse.model_validate(engagement)
