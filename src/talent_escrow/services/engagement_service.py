"""Engagement Service — business steps, completion and disputes.

Money-driven transitions (funds held -> active, refunds) belong to
EscrowService; this service covers the steps a company or talent takes
themselves. Each one is a conditional UPDATE on the current status.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from talent_escrow.config import Settings, get_settings
from talent_escrow.domain.enums import (
    EngagementStatus,
    EntityType,
    EventType,
    NotificationType,
    PaymentStatus,
)
from talent_escrow.domain.exceptions import (
    ConflictError,
    EngagementNotFoundError,
    ValidationError,
)
from talent_escrow.domain.state_machine import EngagementStateMachine, validate_transition
from talent_escrow.domain.timeutils import utc_now
from talent_escrow.infrastructure.database.repositories import (
    AuditRepository,
    EngagementRepository,
    EscrowPaymentRepository,
)
from talent_escrow.logging_config import get_logger
from talent_escrow.services.notification_service import NotificationBatch
from talent_escrow.services.snapshots import engagement_state, payment_state

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from talent_escrow.domain.notifier_protocol import NotificationService
    from talent_escrow.infrastructure.database.orm_models import Engagement

logger = get_logger(__name__)

# Statuses a caller may set directly through advance_status().
_MANUAL_EVENTS = {
    EngagementStatus.INTERVIEWING: "begin_interviews",
    EngagementStatus.ACCEPTED: "accept_terms",
    EngagementStatus.TERMINATED: "terminate",
}


class EngagementService:
    """Manages engagement status outside of the money flow."""

    def __init__(
        self,
        session: AsyncSession,
        notifier: NotificationService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock
        self._engagements = EngagementRepository(session)
        self._payments = EscrowPaymentRepository(session)
        self._audit = AuditRepository(session)
        self._notifications = NotificationBatch()

    async def get_engagement(self, engagement_id: uuid.UUID) -> Engagement:
        engagement = await self._engagements.get_by_id(engagement_id, fresh=True)
        if engagement is None:
            raise EngagementNotFoundError(str(engagement_id))
        return engagement

    async def advance_status(
        self,
        engagement_id: uuid.UUID,
        status: EngagementStatus | str,
        actor: str = "SYSTEM",
    ) -> Engagement:
        """Move through staged -> interviewing -> accepted, or terminate.

        Terminating is refused while a payment is pending or held; those
        funds have to be refunded first.
        """
        try:
            target = EngagementStatus(status)
        except ValueError as err:
            raise ValidationError(f"Unknown engagement status: {status}", field="status") from err
        event = _MANUAL_EVENTS.get(target)
        if event is None:
            raise ValidationError(
                f"Status '{target.value}' is set by its own operation, not directly",
                field="status",
            )

        engagement = await self.get_engagement(engagement_id)
        old_status = EngagementStatus(engagement.status)
        validate_transition(EngagementStateMachine, old_status, event)

        if target is EngagementStatus.TERMINATED:
            payment = await self._payments.get_current(engagement.id, fresh=True)
            if payment is not None and payment.status in (PaymentStatus.PENDING, PaymentStatus.HELD):
                raise ConflictError(
                    "Refund the escrow payment before terminating the engagement",
                    current_state=payment_state(payment),
                )

        await self._transition_or_conflict(engagement, old_status, target, actor)
        await self._session.commit()
        logger.info(
            "engagement.status_changed",
            engagement_id=str(engagement.id),
            old_status=old_status.value,
            new_status=target.value,
        )
        return await self.get_engagement(engagement.id)

    async def complete(
        self,
        engagement_id: uuid.UUID,
        verified: bool = False,
        approved_by: str | None = None,
        notes: str | None = None,
    ) -> Engagement:
        """active -> completed. verified=True also marks completion as verified."""
        if verified and not approved_by:
            raise ValidationError("approved_by is required to verify completion", field="approved_by")

        engagement = await self.get_engagement(engagement_id)
        old_status = EngagementStatus(engagement.status)
        validate_transition(EngagementStateMachine, old_status, "complete")

        values: dict = {"completed_at": self._clock(), "completion_notes": notes}
        if verified:
            values.update(completion_verified=True, verified_by=approved_by)
        await self._transition_or_conflict(
            engagement,
            old_status,
            EngagementStatus.COMPLETED,
            approved_by or "SYSTEM",
            {"verified": verified},
            **values,
        )
        if verified:
            await self._record_verification(engagement.id, approved_by)
        await self._session.commit()
        logger.info("engagement.completed", engagement_id=str(engagement.id), verified=verified)
        return await self.get_engagement(engagement.id)

    async def verify_completion(self, engagement_id: uuid.UUID, approved_by: str) -> Engagement:
        """Mark a completed engagement as verified, unlocking release."""
        if not approved_by:
            raise ValidationError("approved_by is required", field="approved_by")
        engagement = await self.get_engagement(engagement_id)
        if engagement.completion_verified:
            return engagement

        if not await self._engagements.mark_completion_verified(
            engagement.id, EngagementStatus.COMPLETED, approved_by
        ):
            await self._session.rollback()
            current = await self.get_engagement(engagement_id)
            if current.completion_verified:
                return current
            raise ConflictError(
                "Only a completed engagement can be verified",
                current_state=engagement_state(current),
            )
        await self._record_verification(engagement.id, approved_by)
        await self._session.commit()
        logger.info("engagement.completion_verified", engagement_id=str(engagement.id), by=approved_by)
        return await self.get_engagement(engagement.id)

    async def dispute(self, engagement_id: uuid.UUID, reason: str, raised_by: str) -> Engagement:
        """accepted|active -> disputed. Funds stay frozen until refunded."""
        if not reason or not reason.strip():
            raise ValidationError("A dispute needs a reason", field="reason")
        engagement = await self.get_engagement(engagement_id)
        old_status = EngagementStatus(engagement.status)
        validate_transition(EngagementStateMachine, old_status, "dispute")

        await self._transition_or_conflict(
            engagement,
            old_status,
            EngagementStatus.DISPUTED,
            raised_by,
            {"reason": reason},
        )
        await self._session.commit()
        logger.warning("engagement.disputed", engagement_id=str(engagement.id), raised_by=raised_by)
        self._notifications.add(
            NotificationType.ENGAGEMENT_DISPUTED,
            [engagement.company_id, engagement.talent_profile_id],
            {"engagement_id": str(engagement.id), "reason": reason, "raised_by": raised_by},
        )
        await self._notifications.flush(self._notifier)
        return await self.get_engagement(engagement.id)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _transition_or_conflict(
        self,
        engagement: Engagement,
        old_status: EngagementStatus,
        target: EngagementStatus,
        actor: str,
        metadata: dict | None = None,
        **values,
    ) -> None:
        engagement_id = engagement.id
        if not await self._engagements.transition(engagement_id, old_status, target, **values):
            await self._session.rollback()
            current = await self.get_engagement(engagement_id)
            raise ConflictError(
                f"Engagement changed concurrently (status={current.status})",
                current_state=engagement_state(current),
            )
        await self._audit.record(
            entity_type=EntityType.ENGAGEMENT,
            entity_id=engagement.id,
            event_type=EventType.ENGAGEMENT_STATUS_CHANGED,
            old_status=old_status,
            new_status=target,
            actor=actor,
            metadata=metadata,
        )

    async def _record_verification(self, engagement_id: uuid.UUID, approved_by: str) -> None:
        await self._audit.record(
            entity_type=EntityType.ENGAGEMENT,
            entity_id=engagement_id,
            event_type=EventType.ENGAGEMENT_COMPLETION_VERIFIED,
            old_status=EngagementStatus.COMPLETED,
            new_status=EngagementStatus.COMPLETED,
            actor=approved_by,
        )
