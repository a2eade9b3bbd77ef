"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every status change goes through a single conditional UPDATE
(``UPDATE ... WHERE id = ? AND status = ?``). The returned boolean says
whether this writer won; a False means someone else moved the row first
and the caller must re-read the authoritative state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from talent_escrow.domain.enums import OfferStatus, PaymentStatus
from talent_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Engagement,
    EscrowPayment,
    Offer,
    ProcessedWebhookEvent,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from talent_escrow.domain.enums import EngagementStatus, EntityType, EventType


class OfferRepository:
    """Data access for offers."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, offer: Offer) -> Offer:
        """Insert a new offer row."""
        self._session.add(offer)
        await self._session.flush()
        return offer

    async def get_by_id(self, offer_id: uuid.UUID, fresh: bool = False) -> Offer | None:
        """Fetch an offer; fresh=True overwrites any stale identity-map copy."""
        stmt = select(Offer).where(Offer.id == offer_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_pending_for_pair(
        self, request_id: str, talent_profile_id: str
    ) -> Offer | None:
        """Fetch the live offer for a (request, talent) pair, if any."""
        result = await self._session.execute(
            select(Offer).where(
                Offer.request_id == request_id,
                Offer.talent_profile_id == talent_profile_id,
                Offer.status == OfferStatus.PENDING.value,
            )
        )
        return result.scalar_one_or_none()

    async def find(
        self,
        request_id: str | None = None,
        talent_profile_id: str | None = None,
        company_id: str | None = None,
        status: OfferStatus | None = None,
        limit: int = 100,
    ) -> list[Offer]:
        """List offers matching the given filters, newest first."""
        stmt = select(Offer)
        if request_id is not None:
            stmt = stmt.where(Offer.request_id == request_id)
        if talent_profile_id is not None:
            stmt = stmt.where(Offer.talent_profile_id == talent_profile_id)
        if company_id is not None:
            stmt = stmt.where(Offer.company_id == company_id)
        if status is not None:
            stmt = stmt.where(Offer.status == status.value)
        result = await self._session.execute(stmt.order_by(Offer.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def find_expired_pending_ids(self, now: datetime, limit: int) -> list[uuid.UUID]:
        """Ids of pending offers whose deadline has passed, oldest first."""
        result = await self._session.execute(
            select(Offer.id)
            .where(Offer.status == OfferStatus.PENDING.value, Offer.expires_at < now)
            .order_by(Offer.expires_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_competing_pending_ids(
        self, request_id: str, exclude_offer_id: uuid.UUID
    ) -> list[uuid.UUID]:
        """Other pending offers on the same request."""
        result = await self._session.execute(
            select(Offer.id).where(
                Offer.request_id == request_id,
                Offer.id != exclude_offer_id,
                Offer.status == OfferStatus.PENDING.value,
            )
        )
        return list(result.scalars().all())

    async def transition(
        self,
        offer_id: uuid.UUID,
        expected: OfferStatus,
        new_status: OfferStatus,
        not_expired_at: datetime | None = None,
        expired_as_of: datetime | None = None,
        **values: Any,
    ) -> bool:
        """Conditionally move an offer from `expected` to `new_status`.

        Args:
            not_expired_at: If set, only succeed while expires_at > this instant.
            expired_as_of: If set, only succeed when expires_at <= this instant.
            **values: Extra columns written in the same statement.

        Returns:
            True if exactly this call changed the row.
        """
        stmt = update(Offer).where(Offer.id == offer_id, Offer.status == expected.value)
        if not_expired_at is not None:
            stmt = stmt.where(Offer.expires_at > not_expired_at)
        if expired_as_of is not None:
            stmt = stmt.where(Offer.expires_at <= expired_as_of)
        stmt = stmt.values(status=new_status.value, **values).execution_options(
            synchronize_session=False
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def get_chain(self, offer: Offer) -> list[Offer]:
        """Walk counter_of links back to the root offer. Returns root first."""
        chain = [offer]
        current = offer
        while current.counter_of is not None:
            parent = await self.get_by_id(current.counter_of, fresh=True)
            if parent is None:
                break
            chain.append(parent)
            current = parent
        chain.reverse()
        return chain


class EngagementRepository:
    """Data access for engagements."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, engagement: Engagement) -> Engagement:
        """Insert a new engagement."""
        self._session.add(engagement)
        await self._session.flush()
        return engagement

    async def get_by_id(
        self, engagement_id: uuid.UUID, fresh: bool = False
    ) -> Engagement | None:
        """Fetch an engagement by its UUID."""
        stmt = select(Engagement).where(Engagement.id == engagement_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        engagement_id: uuid.UUID,
        expected: EngagementStatus | Iterable[EngagementStatus],
        new_status: EngagementStatus,
        **values: Any,
    ) -> bool:
        """Conditionally move an engagement to `new_status`.

        `expected` may be a single status or a collection of acceptable ones.
        """
        allowed = (expected,) if isinstance(expected, str) else tuple(expected)
        stmt = (
            update(Engagement)
            .where(
                Engagement.id == engagement_id,
                Engagement.status.in_([s.value for s in allowed]),
            )
            .values(status=new_status.value, updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_completion_verified(
        self,
        engagement_id: uuid.UUID,
        expected: EngagementStatus,
        verified_by: str,
    ) -> bool:
        """Set completion_verified once, only while the engagement is `expected`."""
        stmt = (
            update(Engagement)
            .where(
                Engagement.id == engagement_id,
                Engagement.status == expected.value,
                Engagement.completion_verified.is_(False),
            )
            .values(completion_verified=True, verified_by=verified_by, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class EscrowPaymentRepository:
    """Data access for escrow payments."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, payment: EscrowPayment) -> EscrowPayment:
        """Insert a new payment row."""
        self._session.add(payment)
        await self._session.flush()
        return payment

    async def get_by_id(self, payment_id: uuid.UUID, fresh: bool = False) -> EscrowPayment | None:
        stmt = select(EscrowPayment).where(EscrowPayment.id == payment_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_current(
        self, engagement_id: uuid.UUID, fresh: bool = False
    ) -> EscrowPayment | None:
        """The payment that represents the engagement's money right now.

        Prefers the live (pending/held) row, then the settled one
        (released/refunded), then the most recent failure.
        """
        stmt = (
            select(EscrowPayment)
            .where(EscrowPayment.engagement_id == engagement_id)
            .order_by(EscrowPayment.created_at.desc())
        )
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        payments = list(result.scalars().all())
        if not payments:
            return None
        for wanted in (
            (PaymentStatus.PENDING, PaymentStatus.HELD),
            (PaymentStatus.RELEASED, PaymentStatus.REFUNDED),
        ):
            for payment in payments:
                if payment.status in wanted:
                    return payment
        return payments[0]

    async def list_for_engagement(self, engagement_id: uuid.UUID) -> list[EscrowPayment]:
        """All payment attempts for an engagement, newest first."""
        result = await self._session.execute(
            select(EscrowPayment)
            .where(EscrowPayment.engagement_id == engagement_id)
            .order_by(EscrowPayment.created_at.desc())
        )
        return list(result.scalars().all())

    async def count_failed(self, engagement_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(EscrowPayment)
            .where(
                EscrowPayment.engagement_id == engagement_id,
                EscrowPayment.status == PaymentStatus.FAILED.value,
            )
        )
        return int(result.scalar_one())

    async def get_by_charge_ref(self, charge_ref: str) -> EscrowPayment | None:
        result = await self._session.execute(
            select(EscrowPayment)
            .where(EscrowPayment.provider_charge_ref == charge_ref)
            .order_by(EscrowPayment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_transfer_ref(self, transfer_ref: str) -> EscrowPayment | None:
        result = await self._session.execute(
            select(EscrowPayment)
            .where(EscrowPayment.provider_transfer_ref == transfer_ref)
            .order_by(EscrowPayment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        payment_id: uuid.UUID,
        expected: PaymentStatus,
        new_status: PaymentStatus,
        **values: Any,
    ) -> bool:
        """Conditionally move a payment from `expected` to `new_status`."""
        stmt = (
            update(EscrowPayment)
            .where(EscrowPayment.id == payment_id, EscrowPayment.status == expected.value)
            .values(status=new_status.value, updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def update_where_status(
        self,
        payment_id: uuid.UUID,
        expected: PaymentStatus,
        **values: Any,
    ) -> bool:
        """Write columns without changing status, only while status == expected."""
        stmt = (
            update(EscrowPayment)
            .where(EscrowPayment.id == payment_id, EscrowPayment.status == expected.value)
            .values(updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def claim_release(self, payment_id: uuid.UUID, now: datetime) -> bool:
        """Persist the release intent on a held payment.

        Succeeds for the first caller and for a caller resuming an intent that
        was already written (status still held); fails once the payment left
        the held state or a refund has been requested.
        """
        stmt = (
            update(EscrowPayment)
            .where(
                EscrowPayment.id == payment_id,
                EscrowPayment.status == PaymentStatus.HELD.value,
                EscrowPayment.refund_reason.is_(None),
            )
            .values(
                release_requested_at=func.coalesce(EscrowPayment.release_requested_at, now),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def claim_refund(self, payment_id: uuid.UUID, reason: str) -> bool:
        """Persist the refund intent (reason) on a held payment.

        Mutually exclusive with claim_release. Repeating the same reason is
        allowed so an interrupted refund can be resumed.
        """
        stmt = (
            update(EscrowPayment)
            .where(
                EscrowPayment.id == payment_id,
                EscrowPayment.status == PaymentStatus.HELD.value,
                EscrowPayment.release_requested_at.is_(None),
                or_(EscrowPayment.refund_reason.is_(None), EscrowPayment.refund_reason == reason),
            )
            .values(refund_reason=reason, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class WebhookEventRepository:
    """Insert-once dedup ledger for provider webhook events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, external_event_id: str) -> bool:
        result = await self._session.execute(
            select(ProcessedWebhookEvent.external_event_id).where(
                ProcessedWebhookEvent.external_event_id == external_event_id
            )
        )
        return result.scalar_one_or_none() is not None

    async def insert_once(self, external_event_id: str, event_type: str) -> bool:
        """Insert the ledger row. Returns False if the id is already present.

        Must be the first write of the caller's transaction: a unique
        violation rolls the whole session back.
        """
        try:
            await self._session.execute(
                insert(ProcessedWebhookEvent).values(
                    external_event_id=external_event_id,
                    event_type=event_type,
                )
            )
        except IntegrityError:
            await self._session.rollback()
            return False
        return True


class AuditRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        event_type: EventType,
        old_status: str | None,
        new_status: str,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> AuditEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AuditEvent(
            entity_type=entity_type.value,
            entity_id=entity_id,
            event_type=event_type.value,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_for_entity(self, entity_type: EntityType, entity_id: uuid.UUID) -> list[AuditEvent]:
        """Fetch all events for an entity in chronological order."""
        result = await self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type.value, AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())
