"""Offer Service — negotiation lifecycle of offers and counter-offers.

Every transition out of `pending` is one conditional UPDATE guarded on
``status = 'pending' AND expires_at > now``. Whoever commits first wins;
the loser re-reads the row and gets ExpiredError or ConflictError with the
current state. The respond path enforces the deadline on its own, so an
offer past expires_at can't be accepted even if the sweeper has not run.

Accepting an offer creates the engagement in the same transaction. The
escrow hold (when a payment method is supplied) runs after that commit,
so a provider failure never undoes the accept.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from talent_escrow.config import Settings, get_settings
from talent_escrow.domain.enums import (
    EngagementStatus,
    EntityType,
    EventType,
    NotificationType,
    OfferParty,
    OfferStatus,
)
from talent_escrow.domain.exceptions import (
    ConflictError,
    CounterLimitExceededError,
    ExpiredError,
    OfferNotFoundError,
    PaymentProviderError,
    ValidationError,
)
from talent_escrow.domain.fees import compute_split
from talent_escrow.domain.offer_actions import AcceptAction, CounterAction, DeclineAction
from talent_escrow.domain.state_machine import OfferStateMachine, validate_transition
from talent_escrow.domain.timeutils import ensure_utc, utc_now
from talent_escrow.infrastructure.database.orm_models import Engagement, EscrowPayment, Offer
from talent_escrow.infrastructure.database.repositories import (
    AuditRepository,
    EngagementRepository,
    OfferRepository,
)
from talent_escrow.logging_config import get_logger
from talent_escrow.services.escrow_service import EscrowService
from talent_escrow.services.notification_service import NotificationBatch
from talent_escrow.services.snapshots import offer_state

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from talent_escrow.domain.fees import FeeSplit
    from talent_escrow.domain.notifier_protocol import NotificationService
    from talent_escrow.domain.offer_actions import OfferResponse
    from talent_escrow.domain.provider_protocol import PaymentProviderClient

logger = get_logger(__name__)


@dataclass
class RespondResult:
    """Outcome of respond(); only the fields relevant to the action are set."""

    offer: Offer
    engagement: Engagement | None = None
    counter_offer: Offer | None = None
    escrow_payment: EscrowPayment | None = None
    hold_error: str | None = None


def offering_party_id(offer: Offer) -> str:
    """Id of the party that proposed this offer row."""
    return offer.company_id if offer.offered_by == OfferParty.COMPANY else offer.talent_profile_id


def responding_party_id(offer: Offer) -> str:
    return offer.talent_profile_id if offer.offered_by == OfferParty.COMPANY else offer.company_id


class OfferService:
    """Creates offers and drives them through the offer state machine."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProviderClient | None = None,
        notifier: NotificationService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._provider = provider
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock
        self._offers = OfferRepository(session)
        self._engagements = EngagementRepository(session)
        self._audit = AuditRepository(session)
        self._notifications = NotificationBatch()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        request_id: str,
        talent_profile_id: str,
        company_id: str,
        rate: Decimal | int | str,
        currency: str | None = None,
        duration_days: int | None = None,
        terms: str | None = None,
        message: str | None = None,
    ) -> Offer:
        """Create a pending company offer for a (request, talent) pair.

        Raises:
            ValidationError: Non-positive or malformed rate.
            ConflictError: The pair already has a pending offer.
        """
        for field, value in (
            ("request_id", request_id),
            ("talent_profile_id", talent_profile_id),
            ("company_id", company_id),
        ):
            if not value or not value.strip():
                raise ValidationError(f"{field} is required", field=field)
        split = self._split(rate)
        now = self._clock()

        existing = await self._offers.get_pending_for_pair(request_id, talent_profile_id)
        if existing is not None and ensure_utc(existing.expires_at) <= now:
            # Stale pending row the sweeper hasn't reached yet.
            await self.expire_offer(existing.id, now)
            existing = await self._offers.get_pending_for_pair(request_id, talent_profile_id)
        if existing is not None:
            raise ConflictError(
                "A pending offer already exists for this request and talent",
                current_state=offer_state(existing),
            )

        offer = Offer(
            request_id=request_id,
            talent_profile_id=talent_profile_id,
            company_id=company_id,
            offered_by=OfferParty.COMPANY.value,
            rate=split.gross,
            currency=(currency or self._settings.default_currency).upper(),
            duration_days=duration_days,
            terms=terms,
            message=message,
            platform_fee=split.fee,
            provider_amount=split.net,
            status=OfferStatus.PENDING.value,
            counter_depth=0,
            created_at=now,
            expires_at=self._deadline(now),
        )
        try:
            await self._offers.create(offer)
        except IntegrityError as err:
            await self._session.rollback()
            existing = await self._offers.get_pending_for_pair(request_id, talent_profile_id)
            raise ConflictError(
                "A pending offer already exists for this request and talent",
                current_state=offer_state(existing) if existing else None,
            ) from err

        await self._audit.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=EventType.OFFER_CREATED,
            old_status=None,
            new_status=OfferStatus.PENDING,
            actor=company_id,
            metadata={"fee_split": split.to_dict()},
        )
        await self._session.commit()
        logger.info(
            "offer.created",
            offer_id=str(offer.id),
            request_id=request_id,
            rate=str(split.gross),
            platform_fee=str(split.fee),
        )
        self._notifications.add(
            NotificationType.OFFER_RECEIVED,
            [talent_profile_id],
            {"offer_id": str(offer.id), "rate": str(split.gross)},
        )
        await self._notifications.flush(self._notifier)
        return offer

    # ------------------------------------------------------------------
    # Respond
    # ------------------------------------------------------------------

    async def respond(
        self,
        offer_id: uuid.UUID,
        action: OfferResponse,
        actor_id: str | None = None,
    ) -> RespondResult:
        """Accept, decline or counter a pending offer.

        Args:
            actor_id: When given, must be the responding (non-offering) party.

        Raises:
            ExpiredError: The offer's deadline has passed.
            ConflictError: The offer is no longer pending.
            CounterLimitExceededError: Counter chain is at max depth.
        """
        offer = await self._get_offer_or_raise(offer_id)
        if actor_id is not None and actor_id != responding_party_id(offer):
            raise ValidationError("Only the receiving party can respond to an offer", field="actor_id")
        actor = actor_id or responding_party_id(offer)

        match action:
            case AcceptAction():
                return await self._accept(offer, action, actor)
            case DeclineAction():
                return await self._decline(offer, action, actor)
            case CounterAction():
                return await self._counter(offer, action, actor)
            case _:
                raise ValidationError(f"Unsupported offer action: {action!r}", field="action")

    async def _accept(self, offer: Offer, action: AcceptAction, actor: str) -> RespondResult:
        now = self._clock()
        await self._guard_pending(offer, "accept", now)

        won = await self._offers.transition(
            offer.id,
            OfferStatus.PENDING,
            OfferStatus.ACCEPTED,
            not_expired_at=now,
            responded_at=now,
        )
        if not won:
            await self._raise_lost_race(offer.id, now)

        split = self._split(offer.rate)
        engagement = Engagement(
            offer_id=offer.id,
            request_id=offer.request_id,
            talent_profile_id=offer.talent_profile_id,
            company_id=offer.company_id,
            status=EngagementStatus.STAGED.value,
            total_amount=split.gross,
            platform_fee=split.fee,
            provider_amount=split.net,
            currency=offer.currency,
            completion_verified=False,
        )
        await self._engagements.create(engagement)

        await self._audit.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=EventType.OFFER_ACCEPTED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.ACCEPTED,
            actor=actor,
            metadata={"engagement_id": str(engagement.id)},
        )
        await self._audit.record(
            entity_type=EntityType.ENGAGEMENT,
            entity_id=engagement.id,
            event_type=EventType.ENGAGEMENT_CREATED,
            old_status=None,
            new_status=EngagementStatus.STAGED,
            actor=actor,
            metadata={"offer_id": str(offer.id), "fee_split": split.to_dict()},
        )
        self._notifications.add(
            NotificationType.OFFER_ACCEPTED,
            [offering_party_id(offer)],
            {"offer_id": str(offer.id), "engagement_id": str(engagement.id)},
        )

        if self._settings.decline_competing_offers_on_accept:
            await self._decline_competing(offer, now)

        await self._session.commit()
        await self._notifications.flush(self._notifier)
        logger.info(
            "offer.accepted",
            offer_id=str(offer.id),
            engagement_id=str(engagement.id),
            total=str(split.gross),
            platform_fee=str(split.fee),
            provider_amount=str(split.net),
        )

        result = RespondResult(
            offer=await self._reload(offer.id),
            engagement=engagement,
        )
        if action.payment_method_ref:
            await self._place_hold(result, action.payment_method_ref)
        return result

    async def _place_hold(self, result: RespondResult, payment_method_ref: str) -> None:
        """Request the escrow hold for a freshly accepted offer."""
        engagement_id = result.engagement.id
        if self._provider is None:
            result.hold_error = "No payment provider configured"
            logger.warning("offer.hold_skipped", engagement_id=str(engagement_id))
            return
        escrow = EscrowService(
            self._session,
            self._provider,
            notifier=self._notifier,
            settings=self._settings,
            clock=self._clock,
        )
        try:
            result.escrow_payment = await escrow.create_hold(engagement_id, payment_method_ref)
        except PaymentProviderError as exc:
            result.hold_error = exc.message
            logger.warning(
                "offer.hold_failed_after_accept",
                engagement_id=str(engagement_id),
                error=exc.message,
                retryable=exc.retryable,
            )
        result.engagement = await self._engagements.get_by_id(engagement_id, fresh=True)

    async def _decline_competing(self, accepted: Offer, now: datetime) -> None:
        for competing_id in await self._offers.find_competing_pending_ids(
            accepted.request_id, accepted.id
        ):
            if not await self._offers.transition(
                competing_id, OfferStatus.PENDING, OfferStatus.DECLINED, responded_at=now
            ):
                continue
            await self._audit.record(
                entity_type=EntityType.OFFER,
                entity_id=competing_id,
                event_type=EventType.OFFER_DECLINED,
                old_status=OfferStatus.PENDING,
                new_status=OfferStatus.DECLINED,
                metadata={"reason": "another offer on this request was accepted"},
            )
            competing = await self._offers.get_by_id(competing_id, fresh=True)
            if competing is not None:
                self._notifications.add(
                    NotificationType.OFFER_DECLINED,
                    [competing.company_id, competing.talent_profile_id],
                    {"offer_id": str(competing_id), "reason": "position_filled"},
                )
            logger.info("offer.competing_declined", offer_id=str(competing_id), accepted_id=str(accepted.id))

    async def _decline(self, offer: Offer, action: DeclineAction, actor: str) -> RespondResult:
        now = self._clock()
        await self._guard_pending(offer, "decline", now)

        won = await self._offers.transition(
            offer.id,
            OfferStatus.PENDING,
            OfferStatus.DECLINED,
            not_expired_at=now,
            responded_at=now,
        )
        if not won:
            await self._raise_lost_race(offer.id, now)

        await self._audit.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=EventType.OFFER_DECLINED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.DECLINED,
            actor=actor,
            metadata={"reason": action.reason} if action.reason else None,
        )
        await self._session.commit()
        logger.info("offer.declined", offer_id=str(offer.id))
        self._notifications.add(
            NotificationType.OFFER_DECLINED,
            [offering_party_id(offer)],
            {"offer_id": str(offer.id), "reason": action.reason},
        )
        await self._notifications.flush(self._notifier)
        return RespondResult(offer=await self._reload(offer.id))

    async def _counter(self, offer: Offer, action: CounterAction, actor: str) -> RespondResult:
        terms = action.counter_offer
        if not terms.reason or not terms.reason.strip():
            raise ValidationError("A counter-offer needs a reason", field="reason")
        if terms.duration_days is not None and terms.duration_days <= 0:
            raise ValidationError("duration_days must be positive", field="duration_days")
        split = self._split(terms.rate)

        now = self._clock()
        await self._guard_pending(offer, "counter", now)
        max_depth = self._settings.max_counter_depth
        if offer.counter_depth + 1 > max_depth:
            raise CounterLimitExceededError(str(offer.id), max_depth)

        won = await self._offers.transition(
            offer.id,
            OfferStatus.PENDING,
            OfferStatus.COUNTERED,
            not_expired_at=now,
            responded_at=now,
        )
        if not won:
            await self._raise_lost_race(offer.id, now)

        counter = Offer(
            request_id=offer.request_id,
            talent_profile_id=offer.talent_profile_id,
            company_id=offer.company_id,
            offered_by=OfferParty(offer.offered_by).other.value,
            rate=split.gross,
            currency=offer.currency,
            duration_days=terms.duration_days if terms.duration_days is not None else offer.duration_days,
            terms=terms.terms if terms.terms is not None else offer.terms,
            message=offer.message,
            counter_reason=terms.reason,
            platform_fee=split.fee,
            provider_amount=split.net,
            status=OfferStatus.PENDING.value,
            counter_of=offer.id,
            counter_depth=offer.counter_depth + 1,
            created_at=now,
            expires_at=self._deadline(now),
        )
        await self._offers.create(counter)

        await self._audit.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=EventType.OFFER_COUNTERED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.COUNTERED,
            actor=actor,
            metadata={"counter_offer_id": str(counter.id), "reason": terms.reason},
        )
        await self._audit.record(
            entity_type=EntityType.OFFER,
            entity_id=counter.id,
            event_type=EventType.OFFER_CREATED,
            old_status=None,
            new_status=OfferStatus.PENDING,
            actor=actor,
            metadata={
                "counter_of": str(offer.id),
                "counter_depth": counter.counter_depth,
                "fee_split": split.to_dict(),
            },
        )
        await self._session.commit()
        logger.info(
            "offer.countered",
            offer_id=str(offer.id),
            counter_offer_id=str(counter.id),
            rate=str(split.gross),
            depth=counter.counter_depth,
        )
        self._notifications.add(
            NotificationType.OFFER_COUNTERED,
            [offering_party_id(offer)],
            {"offer_id": str(offer.id), "counter_offer_id": str(counter.id), "rate": str(split.gross)},
        )
        await self._notifications.flush(self._notifier)
        return RespondResult(offer=await self._reload(offer.id), counter_offer=counter)

    # ------------------------------------------------------------------
    # Cancel / Expire
    # ------------------------------------------------------------------

    async def cancel(self, offer_id: uuid.UUID, actor_id: str) -> Offer:
        """Withdraw a pending offer. Only the offering party may cancel."""
        offer = await self._get_offer_or_raise(offer_id)
        if actor_id != offering_party_id(offer):
            raise ValidationError("Only the offering party can cancel an offer", field="actor_id")

        now = self._clock()
        await self._guard_pending(offer, "cancel", now)
        won = await self._offers.transition(
            offer.id,
            OfferStatus.PENDING,
            OfferStatus.CANCELLED,
            not_expired_at=now,
            responded_at=now,
        )
        if not won:
            await self._raise_lost_race(offer.id, now)

        await self._audit.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=EventType.OFFER_CANCELLED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.CANCELLED,
            actor=actor_id,
        )
        await self._session.commit()
        logger.info("offer.cancelled", offer_id=str(offer.id), actor=actor_id)
        self._notifications.add(
            NotificationType.OFFER_CANCELLED,
            [responding_party_id(offer)],
            {"offer_id": str(offer.id)},
        )
        await self._notifications.flush(self._notifier)
        return await self._reload(offer.id)

    async def expire_offer(self, offer_id: uuid.UUID, now: datetime | None = None) -> bool:
        """Expire a pending offer whose deadline has passed.

        Shared by the sweeper and the respond path. Commits on success;
        returns False (without raising) when another writer got there first.
        """
        now = now or self._clock()
        won = await self._offers.transition(
            offer_id,
            OfferStatus.PENDING,
            OfferStatus.EXPIRED,
            expired_as_of=now,
        )
        if not won:
            await self._session.rollback()
            logger.debug("offer.expire_skipped", offer_id=str(offer_id))
            return False

        await self._audit.record(
            entity_type=EntityType.OFFER,
            entity_id=offer_id,
            event_type=EventType.OFFER_EXPIRED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.EXPIRED,
            metadata={"expired_at": now.isoformat()},
        )
        await self._session.commit()

        offer = await self._reload(offer_id)
        logger.info("offer.expired", offer_id=str(offer_id), request_id=offer.request_id)
        self._notifications.add(
            NotificationType.OFFER_EXPIRED,
            [offer.company_id, offer.talent_profile_id],
            {"offer_id": str(offer_id)},
        )
        await self._notifications.flush(self._notifier)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_offer(self, offer_id: uuid.UUID) -> Offer:
        return await self._get_offer_or_raise(offer_id)

    async def get_counter_chain(self, offer_id: uuid.UUID) -> list[Offer]:
        """All offers in the negotiation leading up to offer_id, root first."""
        offer = await self._get_offer_or_raise(offer_id)
        return await self._offers.get_chain(offer)

    async def list_offers(
        self,
        request_id: str | None = None,
        talent_profile_id: str | None = None,
        company_id: str | None = None,
        status: OfferStatus | None = None,
        limit: int = 100,
    ) -> list[Offer]:
        return await self._offers.find(
            request_id=request_id,
            talent_profile_id=talent_profile_id,
            company_id=company_id,
            status=status,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _split(self, rate: Decimal | int | str) -> FeeSplit:
        split = compute_split(rate, self._settings.platform_fee_rate_percent)
        if split.gross <= 0:
            raise ValidationError("rate must be greater than zero", field="rate")
        return split

    def _deadline(self, now: datetime) -> datetime:
        return now + timedelta(hours=self._settings.offer_expiration_hours)

    async def _guard_pending(self, offer: Offer, event: str, now: datetime) -> None:
        """Fail fast on offers that are visibly expired or already answered."""
        if offer.status == OfferStatus.EXPIRED:
            raise ExpiredError(str(offer.id), current_state=offer_state(offer))
        if offer.status == OfferStatus.PENDING and ensure_utc(offer.expires_at) <= now:
            offer_id = offer.id
            await self.expire_offer(offer_id, now)
            current = await self._reload(offer_id)
            raise ExpiredError(str(offer_id), current_state=offer_state(current))
        validate_transition(OfferStateMachine, offer.status, event)

    async def _raise_lost_race(self, offer_id: uuid.UUID, now: datetime) -> None:
        """The conditional update matched no row: report why."""
        await self._session.rollback()
        current = await self._reload(offer_id)
        if current.status == OfferStatus.PENDING and ensure_utc(current.expires_at) <= now:
            await self.expire_offer(current.id, now)
            current = await self._reload(offer_id)
        if current.status == OfferStatus.EXPIRED:
            raise ExpiredError(str(offer_id), current_state=offer_state(current))
        logger.info("offer.conflict", offer_id=str(offer_id), status=current.status)
        raise ConflictError(
            f"Offer is no longer pending (status={current.status})",
            current_state=offer_state(current),
        )

    async def _get_offer_or_raise(self, offer_id: uuid.UUID) -> Offer:
        offer = await self._offers.get_by_id(offer_id, fresh=True)
        if offer is None:
            raise OfferNotFoundError(str(offer_id))
        return offer

    async def _reload(self, offer_id: uuid.UUID) -> Offer:
        return await self._get_offer_or_raise(offer_id)
