"""Tests for OfferService: creation, accept/decline/counter, cancel and expiry."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import offer_data

from talent_escrow.domain.enums import EntityType, EventType, NotificationType
from talent_escrow.domain.exceptions import (
    ConflictError,
    CounterLimitExceededError,
    ExpiredError,
    OfferNotFoundError,
    ValidationError,
)
from talent_escrow.domain.offer_actions import (
    AcceptAction,
    CounterAction,
    CounterOfferTerms,
    DeclineAction,
)
from talent_escrow.domain.timeutils import ensure_utc
from talent_escrow.infrastructure.database.repositories import AuditRepository
from talent_escrow.services import OfferService


def counter(rate: str = "12000", reason: str = "Scope grew", **kwargs) -> CounterAction:
    return CounterAction(CounterOfferTerms(rate=Decimal(rate), reason=reason, **kwargs))


class TestCreateOffer:
    @pytest.mark.asyncio
    async def test_creates_pending_offer_with_fee_split(self, offer_service, notifier, clock) -> None:
        offer = await offer_service.create_offer(**offer_data(currency="usd", duration_days=30))

        assert offer.status == "pending"
        assert offer.offered_by == "company"
        assert offer.currency == "USD"
        assert offer.platform_fee == Decimal("1500.00")
        assert offer.provider_amount == Decimal("8500.00")
        assert ensure_utc(offer.expires_at) == clock.now + timedelta(hours=48)
        assert notifier.sent[-1][0] == NotificationType.OFFER_RECEIVED
        assert notifier.sent[-1][1] == ["talent-1"]

    @pytest.mark.asyncio
    async def test_second_pending_offer_for_pair_conflicts(self, offer_service, pending_offer) -> None:
        with pytest.raises(ConflictError) as exc_info:
            await offer_service.create_offer(**offer_data(rate=Decimal("9000")))
        assert exc_info.value.current_state["id"] == str(pending_offer.id)

    @pytest.mark.asyncio
    async def test_other_talent_on_same_request_is_fine(self, offer_service, pending_offer) -> None:
        other = await offer_service.create_offer(**offer_data(talent_profile_id="talent-2"))
        assert other.id != pending_offer.id

    @pytest.mark.asyncio
    async def test_stale_pending_offer_is_expired_first(self, offer_service, pending_offer, clock) -> None:
        clock.advance(hours=49)
        fresh = await offer_service.create_offer(**offer_data())

        old = await offer_service.get_offer(pending_offer.id)
        assert old.status == "expired"
        assert fresh.status == "pending"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rate", ["0", "-5", "10.001"])
    async def test_rejects_bad_rate(self, offer_service, rate: str) -> None:
        with pytest.raises(ValidationError):
            await offer_service.create_offer(**offer_data(rate=rate))

    @pytest.mark.asyncio
    async def test_requires_parties(self, offer_service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await offer_service.create_offer(**offer_data(company_id=" "))
        assert exc_info.value.field == "company_id"


class TestAccept:
    @pytest.mark.asyncio
    async def test_accept_creates_staged_engagement(self, offer_service, pending_offer, notifier) -> None:
        result = await offer_service.respond(pending_offer.id, AcceptAction())

        assert result.offer.status == "accepted"
        assert result.offer.responded_at is not None
        engagement = result.engagement
        assert engagement.status == "staged"
        assert engagement.total_amount == Decimal("10000.00")
        assert engagement.platform_fee == Decimal("1500.00")
        assert engagement.provider_amount == Decimal("8500.00")
        assert engagement.platform_fee + engagement.provider_amount == engagement.total_amount
        assert result.escrow_payment is None
        assert NotificationType.OFFER_ACCEPTED in notifier.types()

    @pytest.mark.asyncio
    async def test_accept_with_payment_method_holds_funds(self, offer_service, pending_offer, provider) -> None:
        result = await offer_service.respond(
            pending_offer.id, AcceptAction(payment_method_ref="pm_card_visa")
        )

        assert result.escrow_payment.status == "held"
        assert result.engagement.status == "active"
        assert result.hold_error is None
        assert provider.calls[0] == ("create_charge", f"hold:{result.engagement.id}:1")

    @pytest.mark.asyncio
    async def test_declined_card_keeps_offer_accepted(self, offer_service, pending_offer) -> None:
        result = await offer_service.respond(
            pending_offer.id, AcceptAction(payment_method_ref="pm_card_declined")
        )

        assert result.offer.status == "accepted"
        assert result.engagement.status == "staged"
        assert result.hold_error == "Your card was declined."

    @pytest.mark.asyncio
    async def test_accept_without_provider_reports_hold_error(
        self, session, notifier, settings, clock, pending_offer
    ) -> None:
        svc = OfferService(session, None, notifier, settings, clock=clock)
        result = await svc.respond(pending_offer.id, AcceptAction(payment_method_ref="pm_card_visa"))
        assert result.offer.status == "accepted"
        assert result.hold_error == "No payment provider configured"

    @pytest.mark.asyncio
    async def test_only_receiving_party_may_respond(self, offer_service, pending_offer) -> None:
        with pytest.raises(ValidationError):
            await offer_service.respond(pending_offer.id, AcceptAction(), actor_id="company-1")

    @pytest.mark.asyncio
    async def test_second_accept_conflicts(self, offer_service, pending_offer) -> None:
        await offer_service.respond(pending_offer.id, AcceptAction())
        with pytest.raises(ConflictError) as exc_info:
            await offer_service.respond(pending_offer.id, AcceptAction())
        assert exc_info.value.current_state["status"] == "accepted"

    @pytest.mark.asyncio
    async def test_competing_offers_are_declined(self, offer_service, pending_offer, notifier) -> None:
        rival = await offer_service.create_offer(**offer_data(talent_profile_id="talent-2"))
        await offer_service.respond(pending_offer.id, AcceptAction())

        rival = await offer_service.get_offer(rival.id)
        assert rival.status == "declined"
        assert any(
            event_type == NotificationType.OFFER_DECLINED and metadata.get("reason") == "position_filled"
            for event_type, _, metadata in notifier.sent
        )

    @pytest.mark.asyncio
    async def test_competing_offers_kept_when_disabled(
        self, session, provider, notifier, settings, clock
    ) -> None:
        keep = settings.model_copy(update={"decline_competing_offers_on_accept": False})
        svc = OfferService(session, provider, notifier, keep, clock=clock)
        first = await svc.create_offer(**offer_data())
        rival = await svc.create_offer(**offer_data(talent_profile_id="talent-2"))
        await svc.respond(first.id, AcceptAction())

        assert (await svc.get_offer(rival.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_concurrent_accepts_have_one_winner(
        self, session_factory, provider, notifier, settings, clock, pending_offer
    ) -> None:
        async def accept() -> object:
            async with session_factory() as session:
                svc = OfferService(session, provider, notifier, settings, clock=clock)
                return await svc.respond(pending_offer.id, AcceptAction())

        results = await asyncio.gather(accept(), accept(), return_exceptions=True)

        errors = [r for r in results if isinstance(r, Exception)]
        wins = [r for r in results if not isinstance(r, Exception)]
        assert len(wins) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], ConflictError)

        async with session_factory() as session:
            events = await AuditRepository(session).get_for_entity(EntityType.OFFER, pending_offer.id)
        assert [e.event_type for e in events].count(EventType.OFFER_ACCEPTED) == 1


class TestDecline:
    @pytest.mark.asyncio
    async def test_decline(self, offer_service, pending_offer, notifier) -> None:
        result = await offer_service.respond(pending_offer.id, DeclineAction(reason="Not available"))
        assert result.offer.status == "declined"
        assert notifier.sent[-1][1] == ["company-1"]

    @pytest.mark.asyncio
    async def test_declined_offer_cannot_be_accepted(self, offer_service, pending_offer) -> None:
        await offer_service.respond(pending_offer.id, DeclineAction())
        with pytest.raises(ConflictError):
            await offer_service.respond(pending_offer.id, AcceptAction())


class TestCounter:
    @pytest.mark.asyncio
    async def test_counter_creates_linked_offer(self, offer_service, pending_offer, clock) -> None:
        clock.advance(hours=6)
        result = await offer_service.respond(pending_offer.id, counter("12000"))

        assert result.offer.status == "countered"
        new = result.counter_offer
        assert new.status == "pending"
        assert new.counter_of == pending_offer.id
        assert new.counter_depth == 1
        assert new.offered_by == "talent"
        assert new.platform_fee == Decimal("1800.00")
        assert new.provider_amount == Decimal("10200.00")
        assert new.counter_reason == "Scope grew"
        assert ensure_utc(new.expires_at) > ensure_utc(pending_offer.expires_at)

    @pytest.mark.asyncio
    async def test_counter_inherits_duration_and_terms(self, offer_service) -> None:
        offer = await offer_service.create_offer(**offer_data(duration_days=30, terms="Remote"))
        result = await offer_service.respond(offer.id, counter())
        assert result.counter_offer.duration_days == 30
        assert result.counter_offer.terms == "Remote"

    @pytest.mark.asyncio
    async def test_company_can_counter_the_counter_and_talent_accepts(self, offer_service, pending_offer) -> None:
        first = await offer_service.respond(pending_offer.id, counter("12000"))
        second = await offer_service.respond(
            first.counter_offer.id, counter("11000", "Meet in the middle"), actor_id="company-1"
        )
        assert second.counter_offer.offered_by == "company"

        accepted = await offer_service.respond(second.counter_offer.id, AcceptAction(), actor_id="talent-1")
        assert accepted.engagement.total_amount == Decimal("11000.00")

        chain = await offer_service.get_counter_chain(second.counter_offer.id)
        assert [o.rate for o in chain] == [Decimal("10000.00"), Decimal("12000.00"), Decimal("11000.00")]
        assert [o.status for o in chain] == ["countered", "countered", "accepted"]

    @pytest.mark.asyncio
    async def test_counter_limit(self, session, provider, notifier, settings, clock) -> None:
        shallow = settings.model_copy(update={"max_counter_depth": 1})
        svc = OfferService(session, provider, notifier, shallow, clock=clock)
        offer = await svc.create_offer(**offer_data())
        first = await svc.respond(offer.id, counter())

        with pytest.raises(CounterLimitExceededError):
            await svc.respond(first.counter_offer.id, counter("11000"))
        assert (await svc.get_offer(first.counter_offer.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_answered_offer_at_limit_reports_its_state(
        self, session, provider, notifier, settings, clock
    ) -> None:
        shallow = settings.model_copy(update={"max_counter_depth": 1})
        svc = OfferService(session, provider, notifier, shallow, clock=clock)
        offer = await svc.create_offer(**offer_data())
        deepest = (await svc.respond(offer.id, counter())).counter_offer
        await svc.respond(deepest.id, DeclineAction())

        with pytest.raises(ConflictError) as exc_info:
            await svc.respond(deepest.id, counter("11000"))
        assert exc_info.value.current_state["status"] == "declined"

    @pytest.mark.asyncio
    async def test_expired_offer_at_limit_is_expired(self, session, provider, notifier, settings, clock) -> None:
        shallow = settings.model_copy(update={"max_counter_depth": 1})
        svc = OfferService(session, provider, notifier, shallow, clock=clock)
        offer = await svc.create_offer(**offer_data())
        deepest = (await svc.respond(offer.id, counter())).counter_offer
        clock.advance(hours=49)

        with pytest.raises(ExpiredError):
            await svc.respond(deepest.id, counter("11000"))

    @pytest.mark.asyncio
    async def test_counter_requires_reason(self, offer_service, pending_offer) -> None:
        with pytest.raises(ValidationError):
            await offer_service.respond(pending_offer.id, counter(reason="  "))


class TestCancel:
    @pytest.mark.asyncio
    async def test_offering_party_cancels(self, offer_service, pending_offer) -> None:
        offer = await offer_service.cancel(pending_offer.id, "company-1")
        assert offer.status == "cancelled"

    @pytest.mark.asyncio
    async def test_receiving_party_cannot_cancel(self, offer_service, pending_offer) -> None:
        with pytest.raises(ValidationError):
            await offer_service.cancel(pending_offer.id, "talent-1")


class TestExpiry:
    @pytest.mark.asyncio
    async def test_accept_after_deadline_raises_expired(self, offer_service, pending_offer, clock, notifier) -> None:
        clock.advance(hours=48, seconds=1)
        with pytest.raises(ExpiredError) as exc_info:
            await offer_service.respond(pending_offer.id, AcceptAction())

        assert exc_info.value.current_state["status"] == "expired"
        assert NotificationType.OFFER_EXPIRED in notifier.types()

    @pytest.mark.asyncio
    async def test_accept_just_before_deadline_succeeds(self, offer_service, pending_offer, clock) -> None:
        clock.advance(hours=47, minutes=59)
        result = await offer_service.respond(pending_offer.id, AcceptAction())
        assert result.offer.status == "accepted"

    @pytest.mark.asyncio
    async def test_expire_offer_is_single_shot(self, offer_service, pending_offer, clock) -> None:
        clock.advance(hours=49)
        assert await offer_service.expire_offer(pending_offer.id) is True
        assert await offer_service.expire_offer(pending_offer.id) is False

    @pytest.mark.asyncio
    async def test_expire_offer_refuses_live_offer(self, offer_service, pending_offer) -> None:
        offer_id = pending_offer.id
        assert await offer_service.expire_offer(offer_id) is False
        assert (await offer_service.get_offer(offer_id)).status == "pending"


class TestReads:
    @pytest.mark.asyncio
    async def test_unknown_offer(self, offer_service) -> None:
        with pytest.raises(OfferNotFoundError):
            await offer_service.get_offer(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_list_filters(self, offer_service, pending_offer) -> None:
        await offer_service.create_offer(**offer_data(request_id="req-2"))
        assert [o.id for o in await offer_service.list_offers(request_id="req-1")] == [pending_offer.id]
        assert len(await offer_service.list_offers(company_id="company-1")) == 2
