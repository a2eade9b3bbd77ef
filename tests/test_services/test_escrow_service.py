"""Tests for EscrowService: holds, releases and refunds against the simulated provider."""

from __future__ import annotations

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from talent_escrow.domain.enums import EntityType, EventType, NotificationType
from talent_escrow.domain.exceptions import (
    ConflictError,
    EngagementNotFoundError,
    InvalidStateTransitionError,
    RetryableProviderError,
    TerminalProviderError,
    ValidationError,
)
from talent_escrow.infrastructure.database.repositories import AuditRepository


async def verified_completion(engagement_service, engagement_id: uuid.UUID) -> None:
    await engagement_service.complete(engagement_id, verified=True, approved_by="company-1")


class TestCreateHold:
    @pytest.mark.asyncio
    async def test_hold_activates_engagement(
        self, escrow_service, engagement_service, staged_engagement, notifier, provider
    ) -> None:
        payment = await escrow_service.create_hold(staged_engagement.id, "pm_card_visa")

        assert payment.status == "held"
        assert payment.amount == Decimal("10000.00")
        assert payment.platform_fee == Decimal("1500.00")
        assert payment.provider_amount == Decimal("8500.00")
        assert payment.provider_charge_ref.startswith("ch_")
        assert payment.idempotency_key == f"hold:{staged_engagement.id}:1"
        assert provider.calls == [("create_charge", payment.idempotency_key)]

        engagement = await engagement_service.get_engagement(staged_engagement.id)
        assert engagement.status == "active"
        assert engagement.start_date is not None
        assert NotificationType.PAYMENT_HELD in notifier.types()

    @pytest.mark.asyncio
    async def test_amount_must_match_total(self, escrow_service, staged_engagement) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await escrow_service.create_hold(staged_engagement.id, "pm_card_visa", amount="9999.99")
        assert exc_info.value.field == "amount"

    @pytest.mark.asyncio
    async def test_explicit_matching_amount_is_accepted(self, escrow_service, staged_engagement) -> None:
        payment = await escrow_service.create_hold(staged_engagement.id, "pm_card_visa", amount="10000")
        assert payment.status == "held"

    @pytest.mark.asyncio
    async def test_unknown_engagement(self, escrow_service) -> None:
        with pytest.raises(EngagementNotFoundError):
            await escrow_service.create_hold(uuid.uuid4(), "pm_card_visa")

    @pytest.mark.asyncio
    async def test_second_hold_conflicts(self, escrow_service, held_engagement, provider) -> None:
        calls_before = len(provider.calls)
        with pytest.raises(ConflictError):
            await escrow_service.create_hold(held_engagement.id, "pm_card_visa")
        assert len(provider.calls) == calls_before

    @pytest.mark.asyncio
    async def test_declined_then_retry_with_new_method(
        self, escrow_service, staged_engagement, notifier
    ) -> None:
        with pytest.raises(TerminalProviderError):
            await escrow_service.create_hold(staged_engagement.id, "pm_card_declined")

        failed = await escrow_service.get_payment(staged_engagement.id)
        assert failed.status == "failed"
        assert failed.failure_reason == "Your card was declined."
        assert (NotificationType.PAYMENT_FAILED, ["company-1"]) in [(t, r) for t, r, _ in notifier.sent]

        payment = await escrow_service.create_hold(staged_engagement.id, "pm_card_visa")
        assert payment.status == "held"
        assert payment.idempotency_key == f"hold:{staged_engagement.id}:2"

        history = await escrow_service.get_payment_history(staged_engagement.id)
        assert sorted(p.status for p in history) == ["failed", "held"]

    @pytest.mark.asyncio
    async def test_retryable_failure_leaves_pending_and_resume_reuses_key(
        self, escrow_service, staged_engagement, provider, settings
    ) -> None:
        provider.fail_transiently(settings.provider_retry_max)
        with pytest.raises(RetryableProviderError):
            await escrow_service.create_hold(staged_engagement.id, "pm_card_visa")

        pending = await escrow_service.get_payment(staged_engagement.id)
        assert pending.status == "pending"
        assert pending.provider_charge_ref is None

        with pytest.raises(ConflictError):
            await escrow_service.create_hold(staged_engagement.id, "pm_other")

        payment = await escrow_service.create_hold(staged_engagement.id, "pm_card_visa")
        assert payment.id == pending.id
        assert payment.status == "held"
        assert {key for _, key in provider.calls} == {f"hold:{staged_engagement.id}:1"}

    @pytest.mark.asyncio
    async def test_hold_refused_for_terminated_engagement(self, escrow_service, held_engagement) -> None:
        await escrow_service.refund(held_engagement.id, "mutual_agreement")
        with pytest.raises(ConflictError) as exc_info:
            await escrow_service.create_hold(held_engagement.id, "pm_card_visa")
        assert exc_info.value.current_state["status"] == "terminated"


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_requires_verified_completion(self, escrow_service, held_engagement, provider) -> None:
        calls_before = list(provider.calls)
        with pytest.raises(ConflictError) as exc_info:
            await escrow_service.release(held_engagement.id)

        assert exc_info.value.current_state["completion_verified"] is False
        assert provider.calls == calls_before
        assert (await escrow_service.get_payment(held_engagement.id)).status == "held"

    @pytest.mark.asyncio
    async def test_release_pays_out_net_amount(
        self, escrow_service, engagement_service, held_engagement, provider, notifier, session
    ) -> None:
        await verified_completion(engagement_service, held_engagement.id)
        payment = await escrow_service.release(held_engagement.id)

        assert payment.status == "released"
        assert payment.released_at is not None
        assert payment.provider_transfer_ref.startswith("tr_")
        assert ("capture", f"capture:{payment.id}") in provider.calls
        assert ("transfer", f"transfer:{payment.id}") in provider.calls
        assert NotificationType.PAYMENT_RELEASED in notifier.types()

        events = await AuditRepository(session).get_for_entity(EntityType.ESCROW_PAYMENT, payment.id)
        assert [e.event_type for e in events] == [
            EventType.HOLD_REQUESTED,
            EventType.HOLD_CONFIRMED,
            EventType.RELEASE_REQUESTED,
            EventType.PAYMENT_RELEASED,
        ]

    @pytest.mark.asyncio
    async def test_release_is_idempotent(
        self, escrow_service, engagement_service, held_engagement, provider
    ) -> None:
        await verified_completion(engagement_service, held_engagement.id)
        first = await escrow_service.release(held_engagement.id)
        calls = len(provider.calls)

        second = await escrow_service.release(held_engagement.id)
        assert second.id == first.id
        assert second.status == "released"
        assert len(provider.calls) == calls

    @pytest.mark.asyncio
    async def test_release_retries_transient_transfer_failure(
        self, escrow_service, engagement_service, held_engagement, provider
    ) -> None:
        await verified_completion(engagement_service, held_engagement.id)
        provider.fail_transiently(1)
        payment = await escrow_service.release(held_engagement.id)
        assert payment.status == "released"

    @pytest.mark.asyncio
    async def test_disputed_engagement_cannot_release(
        self, escrow_service, engagement_service, held_engagement
    ) -> None:
        await engagement_service.dispute(held_engagement.id, "Work not delivered", "company-1")
        with pytest.raises(ConflictError) as exc_info:
            await escrow_service.release(held_engagement.id)
        assert exc_info.value.current_state["status"] == "disputed"

    @pytest.mark.asyncio
    async def test_terminal_transfer_failure_clears_release_intent(
        self, escrow_service, engagement_service, held_engagement, provider, notifier, session, monkeypatch
    ) -> None:
        engagement_id = held_engagement.id
        await verified_completion(engagement_service, engagement_id)
        monkeypatch.setattr(
            provider,
            "transfer",
            AsyncMock(side_effect=TerminalProviderError("invalid destination account", 400, "account_invalid")),
        )

        with pytest.raises(TerminalProviderError):
            await escrow_service.release(engagement_id)

        payment = await escrow_service.get_payment(engagement_id)
        assert payment.status == "held"
        assert payment.release_requested_at is None
        assert (NotificationType.TRANSFER_FAILED_ALERT, ["operations"]) in [(t, r) for t, r, _ in notifier.sent]
        events = await AuditRepository(session).get_for_entity(EntityType.ESCROW_PAYMENT, payment.id)
        assert EventType.RELEASE_REVERTED in [e.event_type for e in events]

        refunded = await escrow_service.refund(engagement_id, "other")
        assert refunded.status == "refunded"

    @pytest.mark.asyncio
    async def test_retryable_transfer_failure_keeps_release_intent(
        self, escrow_service, engagement_service, held_engagement, provider, monkeypatch
    ) -> None:
        engagement_id = held_engagement.id
        await verified_completion(engagement_service, engagement_id)
        monkeypatch.setattr(
            provider, "transfer", AsyncMock(side_effect=RetryableProviderError("provider unavailable", 503))
        )

        with pytest.raises(RetryableProviderError):
            await escrow_service.release(engagement_id)

        payment = await escrow_service.get_payment(engagement_id)
        assert payment.status == "held"
        assert payment.release_requested_at is not None

        monkeypatch.undo()
        assert (await escrow_service.release(engagement_id)).status == "released"


class TestRefund:
    @pytest.mark.asyncio
    async def test_refund_terminates_engagement(
        self, escrow_service, engagement_service, held_engagement, provider, notifier
    ) -> None:
        payment = await escrow_service.refund(held_engagement.id, "cancelled_by_company")

        assert payment.status == "refunded"
        assert payment.refund_reason == "cancelled_by_company"
        assert ("refund", f"refund:{payment.id}") in provider.calls
        assert (await engagement_service.get_engagement(held_engagement.id)).status == "terminated"
        assert NotificationType.PAYMENT_REFUNDED in notifier.types()

    @pytest.mark.asyncio
    async def test_dispute_refund_keeps_engagement_disputed(
        self, escrow_service, engagement_service, held_engagement
    ) -> None:
        await engagement_service.dispute(held_engagement.id, "Missed deadlines", "company-1")
        payment = await escrow_service.refund(held_engagement.id, "dispute")

        assert payment.status == "refunded"
        assert (await engagement_service.get_engagement(held_engagement.id)).status == "disputed"

    @pytest.mark.asyncio
    async def test_dispute_refund_moves_active_engagement_to_disputed(
        self, escrow_service, engagement_service, held_engagement
    ) -> None:
        await escrow_service.refund(held_engagement.id, "dispute")
        assert (await engagement_service.get_engagement(held_engagement.id)).status == "disputed"

    @pytest.mark.asyncio
    async def test_refund_after_completion_leaves_engagement_completed(
        self, escrow_service, engagement_service, held_engagement
    ) -> None:
        await engagement_service.complete(held_engagement.id)
        await escrow_service.refund(held_engagement.id, "mutual_agreement")
        assert (await engagement_service.get_engagement(held_engagement.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_refund_is_idempotent(self, escrow_service, held_engagement, provider) -> None:
        first = await escrow_service.refund(held_engagement.id, "other")
        calls = len(provider.calls)
        second = await escrow_service.refund(held_engagement.id, "other")
        assert second.id == first.id
        assert len(provider.calls) == calls

    @pytest.mark.asyncio
    async def test_released_payment_cannot_be_refunded(
        self, escrow_service, engagement_service, held_engagement
    ) -> None:
        await verified_completion(engagement_service, held_engagement.id)
        await escrow_service.release(held_engagement.id)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await escrow_service.refund(held_engagement.id, "other")
        assert exc_info.value.current_state["status"] == "released"

    @pytest.mark.asyncio
    async def test_unknown_reason(self, escrow_service, held_engagement) -> None:
        with pytest.raises(ValidationError):
            await escrow_service.refund(held_engagement.id, "changed_my_mind")

    @pytest.mark.asyncio
    async def test_terminal_refund_failure_clears_intent(
        self, escrow_service, held_engagement, provider, monkeypatch
    ) -> None:
        monkeypatch.setattr(
            provider,
            "refund",
            AsyncMock(side_effect=TerminalProviderError("charge already refunded", 400, "charge_refunded")),
        )
        with pytest.raises(TerminalProviderError):
            await escrow_service.refund(held_engagement.id, "other")

        payment = await escrow_service.get_payment(held_engagement.id)
        assert payment.status == "held"
        assert payment.refund_reason is None

    @pytest.mark.asyncio
    async def test_refund_blocks_release(
        self, escrow_service, engagement_service, held_engagement, provider, monkeypatch
    ) -> None:
        await verified_completion(engagement_service, held_engagement.id)
        monkeypatch.setattr(provider, "refund", AsyncMock(side_effect=RetryableProviderError("down", 503)))
        with pytest.raises(RetryableProviderError):
            await escrow_service.refund(held_engagement.id, "other")

        with pytest.raises(ConflictError, match="refund is already in progress"):
            await escrow_service.release(held_engagement.id)
