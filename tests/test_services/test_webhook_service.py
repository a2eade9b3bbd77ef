"""Tests for WebhookService: signatures, dedup, ordering and transactional handling.

The provider here confirms nothing synchronously, so holds stay pending and
releases stay unconfirmed until a webhook arrives.
"""

from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from conftest import sign, webhook_body

from talent_escrow.domain.enums import NotificationType, WebhookOutcome
from talent_escrow.domain.exceptions import SignatureVerificationError, ValidationError
from talent_escrow.domain.offer_actions import AcceptAction
from talent_escrow.infrastructure.database.repositories import WebhookEventRepository
from talent_escrow.infrastructure.payment_provider import SimulatedPaymentProviderClient


@pytest.fixture
def provider() -> SimulatedPaymentProviderClient:
    return SimulatedPaymentProviderClient(confirm_synchronously=False)


@pytest_asyncio.fixture
async def pending_hold(offer_service, pending_offer):
    """Accepted offer whose hold the provider has not confirmed yet."""
    result = await offer_service.respond(pending_offer.id, AcceptAction(payment_method_ref="pm_card_visa"))
    payment = result.escrow_payment
    assert payment.status == "pending"
    assert payment.provider_charge_ref is not None
    return payment


async def deliver(webhook_service, event_type: str, obj: dict, event_id: str | None = "auto") -> WebhookOutcome:
    body = webhook_body(event_type, obj, event_id)
    return await webhook_service.handle(body, sign(body))


async def confirm_hold(webhook_service, payment) -> None:
    assert await deliver(webhook_service, "charge.succeeded", {"id": payment.provider_charge_ref}) == (
        WebhookOutcome.PROCESSED
    )


class TestSignature:
    @pytest.mark.asyncio
    async def test_bad_signature_writes_nothing(
        self, webhook_service, escrow_service, session, pending_hold
    ) -> None:
        body = webhook_body("charge.succeeded", {"id": pending_hold.provider_charge_ref}, "evt_forged")
        with pytest.raises(SignatureVerificationError):
            await webhook_service.handle(body, sign(body, secret="whsec_attacker"))

        assert not await WebhookEventRepository(session).exists("evt_forged")
        assert (await escrow_service.get_payment(pending_hold.engagement_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_missing_signature(self, webhook_service) -> None:
        with pytest.raises(SignatureVerificationError):
            await webhook_service.handle(webhook_body("charge.succeeded", {"id": "ch_1"}), None)

    @pytest.mark.asyncio
    async def test_signed_garbage_is_a_validation_error(self, webhook_service) -> None:
        body = b"not json"
        with pytest.raises(ValidationError):
            await webhook_service.handle(body, sign(body))


class TestChargeEvents:
    @pytest.mark.asyncio
    async def test_duplicate_delivery_applies_once(
        self, webhook_service, engagement_service, pending_hold, notifier
    ) -> None:
        body = webhook_body("charge.succeeded", {"id": pending_hold.provider_charge_ref}, "evt_dup_1")

        assert await webhook_service.handle(body, sign(body)) == WebhookOutcome.PROCESSED
        assert await webhook_service.handle(body, sign(body)) == WebhookOutcome.DUPLICATE

        engagement = await engagement_service.get_engagement(pending_hold.engagement_id)
        assert engagement.status == "active"
        assert notifier.types().count(NotificationType.PAYMENT_HELD) == 1

    @pytest.mark.asyncio
    async def test_redelivery_under_new_id_is_stale(self, webhook_service, pending_hold) -> None:
        await confirm_hold(webhook_service, pending_hold)
        outcome = await deliver(webhook_service, "charge.succeeded", {"id": pending_hold.provider_charge_ref})
        assert outcome == WebhookOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_late_failure_after_success_is_ignored(
        self, webhook_service, escrow_service, pending_hold
    ) -> None:
        await confirm_hold(webhook_service, pending_hold)
        outcome = await deliver(
            webhook_service,
            "charge.failed",
            {"id": pending_hold.provider_charge_ref, "failure_message": "insufficient funds"},
        )

        assert outcome == WebhookOutcome.IGNORED
        assert (await escrow_service.get_payment(pending_hold.engagement_id)).status == "held"

    @pytest.mark.asyncio
    async def test_charge_failed_marks_payment_failed(
        self, webhook_service, escrow_service, pending_hold, notifier
    ) -> None:
        outcome = await deliver(
            webhook_service,
            "charge.failed",
            {"id": pending_hold.provider_charge_ref, "failure_message": "insufficient funds"},
        )

        assert outcome == WebhookOutcome.PROCESSED
        payment = await escrow_service.get_payment(pending_hold.engagement_id)
        assert payment.status == "failed"
        assert payment.failure_reason == "insufficient funds"
        assert NotificationType.PAYMENT_FAILED in notifier.types()

    @pytest.mark.asyncio
    async def test_lookup_falls_back_to_metadata(self, webhook_service, escrow_service, pending_hold) -> None:
        outcome = await deliver(
            webhook_service,
            "charge.succeeded",
            {"id": "ch_reissued", "metadata": {"payment_id": str(pending_hold.id)}},
        )
        assert outcome == WebhookOutcome.PROCESSED
        assert (await escrow_service.get_payment(pending_hold.engagement_id)).status == "held"

    @pytest.mark.asyncio
    async def test_unknown_payment_is_acknowledged(self, webhook_service, session) -> None:
        outcome = await deliver(webhook_service, "charge.succeeded", {"id": "ch_nobody"}, "evt_orphan")
        assert outcome == WebhookOutcome.IGNORED
        assert await WebhookEventRepository(session).exists("evt_orphan")

    @pytest.mark.asyncio
    async def test_charge_refunded_terminates_engagement(
        self, webhook_service, escrow_service, engagement_service, pending_hold
    ) -> None:
        await confirm_hold(webhook_service, pending_hold)
        outcome = await deliver(webhook_service, "charge.refunded", {"id": pending_hold.provider_charge_ref})

        assert outcome == WebhookOutcome.PROCESSED
        payment = await escrow_service.get_payment(pending_hold.engagement_id)
        assert payment.status == "refunded"
        assert payment.refund_reason == "other"
        assert (await engagement_service.get_engagement(pending_hold.engagement_id)).status == "terminated"


@pytest_asyncio.fixture
async def releasing(webhook_service, escrow_service, engagement_service, pending_hold):
    """Held, verified, and released with the transfer still unconfirmed."""
    await confirm_hold(webhook_service, pending_hold)
    await engagement_service.complete(pending_hold.engagement_id, verified=True, approved_by="company-1")
    payment = await escrow_service.release(pending_hold.engagement_id)
    assert payment.status == "held"
    assert payment.release_requested_at is not None
    assert payment.provider_transfer_ref is not None
    return payment


class TestTransferEvents:
    @pytest.mark.asyncio
    async def test_transfer_created_releases(self, webhook_service, escrow_service, releasing, notifier) -> None:
        outcome = await deliver(webhook_service, "transfer.created", {"id": releasing.provider_transfer_ref})

        assert outcome == WebhookOutcome.PROCESSED
        assert (await escrow_service.get_payment(releasing.engagement_id)).status == "released"
        assert NotificationType.PAYMENT_RELEASED in notifier.types()

    @pytest.mark.asyncio
    async def test_transfer_failed_reverts_release_and_alerts(
        self, webhook_service, escrow_service, releasing, notifier
    ) -> None:
        outcome = await deliver(
            webhook_service,
            "transfer.failed",
            {"id": releasing.provider_transfer_ref, "failure_message": "account closed"},
        )

        assert outcome == WebhookOutcome.PROCESSED
        payment = await escrow_service.get_payment(releasing.engagement_id)
        assert payment.status == "held"
        assert payment.release_requested_at is None
        assert payment.provider_transfer_ref is None
        assert (NotificationType.TRANSFER_FAILED_ALERT, ["operations"]) in [(t, r) for t, r, _ in notifier.sent]

    @pytest.mark.asyncio
    async def test_transfer_failed_after_release_only_alerts(
        self, webhook_service, escrow_service, releasing, notifier
    ) -> None:
        transfer_ref = releasing.provider_transfer_ref
        await deliver(webhook_service, "transfer.created", {"id": transfer_ref})
        outcome = await deliver(webhook_service, "transfer.failed", {"id": transfer_ref})

        assert outcome == WebhookOutcome.IGNORED
        assert (await escrow_service.get_payment(releasing.engagement_id)).status == "released"
        assert NotificationType.TRANSFER_FAILED_ALERT in notifier.types()


class TestLedger:
    @pytest.mark.asyncio
    async def test_unknown_event_type_is_recorded_and_ignored(self, webhook_service, session) -> None:
        outcome = await deliver(webhook_service, "customer.updated", {"id": "cus_1"}, "evt_other")
        assert outcome == WebhookOutcome.IGNORED
        assert await WebhookEventRepository(session).exists("evt_other")

    @pytest.mark.asyncio
    async def test_missing_event_id_dedups_on_content_hash(self, webhook_service, pending_hold) -> None:
        body = webhook_body("charge.succeeded", {"id": pending_hold.provider_charge_ref}, event_id=None)
        assert "id" not in json.loads(body)

        assert await webhook_service.handle(body, sign(body)) == WebhookOutcome.PROCESSED
        assert await webhook_service.handle(body, sign(body)) == WebhookOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_handler_failure_rolls_back_ledger(
        self, webhook_service, escrow_service, session, pending_hold, monkeypatch
    ) -> None:
        engagement_id = pending_hold.engagement_id
        body = webhook_body("charge.succeeded", {"id": pending_hold.provider_charge_ref}, "evt_retry")
        monkeypatch.setattr(
            webhook_service._escrow,
            "apply_hold_confirmed",
            AsyncMock(side_effect=RuntimeError("database hiccup")),
        )

        with pytest.raises(RuntimeError):
            await webhook_service.handle(body, sign(body))
        assert not await WebhookEventRepository(session).exists("evt_retry")
        assert (await escrow_service.get_payment(engagement_id)).status == "pending"

        monkeypatch.undo()
        assert await webhook_service.handle(body, sign(body)) == WebhookOutcome.PROCESSED
        assert (await escrow_service.get_payment(engagement_id)).status == "held"

    @pytest.mark.asyncio
    async def test_malformed_object_for_known_type(self, webhook_service, session) -> None:
        body = webhook_body("charge.succeeded", {"amount": 100}, "evt_bad_object")
        with pytest.raises(ValidationError):
            await webhook_service.handle(body, sign(body))
        assert not await WebhookEventRepository(session).exists("evt_bad_object")


@pytest.mark.asyncio
async def test_events_for_unrelated_payment_ids_are_ignored(webhook_service) -> None:
    outcome = await deliver(
        webhook_service,
        "transfer.created",
        {"id": "tr_unknown", "metadata": {"payment_id": str(uuid.uuid4())}},
    )
    assert outcome == WebhookOutcome.IGNORED
