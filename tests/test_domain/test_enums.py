"""Tests for domain enumerations."""

from __future__ import annotations

from talent_escrow.domain.enums import (
    HOLDABLE_ENGAGEMENT_STATUSES,
    EngagementStatus,
    OfferParty,
    OfferStatus,
    PaymentStatus,
    RefundReason,
    WebhookEventType,
)


class TestOfferStatus:
    def test_only_pending_is_open(self) -> None:
        assert [s for s in OfferStatus if not s.is_terminal] == [OfferStatus.PENDING]

    def test_status_is_str_enum(self) -> None:
        assert isinstance(OfferStatus.PENDING, str)
        assert OfferStatus.COUNTERED == "countered"


class TestOfferParty:
    def test_other_flips(self) -> None:
        assert OfferParty.COMPANY.other is OfferParty.TALENT
        assert OfferParty.TALENT.other is OfferParty.COMPANY


class TestEngagementStatus:
    def test_terminal_states(self) -> None:
        terminal = {s for s in EngagementStatus if s.is_terminal}
        assert terminal == {
            EngagementStatus.COMPLETED,
            EngagementStatus.TERMINATED,
            EngagementStatus.DISPUTED,
        }

    def test_holdable_states_are_pre_active(self) -> None:
        assert EngagementStatus.ACTIVE not in HOLDABLE_ENGAGEMENT_STATUSES
        assert EngagementStatus.STAGED in HOLDABLE_ENGAGEMENT_STATUSES


class TestPaymentStatus:
    def test_terminal_states(self) -> None:
        assert {s for s in PaymentStatus if s.is_terminal} == {
            PaymentStatus.RELEASED,
            PaymentStatus.REFUNDED,
            PaymentStatus.FAILED,
        }


def test_refund_reasons() -> None:
    assert {r.value for r in RefundReason} == {
        "dispute",
        "cancelled_by_company",
        "talent_unavailable",
        "mutual_agreement",
        "other",
    }


def test_webhook_event_types_use_provider_names() -> None:
    assert WebhookEventType("charge.succeeded") is WebhookEventType.CHARGE_SUCCEEDED
    assert WebhookEventType("transfer.failed") is WebhookEventType.TRANSFER_FAILED
