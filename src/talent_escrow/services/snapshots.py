"""Authoritative-state snapshots attached to ConflictError."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from talent_escrow.infrastructure.database.orm_models import Engagement, EscrowPayment, Offer


def _iso(value) -> str | None:  # noqa: ANN001
    return value.isoformat() if value is not None else None


def offer_state(offer: Offer) -> dict:
    return {
        "id": str(offer.id),
        "status": offer.status,
        "expires_at": _iso(offer.expires_at),
        "counter_depth": offer.counter_depth,
        "offered_by": offer.offered_by,
    }


def engagement_state(engagement: Engagement) -> dict:
    return {
        "id": str(engagement.id),
        "status": engagement.status,
        "completion_verified": engagement.completion_verified,
    }


def payment_state(payment: EscrowPayment) -> dict:
    return {
        "id": str(payment.id),
        "engagement_id": str(payment.engagement_id),
        "status": payment.status,
        "release_requested": payment.release_requested_at is not None,
        "refund_reason": payment.refund_reason,
    }
