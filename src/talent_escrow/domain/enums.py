"""Domain enumerations for the talent escrow service.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class OfferStatus(enum.StrEnum):
    """Lifecycle states of an offer row.

    Only PENDING is non-terminal. ACCEPTED and COUNTERED are terminal for the
    row itself; a counter spawns a new PENDING row.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COUNTERED = "countered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OfferStatus.PENDING


class OfferParty(enum.StrEnum):
    """Which side proposed an offer row (flips on every counter)."""

    COMPANY = "company"
    TALENT = "talent"

    @property
    def other(self) -> "OfferParty":
        return OfferParty.TALENT if self is OfferParty.COMPANY else OfferParty.COMPANY


class EngagementStatus(enum.StrEnum):
    """Lifecycle states of an engagement.

    See domain/state_machine.py for the transition table.
    """

    STAGED = "staged"
    INTERVIEWING = "interviewing"
    ACCEPTED = "accepted"
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    DISPUTED = "disputed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_ENGAGEMENT_STATUSES


_TERMINAL_ENGAGEMENT_STATUSES = frozenset(
    {EngagementStatus.COMPLETED, EngagementStatus.TERMINATED, EngagementStatus.DISPUTED}
)

# Engagement states from which an escrow hold may be placed.
HOLDABLE_ENGAGEMENT_STATUSES = frozenset(
    {EngagementStatus.STAGED, EngagementStatus.INTERVIEWING, EngagementStatus.ACCEPTED}
)


class PaymentStatus(enum.StrEnum):
    """Lifecycle states of an escrow payment.

    Forward-only: pending -> held -> released | refunded, pending -> failed.
    """

    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.RELEASED, PaymentStatus.REFUNDED, PaymentStatus.FAILED)


class RefundReason(enum.StrEnum):
    """Caller-supplied reason codes for refunding a held payment.

    DISPUTE leaves the engagement disputed; every other reason terminates it.
    """

    DISPUTE = "dispute"
    CANCELLED_BY_COMPANY = "cancelled_by_company"
    TALENT_UNAVAILABLE = "talent_unavailable"
    MUTUAL_AGREEMENT = "mutual_agreement"
    OTHER = "other"


class WebhookEventType(enum.StrEnum):
    """Provider callback types the webhook processor understands."""

    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    CHARGE_REFUNDED = "charge.refunded"
    TRANSFER_CREATED = "transfer.created"
    TRANSFER_FAILED = "transfer.failed"


class WebhookOutcome(enum.StrEnum):
    """Result of handling one webhook delivery (all acknowledged with 200)."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class EntityType(enum.StrEnum):
    """Entities that write rows into the audit_events table."""

    OFFER = "offer"
    ENGAGEMENT = "engagement"
    ESCROW_PAYMENT = "escrow_payment"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the audit_events table.

    Every state transition MUST produce exactly one event.
    """

    # Offers
    OFFER_CREATED = "OFFER_CREATED"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_DECLINED = "OFFER_DECLINED"
    OFFER_COUNTERED = "OFFER_COUNTERED"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    OFFER_CANCELLED = "OFFER_CANCELLED"

    # Engagements
    ENGAGEMENT_CREATED = "ENGAGEMENT_CREATED"
    ENGAGEMENT_STATUS_CHANGED = "ENGAGEMENT_STATUS_CHANGED"
    ENGAGEMENT_COMPLETION_VERIFIED = "ENGAGEMENT_COMPLETION_VERIFIED"

    # Escrow payments
    HOLD_REQUESTED = "HOLD_REQUESTED"
    HOLD_CONFIRMED = "HOLD_CONFIRMED"
    HOLD_FAILED = "HOLD_FAILED"
    RELEASE_REQUESTED = "RELEASE_REQUESTED"
    RELEASE_REVERTED = "RELEASE_REVERTED"
    PAYMENT_RELEASED = "PAYMENT_RELEASED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"


class NotificationType(enum.StrEnum):
    """Event names handed to the external NotificationService."""

    OFFER_RECEIVED = "offer.received"
    OFFER_ACCEPTED = "offer.accepted"
    OFFER_DECLINED = "offer.declined"
    OFFER_COUNTERED = "offer.countered"
    OFFER_EXPIRED = "offer.expired"
    OFFER_CANCELLED = "offer.cancelled"
    PAYMENT_HELD = "payment.held"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_RELEASED = "payment.released"
    PAYMENT_REFUNDED = "payment.refunded"
    TRANSFER_FAILED_ALERT = "payment.transfer_failed_alert"
    ENGAGEMENT_DISPUTED = "engagement.disputed"
