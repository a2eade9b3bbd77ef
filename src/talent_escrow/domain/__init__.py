"""Domain layer — pure business logic with zero framework dependencies."""

from talent_escrow.domain.enums import (
    EngagementStatus,
    EventType,
    OfferStatus,
    PaymentStatus,
    RefundReason,
    WebhookEventType,
)
from talent_escrow.domain.exceptions import (
    ConflictError,
    ExpiredError,
    MarketplaceError,
    NotFoundError,
    PaymentProviderError,
    SignatureVerificationError,
    ValidationError,
)
from talent_escrow.domain.fees import FeeSplit, compute_split
from talent_escrow.domain.notifier_protocol import NotificationService
from talent_escrow.domain.provider_protocol import (
    ChargeResult,
    PaymentProviderClient,
    RefundResult,
    TransferResult,
)
from talent_escrow.domain.state_machine import (
    EngagementStateMachine,
    EscrowPaymentStateMachine,
    OfferStateMachine,
    validate_transition,
)

__all__ = [
    "EngagementStatus",
    "EventType",
    "OfferStatus",
    "PaymentStatus",
    "RefundReason",
    "WebhookEventType",
    "ConflictError",
    "ExpiredError",
    "MarketplaceError",
    "NotFoundError",
    "PaymentProviderError",
    "SignatureVerificationError",
    "ValidationError",
    "FeeSplit",
    "compute_split",
    "NotificationService",
    "ChargeResult",
    "PaymentProviderClient",
    "RefundResult",
    "TransferResult",
    "EngagementStateMachine",
    "EscrowPaymentStateMachine",
    "OfferStateMachine",
    "validate_transition",
]
