"""Pydantic API schemas."""

from talent_escrow.schemas.common import AuditEventResponse, ErrorResponse, HealthResponse
from talent_escrow.schemas.engagements import (
    CompleteEngagementRequest,
    EngagementResponse,
    EngagementStatusResponse,
    RaiseDisputeRequest,
    UpdateEngagementStatusRequest,
    VerifyCompletionRequest,
)
from talent_escrow.schemas.offers import (
    CancelOfferRequest,
    CreateOfferRequest,
    OfferChainResponse,
    OfferResponse,
    RespondOfferBody,
    RespondOfferRequest,
    RespondOfferResponse,
)
from talent_escrow.schemas.payments import (
    CreateHoldRequest,
    EscrowPaymentResponse,
    PaymentDetailResponse,
    RefundRequest,
)
from talent_escrow.schemas.webhooks import ProviderObject, WebhookAckResponse, WebhookEnvelope

__all__ = [
    "AuditEventResponse",
    "ErrorResponse",
    "HealthResponse",
    "CompleteEngagementRequest",
    "EngagementResponse",
    "EngagementStatusResponse",
    "RaiseDisputeRequest",
    "UpdateEngagementStatusRequest",
    "VerifyCompletionRequest",
    "CancelOfferRequest",
    "CreateOfferRequest",
    "OfferChainResponse",
    "OfferResponse",
    "RespondOfferBody",
    "RespondOfferRequest",
    "RespondOfferResponse",
    "CreateHoldRequest",
    "EscrowPaymentResponse",
    "PaymentDetailResponse",
    "RefundRequest",
    "ProviderObject",
    "WebhookAckResponse",
    "WebhookEnvelope",
]
