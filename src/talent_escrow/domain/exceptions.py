"""Domain exceptions for the talent escrow service.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""

from __future__ import annotations

from typing import Any


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Input Errors ---


class ValidationError(MarketplaceError):
    """Malformed input: negative amount, missing field, unknown action.

    Always surfaced to the user, never retried.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.field = field


class CounterLimitExceededError(ValidationError):
    """Raised when a counter-offer would exceed the configured chain depth."""

    def __init__(self, offer_id: str, max_depth: int) -> None:
        super().__init__(
            message=f"Counter-offer limit reached for offer {offer_id} (max depth {max_depth})",
        )
        self.code = "COUNTER_LIMIT_EXCEEDED"
        self.max_depth = max_depth


# --- State Errors ---


class ConflictError(MarketplaceError):
    """A status precondition failed at commit time.

    Carries the current authoritative state so the client can resync.
    """

    def __init__(
        self,
        message: str,
        current_state: dict[str, Any] | None = None,
        code: str = "CONFLICT",
    ) -> None:
        super().__init__(message=message, code=code)
        self.current_state = current_state or {}


class ExpiredError(ConflictError):
    """Raised when acting on an offer past its deadline."""

    def __init__(self, offer_id: str, current_state: dict[str, Any] | None = None) -> None:
        super().__init__(
            message=f"Offer has expired: {offer_id}",
            current_state=current_state,
            code="OFFER_EXPIRED",
        )
        self.offer_id = offer_id


class InvalidStateTransitionError(ConflictError):
    """Raised when the state machine refuses a transition.

    Example: released -> refunded (released payments are immutable).
    """

    def __init__(self, entity: str, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid {entity} transition: {current_state} -> {attempted}",
            current_state={"status": current_state},
            code="INVALID_STATE_TRANSITION",
        )
        self.entity = entity
        self.attempted = attempted


# --- Lookup Errors ---


class NotFoundError(MarketplaceError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            message=f"{entity.capitalize()} not found: {entity_id}",
            code=f"{entity.upper()}_NOT_FOUND",
        )
        self.entity = entity
        self.entity_id = entity_id


class OfferNotFoundError(NotFoundError):
    def __init__(self, offer_id: str) -> None:
        super().__init__("offer", offer_id)


class EngagementNotFoundError(NotFoundError):
    def __init__(self, engagement_id: str) -> None:
        super().__init__("engagement", engagement_id)


class PaymentNotFoundError(NotFoundError):
    """Raised when an engagement has no escrow payment to act on."""

    def __init__(self, engagement_id: str) -> None:
        super().__init__("payment", engagement_id)
        self.message = f"No escrow payment for engagement: {engagement_id}"


# --- Payment Provider Errors ---


class PaymentProviderError(MarketplaceError):
    """Raised when a payment provider call fails.

    retryable errors (timeouts, 5xx, rate limits) are retried with backoff;
    terminal ones (card declined, invalid account) are surfaced immediately.
    """

    def __init__(
        self,
        message: str,
        retryable: bool,
        status_code: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        super().__init__(message=message, code="PAYMENT_PROVIDER_ERROR")
        self.retryable = retryable
        self.status_code = status_code
        self.provider_code = provider_code


class RetryableProviderError(PaymentProviderError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message=message, retryable=True, status_code=status_code)


class TerminalProviderError(PaymentProviderError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        super().__init__(
            message=message,
            retryable=False,
            status_code=status_code,
            provider_code=provider_code,
        )


# --- Security Errors ---


class SignatureVerificationError(MarketplaceError):
    """Raised when a webhook signature does not verify. Never retried."""

    def __init__(self, reason: str = "signature mismatch") -> None:
        super().__init__(
            message=f"Invalid webhook signature: {reason}",
            code="INVALID_SIGNATURE",
        )
        self.reason = reason


class RateLimitExceededError(MarketplaceError):
    """Raised when a client exceeds the shared request budget."""

    def __init__(self, group: str, retry_after: int) -> None:
        super().__init__(
            message=f"Rate limit exceeded for {group}",
            code="RATE_LIMITED",
        )
        self.retry_after = retry_after
