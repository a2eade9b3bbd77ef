"""Payment Provider Protocol.

Defines the interface the escrow coordinator and webhook processor use to
talk to an external payment processor. This is a Protocol (structural
subtyping) so concrete clients don't need to inherit from a base class.

The domain layer has ZERO imports from httpx or any provider SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal

# Provider statuses that mean "done, no webhook needed to confirm".
CONFIRMED_CHARGE_STATUSES = frozenset({"succeeded", "requires_capture"})
CONFIRMED_TRANSFER_STATUSES = frozenset({"paid", "succeeded"})


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of create_charge / capture.

    Attributes:
        charge_ref: Provider-side charge id.
        status: Provider status string ("succeeded", "requires_capture",
            "processing", ...).
        raw: Untouched provider response, kept for the audit trail.
    """

    charge_ref: str
    status: str
    raw: dict = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        """True if the provider confirmed the funds synchronously."""
        return self.status in CONFIRMED_CHARGE_STATUSES


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a payout transfer to the payee."""

    transfer_ref: str
    status: str
    raw: dict = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.status in CONFIRMED_TRANSFER_STATUSES


@dataclass(frozen=True)
class RefundResult:
    """Outcome of refunding a held charge back to the payer."""

    refund_ref: str
    status: str
    raw: dict = field(default_factory=dict)


@runtime_checkable
class PaymentProviderClient(Protocol):
    """Protocol every payment provider client must satisfy.

    Implementations must be stateless with respect to request handling and
    safe for concurrent use. Every mutating call takes an idempotency key so
    a retried request never moves money twice.

    Concrete implementations:
        - infrastructure/payment_provider.py HttpPaymentProviderClient
        - infrastructure/payment_provider.py SimulatedPaymentProviderClient
    """

    async def create_charge(
        self,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        metadata: dict | None = None,
    ) -> ChargeResult:
        """Authorize funds from the payer and hold them."""
        ...

    async def capture(self, charge_ref: str, idempotency_key: str) -> ChargeResult:
        """Capture a previously authorized charge."""
        ...

    async def transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> TransferResult:
        """Pay out captured funds to the payee's destination account."""
        ...

    async def refund(
        self,
        charge_ref: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> RefundResult:
        """Return held funds to the payer."""
        ...

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        """Return True if signature authenticates payload under secret."""
        ...
