"""Webhook Service — applies payment provider callbacks exactly once.

Delivery is at-least-once and unordered, so handle() does:
    1. Signature check. Failure is a security event: nothing is written.
    2. Dedup on the provider event id (SHA-256 of the body if absent).
    3. One transaction: insert the ledger row first, then the handler's
       conditional updates. Any exception rolls both back and propagates,
       so the route answers 5xx and the provider redelivers.

Handlers re-check the current status through conditional updates; an
event that no longer applies (late charge.succeeded on a released
payment, etc.) is logged and acknowledged without changing anything.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from typing import TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from talent_escrow.config import Settings, get_settings
from talent_escrow.domain.enums import PaymentStatus, WebhookEventType, WebhookOutcome
from talent_escrow.domain.exceptions import SignatureVerificationError, ValidationError
from talent_escrow.domain.timeutils import utc_now
from talent_escrow.infrastructure.database.repositories import (
    EscrowPaymentRepository,
    WebhookEventRepository,
)
from talent_escrow.logging_config import get_logger
from talent_escrow.schemas.webhooks import ProviderObject, WebhookEnvelope
from talent_escrow.services.escrow_service import EscrowService

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession
    from structlog.stdlib import BoundLogger

    from talent_escrow.domain.notifier_protocol import NotificationService
    from talent_escrow.domain.provider_protocol import PaymentProviderClient
    from talent_escrow.infrastructure.database.orm_models import EscrowPayment

logger = get_logger(__name__)

WEBHOOK_ACTOR = "WEBHOOK"


def derive_event_id(envelope: WebhookEnvelope, raw_payload: bytes) -> str:
    """Provider event id, or a content hash when the provider sends none."""
    if envelope.id:
        return envelope.id
    return "sha256:" + hashlib.sha256(raw_payload).hexdigest()


class WebhookService:
    """Verifies, deduplicates and dispatches provider events."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProviderClient,
        notifier: NotificationService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._provider = provider
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._ledger = WebhookEventRepository(session)
        self._payments = EscrowPaymentRepository(session)
        self._escrow = EscrowService(
            session, provider, notifier=notifier, settings=self._settings, clock=clock
        )
        self._handlers = {
            WebhookEventType.CHARGE_SUCCEEDED: self._on_charge_succeeded,
            WebhookEventType.CHARGE_FAILED: self._on_charge_failed,
            WebhookEventType.CHARGE_REFUNDED: self._on_charge_refunded,
            WebhookEventType.TRANSFER_CREATED: self._on_transfer_created,
            WebhookEventType.TRANSFER_FAILED: self._on_transfer_failed,
        }

    async def handle(self, raw_payload: bytes, signature: str | None) -> WebhookOutcome:
        """Process one delivery.

        Raises:
            SignatureVerificationError: Missing or invalid signature.
            ValidationError: Body is not a valid event envelope.
        """
        if not signature or not self._provider.verify_webhook_signature(
            raw_payload, signature, self._settings.payment_webhook_secret
        ):
            logger.warning(
                "security.webhook_signature_invalid",
                has_signature=bool(signature),
                payload_sha256=hashlib.sha256(raw_payload).hexdigest(),
                payload_bytes=len(raw_payload),
            )
            raise SignatureVerificationError("missing signature" if not signature else "signature mismatch")

        envelope = self._parse(raw_payload)
        event_id = derive_event_id(envelope, raw_payload)
        log = logger.bind(event_id=event_id, event_type=envelope.type)

        if await self._ledger.exists(event_id):
            log.info("webhook.duplicate")
            return WebhookOutcome.DUPLICATE
        if not await self._ledger.insert_once(event_id, envelope.type):
            log.info("webhook.duplicate", raced=True)
            return WebhookOutcome.DUPLICATE

        try:
            outcome = await self._dispatch(envelope, log)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            self._escrow.notifications.clear()
            log.exception("webhook.handler_failed")
            raise

        await self._escrow.notifications.flush(self._notifier)
        log.info("webhook.handled", outcome=outcome.value)
        return outcome

    # ------------------------------------------------------------------
    # Parsing / dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(raw_payload: bytes) -> WebhookEnvelope:
        try:
            return WebhookEnvelope.model_validate(json.loads(raw_payload))
        except (ValueError, PydanticValidationError) as err:
            raise ValidationError(f"Malformed webhook envelope: {err}", field="body") from err

    async def _dispatch(self, envelope: WebhookEnvelope, log: BoundLogger) -> WebhookOutcome:
        try:
            event_type = WebhookEventType(envelope.type)
        except ValueError:
            log.info("webhook.ignored_type")
            return WebhookOutcome.IGNORED

        try:
            obj = envelope.provider_object()
        except PydanticValidationError as err:
            raise ValidationError(f"Malformed {envelope.type} payload: {err}", field="data") from err
        return await self._handlers[event_type](obj, log)

    async def _find_payment(self, obj: ProviderObject, by: str) -> EscrowPayment | None:
        """Look up by provider ref, falling back to our payment id in metadata."""
        if by == "charge":
            payment = await self._payments.get_by_charge_ref(obj.id)
        else:
            payment = await self._payments.get_by_transfer_ref(obj.id)
        if payment is None and obj.metadata.get("payment_id"):
            try:
                payment_id = uuid.UUID(obj.metadata["payment_id"])
            except ValueError:
                return None
            payment = await self._payments.get_by_id(payment_id)
        if payment is not None:
            payment = await self._payments.get_by_id(payment.id, fresh=True)
        return payment

    def _stale(self, log: BoundLogger, payment: EscrowPayment, expected: str) -> WebhookOutcome:
        log.warning(
            "webhook.stale_event",
            payment_id=str(payment.id),
            current_status=payment.status,
            expected_status=expected,
        )
        return WebhookOutcome.IGNORED

    @staticmethod
    def _unknown(log: BoundLogger, obj: ProviderObject) -> WebhookOutcome:
        log.warning("webhook.unknown_payment", provider_ref=obj.id)
        return WebhookOutcome.IGNORED

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_charge_succeeded(self, obj: ProviderObject, log: BoundLogger) -> WebhookOutcome:
        payment = await self._find_payment(obj, by="charge")
        if payment is None:
            return self._unknown(log, obj)
        if not await self._escrow.apply_hold_confirmed(payment, obj.id, actor=WEBHOOK_ACTOR):
            return self._stale(log, payment, PaymentStatus.PENDING)
        log.info("webhook.hold_confirmed", payment_id=str(payment.id))
        return WebhookOutcome.PROCESSED

    async def _on_charge_failed(self, obj: ProviderObject, log: BoundLogger) -> WebhookOutcome:
        payment = await self._find_payment(obj, by="charge")
        if payment is None:
            return self._unknown(log, obj)
        reason = obj.failure_message or "charge failed"
        if not await self._escrow.apply_hold_failed(payment, reason, actor=WEBHOOK_ACTOR):
            return self._stale(log, payment, PaymentStatus.PENDING)
        log.info("webhook.hold_failed", payment_id=str(payment.id), reason=reason)
        return WebhookOutcome.PROCESSED

    async def _on_transfer_created(self, obj: ProviderObject, log: BoundLogger) -> WebhookOutcome:
        payment = await self._find_payment(obj, by="transfer")
        if payment is None:
            return self._unknown(log, obj)
        if not await self._escrow.apply_released(payment, obj.id, actor=WEBHOOK_ACTOR):
            return self._stale(log, payment, PaymentStatus.HELD)
        log.info("webhook.released", payment_id=str(payment.id))
        return WebhookOutcome.PROCESSED

    async def _on_transfer_failed(self, obj: ProviderObject, log: BoundLogger) -> WebhookOutcome:
        payment = await self._find_payment(obj, by="transfer")
        if payment is None:
            return self._unknown(log, obj)
        reason = obj.failure_message or "transfer failed"
        if payment.status == PaymentStatus.RELEASED:
            # Released rows are immutable; money needs a human.
            log.error("webhook.transfer_failed_after_release", payment_id=str(payment.id))
            self._escrow.queue_transfer_alert(payment, reason)
            return WebhookOutcome.IGNORED
        if not await self._escrow.revert_release(payment, reason, actor=WEBHOOK_ACTOR):
            return self._stale(log, payment, PaymentStatus.HELD)
        log.warning("webhook.release_reverted", payment_id=str(payment.id), reason=reason)
        return WebhookOutcome.PROCESSED

    async def _on_charge_refunded(self, obj: ProviderObject, log: BoundLogger) -> WebhookOutcome:
        payment = await self._find_payment(obj, by="charge")
        if payment is None:
            return self._unknown(log, obj)
        if not await self._escrow.apply_refunded(payment, actor=WEBHOOK_ACTOR):
            return self._stale(log, payment, PaymentStatus.HELD)
        log.info("webhook.refunded", payment_id=str(payment.id))
        return WebhookOutcome.PROCESSED
