"""Escrow Service — holds, releases and refunds engagement funds.

This is the application layer that coordinates between:
    - Domain state machines (transition guards)
    - Repositories (conditional updates, the source of truth under races)
    - The payment provider (through call_provider: timeout + retries)
    - The audit log and post-commit notifications

Every operation persists its intent before talking to the provider:
    create_hold  -> pending payment row committed, then create_charge
    release      -> release_requested_at committed, then capture + transfer
    refund       -> refund_reason committed, then refund
Provider calls carry idempotency keys derived from the engagement/payment
ids, so repeating an interrupted call never moves money twice.

The apply_* methods perform one confirmed transition without committing;
the webhook processor uses them inside its dedup transaction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from talent_escrow.config import Settings, get_settings
from talent_escrow.domain.enums import (
    HOLDABLE_ENGAGEMENT_STATUSES,
    EngagementStatus,
    EntityType,
    EventType,
    NotificationType,
    PaymentStatus,
    RefundReason,
)
from talent_escrow.domain.exceptions import (
    ConflictError,
    EngagementNotFoundError,
    PaymentNotFoundError,
    PaymentProviderError,
    ValidationError,
)
from talent_escrow.domain.fees import to_money
from talent_escrow.domain.state_machine import (
    EngagementStateMachine,
    EscrowPaymentStateMachine,
    can_transition,
    validate_transition,
)
from talent_escrow.domain.timeutils import utc_now
from talent_escrow.infrastructure.database.orm_models import Engagement, EscrowPayment
from talent_escrow.infrastructure.database.repositories import (
    AuditRepository,
    EngagementRepository,
    EscrowPaymentRepository,
)
from talent_escrow.infrastructure.payment_provider import call_provider
from talent_escrow.logging_config import get_logger
from talent_escrow.services.notification_service import NotificationBatch
from talent_escrow.services.snapshots import engagement_state, payment_state

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable
    from datetime import datetime
    from decimal import Decimal
    from typing import Any

    from sqlalchemy.ext.asyncio import AsyncSession

    from talent_escrow.domain.notifier_protocol import NotificationService
    from talent_escrow.domain.provider_protocol import PaymentProviderClient

logger = get_logger(__name__)

_NON_TERMINAL_ENGAGEMENT = tuple(s for s in EngagementStatus if not s.is_terminal)


def hold_idempotency_key(engagement_id: uuid.UUID, attempt: int) -> str:
    """Provider key for the n-th hold attempt on an engagement."""
    return f"hold:{engagement_id}:{attempt}"


def parties(engagement: Engagement | None) -> list[str]:
    if engagement is None:
        return []
    return [engagement.company_id, engagement.talent_profile_id]


class EscrowService:
    """Coordinates escrow payments against the external payment provider."""

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
        self._clock = clock
        self._engagements = EngagementRepository(session)
        self._payments = EscrowPaymentRepository(session)
        self._audit = AuditRepository(session)
        self.notifications = NotificationBatch()

    # ------------------------------------------------------------------
    # Hold
    # ------------------------------------------------------------------

    async def create_hold(
        self,
        engagement_id: uuid.UUID,
        payment_method_ref: str,
        amount: Decimal | int | str | None = None,
    ) -> EscrowPayment:
        """Authorize the engagement total from the payer and hold it.

        Returns the payment as `held` when the provider confirms
        synchronously, otherwise `pending` until charge.succeeded arrives.

        Raises:
            ConflictError: Engagement not holdable, or a hold already exists.
            PaymentProviderError: Terminal (payment marked failed) or
                retryable after the retry budget (payment left pending).
        """
        if not payment_method_ref or not payment_method_ref.strip():
            raise ValidationError("payment_method_ref is required", field="payment_method_ref")

        engagement = await self._get_engagement_or_raise(engagement_id)
        if EngagementStatus(engagement.status) not in HOLDABLE_ENGAGEMENT_STATUSES:
            raise ConflictError(
                f"Engagement is {engagement.status}; a hold needs a staged or accepted engagement",
                current_state=engagement_state(engagement),
            )
        if amount is not None and to_money(amount) != engagement.total_amount:
            raise ValidationError(
                f"amount must equal the engagement total ({engagement.total_amount})",
                field="amount",
            )

        payment = await self._open_hold(engagement, payment_method_ref)
        log = logger.bind(engagement_id=str(engagement.id), payment_id=str(payment.id))

        try:
            charge = await self._call(
                "create_charge",
                self._provider.create_charge,
                payment.idempotency_key,
                payment.amount,
                payment.currency,
                payment.payment_method_ref,
                metadata=self._metadata(payment),
            )
        except PaymentProviderError as exc:
            if exc.retryable:
                # Outcome unknown: keep the pending intent so a retry reuses the key.
                log.warning("escrow.hold_outcome_unknown", error=exc.message)
                raise
            if await self.apply_hold_failed(payment, exc.message):
                await self._session.commit()
            else:
                await self._session.rollback()
            await self.notifications.flush(self._notifier)
            log.warning("escrow.hold_failed", error=exc.message, provider_code=exc.provider_code)
            raise

        if not charge.confirmed:
            await self._payments.update_where_status(
                payment.id, PaymentStatus.PENDING, provider_charge_ref=charge.charge_ref
            )
            await self._session.commit()
            log.info("escrow.hold_awaiting_confirmation", charge_ref=charge.charge_ref)
            return await self._reload(payment.id)

        payment_id = payment.id
        if await self.apply_hold_confirmed(payment, charge.charge_ref):
            await self._session.commit()
            log.info("escrow.hold_confirmed", charge_ref=charge.charge_ref)
        else:
            await self._session.rollback()
            log.info("escrow.hold_already_confirmed", charge_ref=charge.charge_ref)
        await self.notifications.flush(self._notifier)
        return await self._reload(payment_id)

    async def _open_hold(self, engagement: Engagement, payment_method_ref: str) -> EscrowPayment:
        """Resume an unanswered pending hold or commit a new pending row."""
        current = await self._payments.get_current(engagement.id, fresh=True)
        if current is not None:
            status = PaymentStatus(current.status)
            if status is PaymentStatus.PENDING and current.provider_charge_ref is None:
                if current.payment_method_ref != payment_method_ref:
                    raise ConflictError(
                        "A hold with another payment method is still awaiting the provider",
                        current_state=payment_state(current),
                    )
                logger.info("escrow.hold_resumed", payment_id=str(current.id))
                return current
            if status is not PaymentStatus.FAILED:
                raise ConflictError(
                    f"Engagement already has a {current.status} payment",
                    current_state=payment_state(current),
                )

        attempt = await self._payments.count_failed(engagement.id) + 1
        payment = EscrowPayment(
            engagement_id=engagement.id,
            idempotency_key=hold_idempotency_key(engagement.id, attempt),
            payment_method_ref=payment_method_ref,
            amount=engagement.total_amount,
            platform_fee=engagement.platform_fee,
            provider_amount=engagement.provider_amount,
            currency=engagement.currency,
            status=PaymentStatus.PENDING.value,
        )
        engagement_id = engagement.id
        try:
            await self._payments.create(payment)
        except IntegrityError as err:
            await self._session.rollback()
            current = await self._payments.get_current(engagement_id, fresh=True)
            raise ConflictError(
                "A hold for this engagement is already in progress",
                current_state=payment_state(current) if current else None,
            ) from err

        await self._audit.record(
            entity_type=EntityType.ESCROW_PAYMENT,
            entity_id=payment.id,
            event_type=EventType.HOLD_REQUESTED,
            old_status=None,
            new_status=PaymentStatus.PENDING,
            metadata={
                "idempotency_key": payment.idempotency_key,
                "amount": str(payment.amount),
                "attempt": attempt,
            },
        )
        await self._session.commit()
        logger.info(
            "escrow.hold_requested",
            engagement_id=str(engagement.id),
            payment_id=str(payment.id),
            amount=str(payment.amount),
            attempt=attempt,
        )
        return payment

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, engagement_id: uuid.UUID) -> EscrowPayment:
        """Capture the held charge and pay the net amount out to the talent.

        Every precondition is checked before any provider call. Repeating a
        release that already completed returns the released payment. A
        terminal provider error clears the release intent so the funds can
        still be refunded.
        """
        engagement = await self._get_engagement_or_raise(engagement_id)
        payment = await self._get_payment_or_raise(engagement_id)
        payment_id = payment.id
        log = logger.bind(engagement_id=str(engagement_id), payment_id=str(payment_id))

        if payment.status == PaymentStatus.RELEASED:
            log.info("escrow.release_already_done")
            return payment
        if engagement.status == EngagementStatus.DISPUTED:
            raise ConflictError(
                "Engagement is disputed; funds are frozen until refunded",
                current_state=engagement_state(engagement),
            )
        if not engagement.completion_verified:
            raise ConflictError(
                "Engagement completion has not been verified",
                current_state=engagement_state(engagement),
            )
        validate_transition(EscrowPaymentStateMachine, payment.status, "release")
        if payment.refund_reason is not None:
            raise ConflictError(
                "A refund is already in progress for this payment",
                current_state=payment_state(payment),
            )
        if payment.provider_charge_ref is None:
            raise ConflictError("Held payment has no provider charge", current_state=payment_state(payment))

        first_request = payment.release_requested_at is None
        if not await self._payments.claim_release(payment.id, self._clock()):
            await self._session.rollback()
            return await self._resolve_lost_release(payment_id)
        if first_request:
            await self._audit.record(
                entity_type=EntityType.ESCROW_PAYMENT,
                entity_id=payment.id,
                event_type=EventType.RELEASE_REQUESTED,
                old_status=PaymentStatus.HELD,
                new_status=PaymentStatus.HELD,
                metadata={"provider_amount": str(payment.provider_amount)},
            )
        await self._session.commit()
        log.info("escrow.release_requested", resumed=not first_request)

        try:
            await self._call(
                "capture",
                self._provider.capture,
                payment.provider_charge_ref,
                f"capture:{payment.id}",
            )
            transfer = await self._call(
                "transfer",
                self._provider.transfer,
                payment.provider_amount,
                payment.currency,
                engagement.talent_profile_id,
                f"transfer:{payment.id}",
                metadata=self._metadata(payment),
            )
        except PaymentProviderError as exc:
            if not exc.retryable and await self.revert_release(payment, exc.message):
                await self._session.commit()
                await self.notifications.flush(self._notifier)
            log.warning("escrow.release_failed", error=exc.message, retryable=exc.retryable)
            raise

        if not transfer.confirmed:
            await self._payments.update_where_status(
                payment.id, PaymentStatus.HELD, provider_transfer_ref=transfer.transfer_ref
            )
            await self._session.commit()
            log.info("escrow.release_awaiting_confirmation", transfer_ref=transfer.transfer_ref)
            return await self._reload(payment.id)

        payment = await self._reload(payment.id)
        if not await self.apply_released(payment, transfer.transfer_ref):
            await self._session.rollback()
            return await self._resolve_lost_release(payment_id)
        await self._session.commit()
        await self.notifications.flush(self._notifier)
        log.info("escrow.released", transfer_ref=transfer.transfer_ref, amount=str(payment.provider_amount))
        return await self._reload(payment.id)

    async def _resolve_lost_release(self, payment_id: uuid.UUID) -> EscrowPayment:
        current = await self._reload(payment_id)
        if current.status == PaymentStatus.RELEASED:
            return current
        raise ConflictError(
            f"Payment can no longer be released (status={current.status})",
            current_state=payment_state(current),
        )

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(self, engagement_id: uuid.UUID, reason: RefundReason | str) -> EscrowPayment:
        """Return held funds to the payer.

        reason=dispute leaves the engagement disputed; every other reason
        terminates it. The engagement transition is validated before the
        provider is called.
        """
        try:
            reason_code = RefundReason(reason)
        except ValueError as err:
            raise ValidationError(f"Unknown refund reason: {reason}", field="reason") from err

        engagement = await self._get_engagement_or_raise(engagement_id)
        payment = await self._get_payment_or_raise(engagement_id)
        payment_id = payment.id
        log = logger.bind(engagement_id=str(engagement_id), payment_id=str(payment_id))

        if payment.status == PaymentStatus.REFUNDED:
            log.info("escrow.refund_already_done")
            return payment
        validate_transition(EscrowPaymentStateMachine, payment.status, "refund")
        if reason_code is RefundReason.DISPUTE and engagement.status != EngagementStatus.DISPUTED:
            validate_transition(EngagementStateMachine, engagement.status, "dispute")
        if payment.release_requested_at is not None:
            raise ConflictError(
                "A release is already in progress for this payment",
                current_state=payment_state(payment),
            )

        if not await self._payments.claim_refund(payment.id, reason_code.value):
            await self._session.rollback()
            current = await self._reload(payment_id)
            if current.status == PaymentStatus.REFUNDED:
                return current
            raise ConflictError(
                "Payment can no longer be refunded with this reason",
                current_state=payment_state(current),
            )
        await self._session.commit()
        log.info("escrow.refund_requested", reason=reason_code.value)

        try:
            await self._call(
                "refund",
                self._provider.refund,
                payment.provider_charge_ref,
                payment.amount,
                f"refund:{payment.id}",
            )
        except PaymentProviderError as exc:
            if not exc.retryable:
                await self._payments.update_where_status(
                    payment.id, PaymentStatus.HELD, refund_reason=None
                )
                await self._session.commit()
            log.warning("escrow.refund_failed", error=exc.message, retryable=exc.retryable)
            raise

        payment = await self._reload(payment.id)
        if await self.apply_refunded(payment):
            await self._session.commit()
            log.info("escrow.refunded", reason=reason_code.value, amount=str(payment.amount))
        else:
            await self._session.rollback()
            log.info("escrow.refund_already_applied")
        await self.notifications.flush(self._notifier)
        return await self._reload(payment_id)

    # ------------------------------------------------------------------
    # Confirmed transitions (no commit)
    # ------------------------------------------------------------------

    async def apply_hold_confirmed(
        self, payment: EscrowPayment, charge_ref: str, actor: str = "SYSTEM"
    ) -> bool:
        """pending -> held, and the engagement -> active. False if already moved."""
        now = self._clock()
        won = await self._payments.transition(
            payment.id,
            PaymentStatus.PENDING,
            PaymentStatus.HELD,
            provider_charge_ref=charge_ref,
            held_at=now,
        )
        if not won:
            return False
        await self._audit.record(
            entity_type=EntityType.ESCROW_PAYMENT,
            entity_id=payment.id,
            event_type=EventType.HOLD_CONFIRMED,
            old_status=PaymentStatus.PENDING,
            new_status=PaymentStatus.HELD,
            actor=actor,
            metadata={"charge_ref": charge_ref},
        )

        engagement = await self._engagements.get_by_id(payment.engagement_id, fresh=True)
        if engagement is not None and can_transition(
            EngagementStateMachine, engagement.status, "funds_held"
        ):
            old_status = engagement.status
            extra = {"start_date": now} if engagement.start_date is None else {}
            if await self._engagements.transition(
                engagement.id, HOLDABLE_ENGAGEMENT_STATUSES, EngagementStatus.ACTIVE, **extra
            ):
                await self._record_engagement_change(
                    engagement.id, old_status, EngagementStatus.ACTIVE, actor, {"payment_id": str(payment.id)}
                )
        else:
            logger.warning(
                "escrow.engagement_not_activated",
                payment_id=str(payment.id),
                engagement_status=engagement.status if engagement else None,
            )

        self.notifications.add(
            NotificationType.PAYMENT_HELD,
            parties(engagement),
            {"engagement_id": str(payment.engagement_id), "amount": str(payment.amount)},
        )
        return True

    async def apply_hold_failed(
        self, payment: EscrowPayment, reason: str, actor: str = "SYSTEM"
    ) -> bool:
        """pending -> failed. The engagement stays holdable for another method."""
        won = await self._payments.transition(
            payment.id, PaymentStatus.PENDING, PaymentStatus.FAILED, failure_reason=reason
        )
        if not won:
            return False
        await self._audit.record(
            entity_type=EntityType.ESCROW_PAYMENT,
            entity_id=payment.id,
            event_type=EventType.HOLD_FAILED,
            old_status=PaymentStatus.PENDING,
            new_status=PaymentStatus.FAILED,
            actor=actor,
            metadata={"reason": reason},
        )
        engagement = await self._engagements.get_by_id(payment.engagement_id)
        self.notifications.add(
            NotificationType.PAYMENT_FAILED,
            [engagement.company_id] if engagement else [],
            {"engagement_id": str(payment.engagement_id), "reason": reason},
        )
        return True

    async def apply_released(
        self, payment: EscrowPayment, transfer_ref: str, actor: str = "SYSTEM"
    ) -> bool:
        """held -> released."""
        won = await self._payments.transition(
            payment.id,
            PaymentStatus.HELD,
            PaymentStatus.RELEASED,
            provider_transfer_ref=transfer_ref,
            released_at=self._clock(),
        )
        if not won:
            return False
        await self._audit.record(
            entity_type=EntityType.ESCROW_PAYMENT,
            entity_id=payment.id,
            event_type=EventType.PAYMENT_RELEASED,
            old_status=PaymentStatus.HELD,
            new_status=PaymentStatus.RELEASED,
            actor=actor,
            metadata={
                "transfer_ref": transfer_ref,
                "provider_amount": str(payment.provider_amount),
                "platform_fee": str(payment.platform_fee),
            },
        )
        engagement = await self._engagements.get_by_id(payment.engagement_id)
        self.notifications.add(
            NotificationType.PAYMENT_RELEASED,
            parties(engagement),
            {"engagement_id": str(payment.engagement_id), "amount": str(payment.provider_amount)},
        )
        return True

    async def apply_refunded(
        self,
        payment: EscrowPayment,
        actor: str = "SYSTEM",
        default_reason: RefundReason = RefundReason.OTHER,
    ) -> bool:
        """held -> refunded, then settle the engagement per the refund reason."""
        reason = RefundReason(payment.refund_reason or default_reason)
        won = await self._payments.transition(
            payment.id,
            PaymentStatus.HELD,
            PaymentStatus.REFUNDED,
            refunded_at=self._clock(),
            refund_reason=reason.value,
        )
        if not won:
            return False
        await self._audit.record(
            entity_type=EntityType.ESCROW_PAYMENT,
            entity_id=payment.id,
            event_type=EventType.PAYMENT_REFUNDED,
            old_status=PaymentStatus.HELD,
            new_status=PaymentStatus.REFUNDED,
            actor=actor,
            metadata={"reason": reason.value, "amount": str(payment.amount)},
        )

        engagement = await self._engagements.get_by_id(payment.engagement_id, fresh=True)
        if engagement is not None:
            await self._settle_engagement_after_refund(engagement, reason, actor)
        self.notifications.add(
            NotificationType.PAYMENT_REFUNDED,
            parties(engagement),
            {"engagement_id": str(payment.engagement_id), "reason": reason.value},
        )
        return True

    async def _settle_engagement_after_refund(
        self, engagement: Engagement, reason: RefundReason, actor: str
    ) -> None:
        old_status = EngagementStatus(engagement.status)
        if reason is RefundReason.DISPUTE and can_transition(
            EngagementStateMachine, old_status, "dispute"
        ):
            target, expected = EngagementStatus.DISPUTED, (EngagementStatus.ACCEPTED, EngagementStatus.ACTIVE)
        elif not old_status.is_terminal:
            target, expected = EngagementStatus.TERMINATED, _NON_TERMINAL_ENGAGEMENT
        else:
            logger.info(
                "escrow.engagement_left_as_is",
                engagement_id=str(engagement.id),
                status=old_status.value,
                reason=reason.value,
            )
            return
        if await self._engagements.transition(engagement.id, expected, target):
            await self._record_engagement_change(
                engagement.id, old_status, target, actor, {"refund_reason": reason.value}
            )

    async def revert_release(self, payment: EscrowPayment, reason: str, actor: str = "SYSTEM") -> bool:
        """Clear a failed release intent so the payment is plainly held again."""
        reverted = await self._payments.update_where_status(
            payment.id,
            PaymentStatus.HELD,
            release_requested_at=None,
            provider_transfer_ref=None,
        )
        if not reverted:
            return False
        await self._audit.record(
            entity_type=EntityType.ESCROW_PAYMENT,
            entity_id=payment.id,
            event_type=EventType.RELEASE_REVERTED,
            old_status=PaymentStatus.HELD,
            new_status=PaymentStatus.HELD,
            actor=actor,
            metadata={"reason": reason, "transfer_ref": payment.provider_transfer_ref},
        )
        self.queue_transfer_alert(payment, reason)
        return True

    def queue_transfer_alert(self, payment: EscrowPayment, reason: str) -> None:
        self.notifications.add(
            NotificationType.TRANSFER_FAILED_ALERT,
            list(self._settings.operator_alert_recipients),
            {
                "engagement_id": str(payment.engagement_id),
                "payment_id": str(payment.id),
                "status": payment.status,
                "reason": reason,
            },
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_payment(self, engagement_id: uuid.UUID) -> EscrowPayment:
        """The engagement's current payment (live, settled, or last failure)."""
        await self._get_engagement_or_raise(engagement_id)
        return await self._get_payment_or_raise(engagement_id)

    async def get_payment_history(self, engagement_id: uuid.UUID) -> list[EscrowPayment]:
        await self._get_engagement_or_raise(engagement_id)
        return await self._payments.list_for_engagement(engagement_id)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        return await call_provider(operation, fn, *args, settings=self._settings, **kwargs)

    @staticmethod
    def _metadata(payment: EscrowPayment) -> dict:
        return {"payment_id": str(payment.id), "engagement_id": str(payment.engagement_id)}

    async def _record_engagement_change(
        self,
        engagement_id: uuid.UUID,
        old_status: str,
        new_status: EngagementStatus,
        actor: str,
        metadata: dict | None = None,
    ) -> None:
        await self._audit.record(
            entity_type=EntityType.ENGAGEMENT,
            entity_id=engagement_id,
            event_type=EventType.ENGAGEMENT_STATUS_CHANGED,
            old_status=str(old_status),
            new_status=new_status,
            actor=actor,
            metadata=metadata,
        )

    async def _get_engagement_or_raise(self, engagement_id: uuid.UUID) -> Engagement:
        engagement = await self._engagements.get_by_id(engagement_id, fresh=True)
        if engagement is None:
            raise EngagementNotFoundError(str(engagement_id))
        return engagement

    async def _get_payment_or_raise(self, engagement_id: uuid.UUID) -> EscrowPayment:
        payment = await self._payments.get_current(engagement_id, fresh=True)
        if payment is None:
            raise PaymentNotFoundError(str(engagement_id))
        return payment

    async def _reload(self, payment_id: uuid.UUID) -> EscrowPayment:
        payment = await self._payments.get_by_id(payment_id, fresh=True)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment
