"""SQLAlchemy 2.0 ORM models for the talent escrow service.

Five tables:
    1. offers                   — Proposed engagements and counter-offers.
    2. engagements              — Accepted working relationships.
    3. escrow_payments          — Money held against an engagement.
    4. processed_webhook_events — Dedup ledger for provider callbacks.
    5. audit_events             — Append-only log of every state transition.

Design decisions:
    - UUIDs as primary keys (no sequential leakage).
    - Decimal for money (no floating point rounding errors).
    - CHECK constraints on status columns list the closed enum values.
    - Partial unique indexes carry the "one live row" invariants: one
      pending offer per (request, talent) and one pending/held payment per
      engagement.
    - Nothing is physically deleted; terminal states keep the audit trail.
    - Fee splits are written from a single FeeSplit; fee + net == gross is
      enforced in domain/fees.py rather than by a float-prone CHECK.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

MONEY = Numeric(14, 2)
JSON_DOCUMENT = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. offers
# ---------------------------------------------------------------------------
class Offer(Base):
    """A proposed rate/terms for an engagement, or a counter to one."""

    __tablename__ = "offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Parties ---
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    talent_profile_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    offered_by: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="company",
        comment="Which party proposed this row (company|talent)",
    )

    # --- Terms ---
    rate: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        comment="Gross engagement amount proposed",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    counter_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Free-text reason given when this row was created as a counter",
    )
    platform_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    provider_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
        default="pending",
        comment="Current lifecycle state (guarded by OfferStateMachine)",
    )

    # --- Counter chain ---
    counter_of: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("offers.id"),
        nullable=True,
        default=None,
        comment="The offer this row supersedes",
    )
    counter_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'countered', 'expired', 'cancelled')",
            name="ck_offer_valid_status",
        ),
        CheckConstraint("offered_by IN ('company', 'talent')", name="ck_offer_valid_party"),
        CheckConstraint("rate > 0", name="ck_offer_positive_rate"),
        CheckConstraint("counter_depth >= 0", name="ck_offer_counter_depth"),
        Index(
            "uq_offer_pending_pair",
            "request_id",
            "talent_profile_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_offer_status_expires", "status", "expires_at"),
        Index("idx_offer_request", "request_id"),
        Index("idx_offer_counter_of", "counter_of"),
    )

    def __repr__(self) -> str:
        return f"<Offer id={self.id} status={self.status} rate={self.rate} depth={self.counter_depth}>"


# ---------------------------------------------------------------------------
# 2. engagements
# ---------------------------------------------------------------------------
class Engagement(Base):
    """The working relationship created when an offer is accepted."""

    __tablename__ = "engagements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    offer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("offers.id"),
        nullable=False,
        unique=True,
        comment="The accepted offer that created this engagement",
    )
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    talent_profile_id: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(
        String(14),
        nullable=False,
        default="staged",
        comment="Current lifecycle state (guarded by EngagementStateMachine)",
    )
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Financials (always written together from one FeeSplit) ---
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    provider_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # --- Completion ---
    completion_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('staged', 'interviewing', 'accepted', 'active', "
            "'completed', 'terminated', 'disputed')",
            name="ck_engagement_valid_status",
        ),
        CheckConstraint("total_amount >= 0", name="ck_engagement_non_negative_total"),
        Index("idx_engagement_status", "status"),
        Index("idx_engagement_company", "company_id"),
        Index("idx_engagement_talent", "talent_profile_id"),
    )

    def __repr__(self) -> str:
        return f"<Engagement id={self.id} status={self.status} total={self.total_amount}>"


# ---------------------------------------------------------------------------
# 3. escrow_payments
# ---------------------------------------------------------------------------
class EscrowPayment(Base):
    """Money held against an engagement.

    Forward-only: pending -> held -> released | refunded; pending -> failed.
    Failed rows stay as history so a new hold can be placed with a
    different payment method.
    """

    __tablename__ = "escrow_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    engagement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("engagements.id"),
        nullable=False,
    )

    # --- Provider references ---
    idempotency_key: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        comment="Key sent with create_charge; derived from the engagement id",
    )
    payment_method_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_charge_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    provider_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="pending",
        comment="Current lifecycle state (guarded by EscrowPaymentStateMachine)",
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    held_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Release intent persisted before the provider transfer call",
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'held', 'released', 'refunded', 'failed')",
            name="ck_payment_valid_status",
        ),
        CheckConstraint("amount >= 0", name="ck_payment_non_negative_amount"),
        Index(
            "uq_payment_live_per_engagement",
            "engagement_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'held')"),
            sqlite_where=text("status IN ('pending', 'held')"),
        ),
        Index("idx_payment_charge_ref", "provider_charge_ref"),
        Index("idx_payment_transfer_ref", "provider_transfer_ref"),
    )

    def __repr__(self) -> str:
        return f"<EscrowPayment id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 4. processed_webhook_events (dedup ledger)
# ---------------------------------------------------------------------------
class ProcessedWebhookEvent(Base):
    """One row per provider event id that has been applied. Insert-once."""

    __tablename__ = "processed_webhook_events"

    external_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent id={self.external_event_id} type={self.event_type}>"


# ---------------------------------------------------------------------------
# 5. audit_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class AuditEvent(Base):
    """Immutable record of a state transition on an offer, engagement or payment.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(14), nullable=True)
    new_status: Mapped[str] = mapped_column(String(14), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSON_DOCUMENT,
        nullable=True,
        default=None,
        comment="Context: provider refs, reasons, fee splits",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent {self.entity_type}:{self.entity_id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
event.listen(Engagement, "before_update", _set_updated_at)
event.listen(EscrowPayment, "before_update", _set_updated_at)
