"""Database infrastructure — engine, ORM models, and repositories."""

from talent_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    close_db,
    create_tables,
    get_async_session,
    get_session_factory,
    init_db,
)
from talent_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Base,
    Engagement,
    EscrowPayment,
    Offer,
    ProcessedWebhookEvent,
)
from talent_escrow.infrastructure.database.repositories import (
    AuditRepository,
    EngagementRepository,
    EscrowPaymentRepository,
    OfferRepository,
    WebhookEventRepository,
)

__all__ = [
    "AuditEvent",
    "Base",
    "Engagement",
    "EscrowPayment",
    "Offer",
    "ProcessedWebhookEvent",
    "AuditRepository",
    "EngagementRepository",
    "EscrowPaymentRepository",
    "OfferRepository",
    "WebhookEventRepository",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
