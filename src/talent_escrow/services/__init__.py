"""Application services: offers, escrow, engagements, webhooks and the expiration sweep."""

from talent_escrow.services.engagement_service import EngagementService
from talent_escrow.services.escrow_service import EscrowService
from talent_escrow.services.expiration_sweeper import ExpirationSweeper, SweepResult
from talent_escrow.services.notification_service import LoggingNotificationService, NotificationBatch
from talent_escrow.services.offer_service import OfferService, RespondResult
from talent_escrow.services.webhook_service import WebhookService

__all__ = [
    "EngagementService",
    "EscrowService",
    "ExpirationSweeper",
    "LoggingNotificationService",
    "NotificationBatch",
    "OfferService",
    "RespondResult",
    "SweepResult",
    "WebhookService",
]
