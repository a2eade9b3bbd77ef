"""Notification dispatch helpers.

Financial transitions never wait on, or fail because of, notifications:
services queue them in a NotificationBatch while the transaction is open
and flush the batch only after commit. Each delivery goes through
notify_safely(), which logs and swallows sink failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from talent_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from talent_escrow.domain.notifier_protocol import NotificationService

logger = get_logger(__name__)


class LoggingNotificationService:
    """Default sink: writes notifications to the structured log.

    Delivery (SMS, email, push) is owned by a separate system that can tail
    these events or be plugged in behind the same protocol.
    """

    async def notify(
        self,
        event_type: str,
        recipient_ids: list[str],
        metadata: dict | None = None,
    ) -> None:
        logger.info(
            "notification.dispatched",
            event_type=event_type,
            recipients=recipient_ids,
            metadata=metadata or {},
        )


async def notify_safely(
    notifier: NotificationService | None,
    event_type: str,
    recipient_ids: list[str],
    metadata: dict | None = None,
) -> bool:
    """Deliver one notification. Returns False instead of raising on failure."""
    if notifier is None:
        return False
    try:
        await notifier.notify(str(event_type), list(recipient_ids), metadata or {})
    except Exception:
        logger.exception("notification.failed", event_type=str(event_type), recipients=recipient_ids)
        return False
    return True


@dataclass
class _QueuedNotification:
    event_type: str
    recipient_ids: list[str]
    metadata: dict = field(default_factory=dict)


class NotificationBatch:
    """Notifications collected during a transaction, sent after commit."""

    def __init__(self) -> None:
        self._queued: list[_QueuedNotification] = []

    def add(self, event_type: str, recipient_ids: list[str], metadata: dict | None = None) -> None:
        self._queued.append(_QueuedNotification(str(event_type), list(recipient_ids), metadata or {}))

    def clear(self) -> None:
        """Drop queued notifications (the transaction they belonged to rolled back)."""
        self._queued.clear()

    def __len__(self) -> int:
        return len(self._queued)

    async def flush(self, notifier: NotificationService | None) -> int:
        """Send everything queued; returns the number delivered."""
        queued, self._queued = self._queued, []
        delivered = 0
        for item in queued:
            if await notify_safely(notifier, item.event_type, item.recipient_ids, item.metadata):
                delivered += 1
        return delivered
