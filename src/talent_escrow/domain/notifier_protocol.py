"""Notification Service Protocol.

Notification content and delivery (SMS, email, push) live outside this
service. The core only hands over an event name, recipients and metadata.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class NotificationService(Protocol):
    """Fire-and-forget notification sink."""

    async def notify(
        self,
        event_type: str,
        recipient_ids: list[str],
        metadata: dict | None = None,
    ) -> None:
        """Queue a notification. Failures must not affect the caller's state."""
        ...
