"""
Notification sink collaborators.

Notifications are fire-and-forget: ``deliver`` logs any sink failure and
never raises, so a broken notifier can not block a workflow decision.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..claims.schema import utcnow

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    """A message for one recipient about a claim event."""
    id: str = Field(default_factory=lambda: f"NTF-{uuid.uuid4().hex[:10].upper()}")
    recipient_id: str
    kind: str = Field(description="claim_approved, claim_rejected, claim_escalated, ...")
    title: str
    message: str
    claim_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    read: bool = False


class NotificationSink(ABC):
    """External notification channel."""

    @abstractmethod
    async def notify(self, notification: Notification) -> None:
        """Send one notification."""


class LoggingNotificationSink(NotificationSink):
    """Sink that only writes notifications to the log."""

    async def notify(self, notification: Notification) -> None:
        logger.info(
            f"🔔 [{notification.kind}] to {notification.recipient_id}: {notification.title}"
        )


class InMemoryNotificationSink(NotificationSink):
    """
    Sink that keeps notifications for the notification center view.

    Usage:
        sink = InMemoryNotificationSink()
        await deliver(sink, notification)
        sink.unread("EMP-1")
    """

    def __init__(self):
        self.notifications: List[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def for_recipient(self, recipient_id: str) -> List[Notification]:
        return [n for n in self.notifications if n.recipient_id == recipient_id]

    def unread(self, recipient_id: str) -> List[Notification]:
        return [n for n in self.for_recipient(recipient_id) if not n.read]

    def mark_read(self, notification_id: str) -> bool:
        for index, notification in enumerate(self.notifications):
            if notification.id == notification_id:
                self.notifications[index] = notification.model_copy(update={"read": True})
                return True
        return False


async def deliver(sink: Optional[NotificationSink], notification: Notification) -> bool:
    """
    Send a notification, logging instead of raising on failure.

    Returns:
        True if the sink accepted the notification
    """
    if sink is None:
        return False
    try:
        await sink.notify(notification)
        return True
    except Exception as e:
        logger.error(f"Notification {notification.kind} for {notification.recipient_id} failed: {e}")
        return False
