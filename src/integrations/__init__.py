"""
External collaborators: notification sinks and receipt storage.
"""

from .attachments import AttachmentStorage, LocalAttachmentStorage
from .notifications import (
    InMemoryNotificationSink,
    LoggingNotificationSink,
    Notification,
    NotificationSink,
    deliver,
)

__all__ = [
    "AttachmentStorage",
    "LocalAttachmentStorage",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "Notification",
    "NotificationSink",
    "deliver",
]
