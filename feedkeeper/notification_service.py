"""
Notification channel for the rule engine's notify action.

The rule engine only enqueues. Delivering what is queued (push, email,
the desktop client polling /notifications) belongs to whoever consumes
the channel.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """A notification produced by a matching rule."""
    user_id: int
    message: str
    created_at: datetime
    rule_id: int | None = None
    article_id: int | None = None


class NotificationChannel(Protocol):
    """Outbound queue for notifications."""

    def enqueue(self, notification: Notification) -> None:
        ...


class DatabaseNotificationChannel:
    """Queues notifications in the notifications table."""

    def __init__(self, db: "Database"):
        self.db = db

    def enqueue(self, notification: Notification) -> None:
        notification_id = self.db.enqueue_notification(
            user_id=notification.user_id,
            message=notification.message,
            created_at=notification.created_at,
            rule_id=notification.rule_id,
            article_id=notification.article_id,
        )
        logger.debug(
            f"Queued notification {notification_id} for article {notification.article_id} "
            f"(rule {notification.rule_id})"
        )
