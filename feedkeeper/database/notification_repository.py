"""
Notification repository - the outbound queue written by the notify action.
"""

from datetime import datetime

from .connection import DatabaseConnection
from .converters import row_to_notification, to_db_time
from .models import DBNotification


class NotificationRepository:
    """Repository for queued notifications."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def enqueue(
        self,
        user_id: int,
        message: str,
        created_at: datetime,
        rule_id: int | None = None,
        article_id: int | None = None,
    ) -> int:
        """Queue a notification. Returns notification ID."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                """INSERT INTO notifications (user_id, rule_id, article_id, message, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (user_id, rule_id, article_id, message, to_db_time(created_at))
            )
            return cursor.lastrowid

    def get_notifications(
        self,
        user_id: int = 1,
        include_dismissed: bool = False,
        limit: int = 50,
    ) -> list[DBNotification]:
        """Get queued notifications, newest first."""
        query = """
            SELECT n.*, a.title AS article_title
            FROM notifications n
            LEFT JOIN articles a ON a.id = n.article_id
            WHERE n.user_id = ?
        """
        if not include_dismissed:
            query += " AND n.dismissed = 0"
        query += " ORDER BY n.created_at DESC, n.id DESC LIMIT ?"
        with self._db.conn() as conn:
            rows = conn.execute(query, (user_id, limit)).fetchall()
            return [row_to_notification(row) for row in rows]

    def dismiss(self, notification_id: int, user_id: int = 1) -> bool:
        """Dismiss one notification. Returns False if it does not exist."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET dismissed = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id)
            )
            return cursor.rowcount > 0

    def dismiss_all(self, user_id: int = 1) -> int:
        """Dismiss every pending notification."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET dismissed = 1 WHERE user_id = ? AND dismissed = 0",
                (user_id,)
            )
            return cursor.rowcount
