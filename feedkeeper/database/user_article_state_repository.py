"""
Repository for per-user article side state (read, bookmark, folder, tags).

Articles themselves are immutable once inserted; everything a user or an
automation rule changes about an article lives here.
"""

from datetime import datetime

from .connection import DatabaseConnection
from .converters import row_to_article_state, to_db_time
from .models import DBArticleState


class UserArticleStateRepository:
    """Repository for per-user article state and tags."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def get_state(self, user_id: int, article_id: int) -> DBArticleState | None:
        """Get state for a specific user+article pair."""
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT * FROM user_article_state WHERE user_id = ? AND article_id = ?",
                (user_id, article_id)
            ).fetchone()
            return row_to_article_state(row) if row else None

    def _ensure_state(self, conn, user_id: int, article_id: int):
        """Create the state record with defaults if it does not exist yet."""
        conn.execute(
            """
            INSERT OR IGNORE INTO user_article_state (user_id, article_id, is_read, is_bookmarked)
            VALUES (?, ?, FALSE, FALSE)
            """,
            (user_id, article_id)
        )

    def mark_read(self, user_id: int, article_id: int, when: datetime, is_read: bool = True):
        """Mark article as read/unread for a user."""
        with self._db.conn() as conn:
            self._ensure_state(conn, user_id, article_id)
            conn.execute(
                """
                UPDATE user_article_state SET is_read = ?, read_at = ?
                WHERE user_id = ? AND article_id = ?
                """,
                (is_read, to_db_time(when) if is_read else None, user_id, article_id)
            )

    def set_bookmarked(self, user_id: int, article_id: int, when: datetime, bookmarked: bool = True):
        """Bookmark or unbookmark an article for a user."""
        with self._db.conn() as conn:
            self._ensure_state(conn, user_id, article_id)
            conn.execute(
                """
                UPDATE user_article_state SET is_bookmarked = ?, bookmarked_at = ?
                WHERE user_id = ? AND article_id = ?
                """,
                (bookmarked, to_db_time(when) if bookmarked else None, user_id, article_id)
            )

    def move_to_folder(self, user_id: int, article_id: int, folder_id: int | None):
        with self._db.conn() as conn:
            self._ensure_state(conn, user_id, article_id)
            conn.execute(
                "UPDATE user_article_state SET folder_id = ? WHERE user_id = ? AND article_id = ?",
                (folder_id, user_id, article_id)
            )

    def soft_delete(self, user_id: int, article_id: int, when: datetime):
        """Hide an article from the user without removing the row."""
        with self._db.conn() as conn:
            self._ensure_state(conn, user_id, article_id)
            conn.execute(
                """
                UPDATE user_article_state SET deleted_at = COALESCE(deleted_at, ?)
                WHERE user_id = ? AND article_id = ?
                """,
                (to_db_time(when), user_id, article_id)
            )

    # --- Tags ---

    def add_tag(self, user_id: int, article_id: int, tag: str, source: str = "user") -> bool:
        """Attach a tag. Returns False when the tag was already present."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO article_tags (user_id, article_id, tag, source)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, article_id, tag, source)
            )
            return cursor.rowcount > 0

    def get_tags(self, user_id: int, article_id: int) -> list[str]:
        with self._db.conn() as conn:
            rows = conn.execute(
                "SELECT tag FROM article_tags WHERE user_id = ? AND article_id = ? ORDER BY id",
                (user_id, article_id)
            ).fetchall()
            return [row["tag"] for row in rows]
