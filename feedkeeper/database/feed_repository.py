"""
Feed repository - CRUD operations and refresh bookkeeping for feeds.
"""

from datetime import datetime

from .connection import DatabaseConnection
from .converters import row_to_feed, to_db_time
from .models import DBFeed

# Titles a feed gets before its document has been fetched once
PLACEHOLDER_TITLES = ("Direct Feed", "Discovered Feed", "Untitled Feed", "")

# Icons produced by favicon services; a real feed icon replaces them
GENERIC_ICON_PATTERNS = (
    "https://www.google.com/s2/favicons%",
    "https://t0.gstatic.com/faviconV2%",
)

_FEED_SELECT = """
    SELECT f.*, COUNT(a.id) AS article_count
    FROM feeds f
    LEFT JOIN articles a ON f.id = a.feed_id
"""


class FeedRepository:
    """Repository for feed operations."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def add(
        self,
        url: str,
        title: str,
        feed_type: str = "rss",
        folder_id: int | None = None,
        refresh_interval_minutes: int = 30,
        user_id: int = 1,
        site_url: str | None = None,
        icon_url: str | None = None,
        description: str | None = None,
    ) -> int:
        """Add a new feed. Returns feed ID."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                """INSERT INTO feeds
                   (user_id, folder_id, type, title, url, site_url, icon_url,
                    description, refresh_interval_minutes)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (user_id, folder_id, feed_type, title, url, site_url, icon_url,
                 description, refresh_interval_minutes)
            )
            return cursor.lastrowid

    def get(self, feed_id: int, include_deleted: bool = False) -> DBFeed | None:
        """Get single feed by ID."""
        query = _FEED_SELECT + " WHERE f.id = ?"
        if not include_deleted:
            query += " AND f.deleted_at IS NULL"
        query += " GROUP BY f.id"
        with self._db.conn() as conn:
            row = conn.execute(query, (feed_id,)).fetchone()
            return row_to_feed(row) if row else None

    def get_by_url(self, url: str, user_id: int = 1) -> DBFeed | None:
        """Find a feed by URL, including soft-deleted ones."""
        with self._db.conn() as conn:
            row = conn.execute(
                _FEED_SELECT + " WHERE f.user_id = ? AND f.url = ? GROUP BY f.id",
                (user_id, url)
            ).fetchone()
            return row_to_feed(row) if row else None

    def get_all(self, user_id: int = 1) -> list[DBFeed]:
        """Get all feeds that have not been deleted."""
        with self._db.conn() as conn:
            rows = conn.execute(
                _FEED_SELECT + """
                WHERE f.user_id = ? AND f.deleted_at IS NULL
                GROUP BY f.id
                ORDER BY f.title COLLATE NOCASE
                """,
                (user_id,)
            ).fetchall()
            return [row_to_feed(row) for row in rows]

    def get_eligible(
        self,
        due_before: datetime | None = None,
        feed_ids: list[int] | None = None,
    ) -> list[DBFeed]:
        """
        Select feeds that may be refreshed.

        A feed is eligible when it is neither paused nor deleted. With
        due_before, only feeds whose next_fetch_at has passed (or was never
        set) are returned; without it every eligible feed is selected.
        """
        query = _FEED_SELECT + " WHERE f.deleted_at IS NULL AND f.paused_at IS NULL"
        params: list = []
        if due_before is not None:
            query += " AND (f.next_fetch_at IS NULL OR f.next_fetch_at <= ?)"
            params.append(to_db_time(due_before))
        if feed_ids is not None:
            if not feed_ids:
                return []
            placeholders = ", ".join("?" for _ in feed_ids)
            query += f" AND f.id IN ({placeholders})"
            params.extend(feed_ids)
        query += " GROUP BY f.id ORDER BY f.next_fetch_at IS NOT NULL, f.next_fetch_at, f.id"
        with self._db.conn() as conn:
            rows = conn.execute(query, params).fetchall()
            return [row_to_feed(row) for row in rows]

    def update(
        self,
        feed_id: int,
        title: str | None = None,
        folder_id: int | None = None,
        clear_folder: bool = False,
    ):
        """Update feed details. Use clear_folder=True to remove the folder."""
        with self._db.conn() as conn:
            if title is not None:
                conn.execute("UPDATE feeds SET title = ? WHERE id = ?", (title, feed_id))
            if clear_folder:
                conn.execute("UPDATE feeds SET folder_id = NULL WHERE id = ?", (feed_id,))
            elif folder_id is not None:
                conn.execute("UPDATE feeds SET folder_id = ? WHERE id = ?", (folder_id, feed_id))

    def set_refresh_interval(
        self,
        feed_id: int,
        minutes: int,
        next_fetch_at: datetime | None,
    ):
        """Change a feed's interval together with its derived next_fetch_at."""
        with self._db.conn() as conn:
            conn.execute(
                "UPDATE feeds SET refresh_interval_minutes = ?, next_fetch_at = ? WHERE id = ?",
                (minutes, to_db_time(next_fetch_at), feed_id)
            )

    def record_success(
        self,
        feed_id: int,
        fetched_at: datetime,
        next_fetch_at: datetime,
        title: str | None = None,
        site_url: str | None = None,
        icon_url: str | None = None,
        description: str | None = None,
        feed_type: str | None = None,
    ):
        """
        Record a successful fetch.

        Clears the error state and reschedules the feed. Title, site URL,
        icon and description are only filled in where the stored value is
        missing or a placeholder.
        """
        title_placeholders = ", ".join("?" for _ in PLACEHOLDER_TITLES)
        icon_generic = " OR ".join("icon_url LIKE ?" for _ in GENERIC_ICON_PATTERNS)
        with self._db.conn() as conn:
            conn.execute(
                f"""UPDATE feeds SET
                       title = CASE
                           WHEN ? IS NOT NULL AND (title = url OR title IN ({title_placeholders}))
                           THEN ? ELSE title END,
                       site_url = COALESCE(NULLIF(site_url, ''), ?),
                       icon_url = CASE
                           WHEN ? IS NOT NULL AND (icon_url IS NULL OR icon_url = '' OR {icon_generic})
                           THEN ? ELSE icon_url END,
                       description = COALESCE(NULLIF(description, ''), ?),
                       type = COALESCE(?, type),
                       last_fetched_at = ?,
                       next_fetch_at = ?,
                       error_count = 0,
                       last_error = NULL,
                       last_error_at = NULL
                   WHERE id = ?""",
                (
                    title, *PLACEHOLDER_TITLES, title,
                    site_url,
                    icon_url, *GENERIC_ICON_PATTERNS, icon_url,
                    description,
                    feed_type,
                    to_db_time(fetched_at),
                    to_db_time(next_fetch_at),
                    feed_id,
                )
            )

    def record_failure(
        self,
        feed_id: int,
        failed_at: datetime,
        next_fetch_at: datetime,
        error: str,
    ):
        """Record a failed fetch and push the feed's next attempt back."""
        with self._db.conn() as conn:
            conn.execute(
                """UPDATE feeds SET
                       error_count = error_count + 1,
                       last_error = ?,
                       last_error_at = ?,
                       next_fetch_at = ?
                   WHERE id = ?""",
                (error, to_db_time(failed_at), to_db_time(next_fetch_at), feed_id)
            )

    def set_paused(self, feed_id: int, paused_at: datetime | None):
        """Pause a feed (paused_at set) or resume it (None)."""
        with self._db.conn() as conn:
            conn.execute(
                "UPDATE feeds SET paused_at = ? WHERE id = ?",
                (to_db_time(paused_at), feed_id)
            )

    def soft_delete(self, feed_id: int, deleted_at: datetime):
        """Mark a feed deleted; its articles stay in place."""
        with self._db.conn() as conn:
            conn.execute(
                "UPDATE feeds SET deleted_at = ? WHERE id = ?",
                (to_db_time(deleted_at), feed_id)
            )

    def restore(self, feed_id: int, folder_id: int | None = None):
        """Bring back a soft-deleted feed and make it due immediately."""
        with self._db.conn() as conn:
            conn.execute(
                """UPDATE feeds SET
                       deleted_at = NULL,
                       paused_at = NULL,
                       folder_id = COALESCE(?, folder_id),
                       next_fetch_at = NULL,
                       error_count = 0,
                       last_error = NULL,
                       last_error_at = NULL
                   WHERE id = ?""",
                (folder_id, feed_id)
            )
