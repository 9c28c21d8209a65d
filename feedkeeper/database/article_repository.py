"""
Article repository - idempotent inserts and reads for articles.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from .connection import DatabaseConnection
from .converters import row_to_article, to_db_time
from .models import ArticlePurgeResult, DBArticle

if TYPE_CHECKING:
    from ..feeds import NormalizedArticle

_ARTICLE_SELECT = """
    SELECT a.*, f.type AS feed_type
    FROM articles a
    JOIN feeds f ON f.id = a.feed_id
"""

# Articles with no publish date age from when they were stored
_ARTICLE_AGE = "datetime(COALESCE(published_at, created_at))"

_BOOKMARKED_IDS = "SELECT article_id FROM user_article_state WHERE is_bookmarked = 1"


class ArticleRepository:
    """Repository for article operations."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def insert_many(self, feed_id: int, articles: Iterable["NormalizedArticle"]) -> list[int]:
        """
        Insert articles for a feed, skipping guids that already exist.

        Runs in a single transaction. Returns the ids of the rows that
        were actually inserted, in input order.
        """
        inserted: list[int] = []
        with self._db.conn() as conn:
            for article in articles:
                cursor = conn.execute(
                    """INSERT OR IGNORE INTO articles
                       (feed_id, guid, title, url, author, summary, content,
                        enclosure_url, enclosure_type, thumbnail_url, published_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        feed_id,
                        article.guid,
                        article.title,
                        article.url,
                        article.author,
                        article.summary,
                        article.content,
                        article.enclosure_url,
                        article.enclosure_type,
                        article.thumbnail_url,
                        to_db_time(article.published_at),
                    )
                )
                if cursor.rowcount > 0:
                    inserted.append(cursor.lastrowid)
        return inserted

    def get(self, article_id: int) -> DBArticle | None:
        """Get a single article with its feed type."""
        with self._db.conn() as conn:
            row = conn.execute(
                _ARTICLE_SELECT + " WHERE a.id = ?",
                (article_id,)
            ).fetchone()
            return row_to_article(row) if row else None

    def get_for_feed(self, feed_id: int, limit: int = 50, offset: int = 0) -> list[DBArticle]:
        """Get a feed's articles, newest first."""
        with self._db.conn() as conn:
            rows = conn.execute(
                _ARTICLE_SELECT + """
                WHERE a.feed_id = ?
                ORDER BY COALESCE(a.published_at, a.created_at) DESC, a.id DESC
                LIMIT ? OFFSET ?
                """,
                (feed_id, limit, offset)
            ).fetchall()
            return [row_to_article(row) for row in rows]

    def get_recent(self, user_id: int, limit: int = 10) -> list[DBArticle]:
        """Get the newest articles the user has not deleted."""
        with self._db.conn() as conn:
            rows = conn.execute(
                _ARTICLE_SELECT + """
                LEFT JOIN user_article_state uas
                    ON uas.article_id = a.id AND uas.user_id = ?
                WHERE uas.deleted_at IS NULL AND f.deleted_at IS NULL
                ORDER BY COALESCE(a.published_at, a.created_at) DESC, a.id DESC
                LIMIT ?
                """,
                (user_id, limit)
            ).fetchall()
            return [row_to_article(row) for row in rows]

    def count_for_feed(self, feed_id: int) -> int:
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM articles WHERE feed_id = ?",
                (feed_id,)
            ).fetchone()
            return row["n"]

    def purge_old(self, user_id: int, read_cutoff: datetime, hard_cutoff: datetime) -> ArticlePurgeResult:
        """
        Delete old articles in one transaction.

        Read articles older than read_cutoff go first, then anything older
        than hard_cutoff regardless of read state. Bookmarked articles are
        always kept. Side state left without an article is removed too.
        """
        with self._db.conn() as conn:
            read_deleted = conn.execute(
                f"""DELETE FROM articles
                    WHERE {_ARTICLE_AGE} < datetime(?)
                    AND id IN (
                        SELECT article_id FROM user_article_state
                        WHERE user_id = ? AND is_read = 1
                    )
                    AND id NOT IN ({_BOOKMARKED_IDS})""",
                (to_db_time(read_cutoff), user_id)
            ).rowcount
            expired_deleted = conn.execute(
                f"""DELETE FROM articles
                    WHERE {_ARTICLE_AGE} < datetime(?)
                    AND id NOT IN ({_BOOKMARKED_IDS})""",
                (to_db_time(hard_cutoff),)
            ).rowcount
            orphaned_states = conn.execute(
                "DELETE FROM user_article_state WHERE article_id NOT IN (SELECT id FROM articles)"
            ).rowcount
        return ArticlePurgeResult(read_deleted, expired_deleted, orphaned_states)

    def vacuum(self):
        with self._db.conn() as conn:
            conn.execute("VACUUM")
