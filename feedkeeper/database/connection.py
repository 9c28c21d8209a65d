"""
Database connection management and schema initialization.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class DatabaseConnection:
    """Manages database connection and schema."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def conn(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _init_schema(self):
        """Initialize database schema."""
        with self.conn() as connection:
            connection.executescript("""
                CREATE TABLE IF NOT EXISTS folders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL DEFAULT 1,
                    name TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, name)
                );

                CREATE TABLE IF NOT EXISTS feeds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL DEFAULT 1,
                    folder_id INTEGER REFERENCES folders(id) ON DELETE SET NULL,
                    type TEXT NOT NULL DEFAULT 'rss',
                    title TEXT NOT NULL,
                    url TEXT NOT NULL,
                    site_url TEXT,
                    icon_url TEXT,
                    description TEXT,
                    refresh_interval_minutes INTEGER NOT NULL DEFAULT 30,
                    last_fetched_at TIMESTAMP,
                    next_fetch_at TIMESTAMP,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    last_error_at TIMESTAMP,
                    paused_at TIMESTAMP,
                    deleted_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, url)
                );

                CREATE TABLE IF NOT EXISTS articles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
                    guid TEXT NOT NULL,
                    title TEXT NOT NULL,
                    url TEXT,
                    author TEXT,
                    summary TEXT,
                    content TEXT,
                    enclosure_url TEXT,
                    enclosure_type TEXT,
                    thumbnail_url TEXT,
                    published_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(feed_id, guid)
                );

                CREATE TABLE IF NOT EXISTS user_article_state (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    article_id INTEGER NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
                    is_read BOOLEAN DEFAULT FALSE,
                    read_at TIMESTAMP,
                    is_bookmarked BOOLEAN DEFAULT FALSE,
                    bookmarked_at TIMESTAMP,
                    folder_id INTEGER REFERENCES folders(id) ON DELETE SET NULL,
                    deleted_at TIMESTAMP,
                    UNIQUE(user_id, article_id)
                );

                CREATE TABLE IF NOT EXISTS article_tags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    article_id INTEGER NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
                    tag TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'user',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, article_id, tag)
                );

                CREATE TABLE IF NOT EXISTS automation_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL DEFAULT 1,
                    name TEXT NOT NULL,
                    description TEXT,
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    trigger_type TEXT NOT NULL DEFAULT 'new_article',
                    conditions TEXT NOT NULL DEFAULT '[]',
                    actions TEXT NOT NULL DEFAULT '[]',
                    priority INTEGER NOT NULL DEFAULT 0,
                    match_count INTEGER NOT NULL DEFAULT 0,
                    last_matched_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS rule_executions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id INTEGER NOT NULL REFERENCES automation_rules(id) ON DELETE CASCADE,
                    article_id INTEGER NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
                    success BOOLEAN NOT NULL,
                    actions_taken TEXT NOT NULL DEFAULT '[]',
                    error_message TEXT,
                    executed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    rule_id INTEGER REFERENCES automation_rules(id) ON DELETE SET NULL,
                    article_id INTEGER REFERENCES articles(id) ON DELETE CASCADE,
                    message TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    dismissed BOOLEAN DEFAULT FALSE
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_feeds_next_fetch ON feeds(next_fetch_at);
                CREATE INDEX IF NOT EXISTS idx_articles_feed ON articles(feed_id);
                CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at DESC);
                CREATE INDEX IF NOT EXISTS idx_article_state_user ON user_article_state(user_id, article_id);
                CREATE INDEX IF NOT EXISTS idx_article_tags_article ON article_tags(article_id);
                CREATE INDEX IF NOT EXISTS idx_rules_priority ON automation_rules(user_id, enabled, priority DESC);
                CREATE INDEX IF NOT EXISTS idx_rule_executions_rule ON rule_executions(rule_id, executed_at DESC);
                CREATE INDEX IF NOT EXISTS idx_notifications_pending ON notifications(dismissed, created_at DESC);
            """)

            # Migrations
            self._migrate_add_column(connection, "feeds", "description", "TEXT")
            self._migrate_add_column(connection, "feeds", "last_error_at", "TIMESTAMP")
            self._migrate_add_column(connection, "articles", "thumbnail_url", "TEXT")

    def _migrate_add_column(
        self,
        connection: sqlite3.Connection,
        table: str,
        column: str,
        definition: str
    ):
        """Add a column to an existing table if it is missing."""
        columns = {
            row["name"]
            for row in connection.execute(f"PRAGMA table_info({table})").fetchall()
        }
        if column not in columns:
            connection.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
