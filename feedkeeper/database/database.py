"""
Database facade - provides unified access to all repositories.

Callers use the delegating methods below; repositories stay available as
attributes for anything more specialised.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from .connection import DatabaseConnection
from .article_repository import ArticleRepository
from .feed_repository import FeedRepository
from .folder_repository import FolderRepository
from .notification_repository import NotificationRepository
from .rule_repository import RuleRepository
from .settings_repository import SettingsRepository
from .user_article_state_repository import UserArticleStateRepository
from .models import (
    ArticlePurgeResult,
    DBArticle,
    DBArticleState,
    DBFeed,
    DBFolder,
    DBNotification,
    DBRule,
    DBRuleExecution,
)

if TYPE_CHECKING:
    from ..feeds import NormalizedArticle


# Setting keys
REFRESH_INTERVAL_KEY = "refresh_interval_minutes"
RETENTION_DAYS_KEY = "retention_days"
GLOBAL_LAST_REFRESH_KEY = "global_last_refresh_at"
GLOBAL_NEXT_REFRESH_KEY = "global_next_refresh_at"

DEFAULT_REFRESH_INTERVAL_MINUTES = 15
DEFAULT_RETENTION_DAYS = 90
# Articles older than this are deleted even when unread
HARD_RETENTION_DAYS = 365
VACUUM_AFTER_DELETES = 100

logger = logging.getLogger(__name__)


class Database:
    """
    Unified database access facade.
    """

    def __init__(self, db_path: Path):
        self._connection = DatabaseConnection(db_path)

        # Initialize repositories
        self.feeds = FeedRepository(self._connection)
        self.articles = ArticleRepository(self._connection)
        self.article_state = UserArticleStateRepository(self._connection)
        self.folders = FolderRepository(self._connection)
        self.rules = RuleRepository(self._connection)
        self.notifications = NotificationRepository(self._connection)
        self.settings = SettingsRepository(self._connection)

    # ─────────────────────────────────────────────────────────────
    # Feed operations (delegated to FeedRepository)
    # ─────────────────────────────────────────────────────────────

    def add_feed(
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
        return self.feeds.add(
            url,
            title,
            feed_type=feed_type,
            folder_id=folder_id,
            refresh_interval_minutes=refresh_interval_minutes,
            user_id=user_id,
            site_url=site_url,
            icon_url=icon_url,
            description=description,
        )

    def get_feed(self, feed_id: int, include_deleted: bool = False) -> DBFeed | None:
        return self.feeds.get(feed_id, include_deleted)

    def get_feed_by_url(self, url: str, user_id: int = 1) -> DBFeed | None:
        return self.feeds.get_by_url(url, user_id)

    def get_feeds(self, user_id: int = 1) -> list[DBFeed]:
        return self.feeds.get_all(user_id)

    def get_due_feeds(self, now: datetime) -> list[DBFeed]:
        """Eligible feeds whose own next_fetch_at has passed."""
        return self.feeds.get_eligible(due_before=now)

    def get_eligible_feeds(self, feed_ids: list[int] | None = None) -> list[DBFeed]:
        """Eligible feeds regardless of schedule, optionally limited to ids."""
        return self.feeds.get_eligible(feed_ids=feed_ids)

    def update_feed(
        self,
        feed_id: int,
        title: str | None = None,
        folder_id: int | None = None,
        clear_folder: bool = False,
    ):
        return self.feeds.update(feed_id, title, folder_id, clear_folder)

    def set_feed_refresh_interval(self, feed_id: int, minutes: int, next_fetch_at: datetime | None):
        return self.feeds.set_refresh_interval(feed_id, minutes, next_fetch_at)

    def record_feed_success(self, feed_id: int, fetched_at: datetime, next_fetch_at: datetime, **metadata):
        return self.feeds.record_success(feed_id, fetched_at, next_fetch_at, **metadata)

    def record_feed_failure(self, feed_id: int, failed_at: datetime, next_fetch_at: datetime, error: str):
        return self.feeds.record_failure(feed_id, failed_at, next_fetch_at, error)

    def set_feed_paused(self, feed_id: int, paused_at: datetime | None):
        return self.feeds.set_paused(feed_id, paused_at)

    def delete_feed(self, feed_id: int, deleted_at: datetime):
        return self.feeds.soft_delete(feed_id, deleted_at)

    def restore_feed(self, feed_id: int, folder_id: int | None = None):
        return self.feeds.restore(feed_id, folder_id)

    # ─────────────────────────────────────────────────────────────
    # Article operations (delegated to ArticleRepository)
    # ─────────────────────────────────────────────────────────────

    def insert_articles(self, feed_id: int, articles: Iterable["NormalizedArticle"]) -> list[int]:
        return self.articles.insert_many(feed_id, articles)

    def get_article(self, article_id: int) -> DBArticle | None:
        return self.articles.get(article_id)

    def get_feed_articles(self, feed_id: int, limit: int = 50, offset: int = 0) -> list[DBArticle]:
        return self.articles.get_for_feed(feed_id, limit, offset)

    def get_recent_articles(self, user_id: int = 1, limit: int = 10) -> list[DBArticle]:
        return self.articles.get_recent(user_id, limit)

    def count_feed_articles(self, feed_id: int) -> int:
        return self.articles.count_for_feed(feed_id)

    def purge_old_articles(self, now: datetime, user_id: int = 1) -> ArticlePurgeResult:
        """
        Apply the retention policy.

        Read articles are kept for the user's retention_days and everything
        else for HARD_RETENTION_DAYS; bookmarks are kept. Large sweeps are
        followed by VACUUM.
        """
        retention_days = self.get_retention_days()
        result = self.articles.purge_old(
            user_id,
            read_cutoff=now - timedelta(days=retention_days),
            hard_cutoff=now - timedelta(days=HARD_RETENTION_DAYS),
        )
        if result.total > VACUUM_AFTER_DELETES:
            try:
                self.articles.vacuum()
            except sqlite3.OperationalError as e:
                logger.warning(f"VACUUM after article cleanup failed: {e}")
        return result

    # ─────────────────────────────────────────────────────────────
    # Article side state (delegated to UserArticleStateRepository)
    # ─────────────────────────────────────────────────────────────

    def get_article_state(self, user_id: int, article_id: int) -> DBArticleState | None:
        return self.article_state.get_state(user_id, article_id)

    def mark_read(self, user_id: int, article_id: int, when: datetime):
        return self.article_state.mark_read(user_id, article_id, when)

    def bookmark_article(self, user_id: int, article_id: int, when: datetime):
        return self.article_state.set_bookmarked(user_id, article_id, when)

    def move_article_to_folder(self, user_id: int, article_id: int, folder_id: int | None):
        return self.article_state.move_to_folder(user_id, article_id, folder_id)

    def delete_article(self, user_id: int, article_id: int, when: datetime):
        return self.article_state.soft_delete(user_id, article_id, when)

    def add_article_tag(self, user_id: int, article_id: int, tag: str, source: str = "user") -> bool:
        return self.article_state.add_tag(user_id, article_id, tag, source)

    def get_article_tags(self, user_id: int, article_id: int) -> list[str]:
        return self.article_state.get_tags(user_id, article_id)

    # ─────────────────────────────────────────────────────────────
    # Folders
    # ─────────────────────────────────────────────────────────────

    def get_or_create_folder(self, name: str, user_id: int = 1) -> tuple[DBFolder, bool]:
        return self.folders.get_or_create(name, user_id)

    def get_folder(self, folder_id: int) -> DBFolder | None:
        return self.folders.get(folder_id)

    def get_folders(self, user_id: int = 1) -> list[DBFolder]:
        return self.folders.get_all(user_id)

    # ─────────────────────────────────────────────────────────────
    # Automation rules (delegated to RuleRepository)
    # ─────────────────────────────────────────────────────────────

    def add_rule(
        self,
        name: str,
        conditions: list[dict[str, Any]],
        actions: list[dict[str, Any]],
        trigger_type: str = "new_article",
        description: str | None = None,
        priority: int = 0,
        enabled: bool = True,
        user_id: int = 1,
    ) -> int:
        return self.rules.add_rule(
            name,
            conditions,
            actions,
            trigger_type=trigger_type,
            description=description,
            priority=priority,
            enabled=enabled,
            user_id=user_id,
        )

    def get_rule(self, rule_id: int, user_id: int = 1) -> DBRule | None:
        return self.rules.get_rule(rule_id, user_id)

    def get_rules(self, user_id: int = 1, enabled_only: bool = False) -> list[DBRule]:
        return self.rules.get_rules(user_id, enabled_only)

    def update_rule(self, rule_id: int, updated_at: datetime, **fields):
        return self.rules.update_rule(rule_id, updated_at, **fields)

    def set_rules_enabled(self, rule_ids: list[int], enabled: bool, user_id: int = 1) -> int:
        return self.rules.set_enabled(rule_ids, enabled, user_id)

    def delete_rules(self, rule_ids: list[int], user_id: int = 1) -> int:
        return self.rules.delete_rules(rule_ids, user_id)

    def record_rule_match(self, rule_id: int, matched_at: datetime):
        return self.rules.record_match(rule_id, matched_at)

    def add_rule_execution(
        self,
        rule_id: int,
        article_id: int,
        success: bool,
        actions_taken: list[str],
        executed_at: datetime,
        error_message: str | None = None,
    ) -> int:
        return self.rules.add_execution(
            rule_id, article_id, success, actions_taken, executed_at, error_message
        )

    def get_rule_executions(self, rule_id: int, limit: int = 50) -> list[DBRuleExecution]:
        return self.rules.get_executions(rule_id, limit)

    def get_article_rule_executions(self, article_id: int) -> list[DBRuleExecution]:
        return self.rules.get_executions_for_article(article_id)

    def get_rule_stats(self, rule_id: int) -> dict:
        return self.rules.get_stats(rule_id)

    # ─────────────────────────────────────────────────────────────
    # Notification queue (delegated to NotificationRepository)
    # ─────────────────────────────────────────────────────────────

    def enqueue_notification(
        self,
        user_id: int,
        message: str,
        created_at: datetime,
        rule_id: int | None = None,
        article_id: int | None = None,
    ) -> int:
        return self.notifications.enqueue(user_id, message, created_at, rule_id, article_id)

    def get_notifications(
        self,
        user_id: int = 1,
        include_dismissed: bool = False,
        limit: int = 50,
    ) -> list[DBNotification]:
        return self.notifications.get_notifications(user_id, include_dismissed, limit)

    def dismiss_notification(self, notification_id: int, user_id: int = 1) -> bool:
        return self.notifications.dismiss(notification_id, user_id)

    def dismiss_all_notifications(self, user_id: int = 1) -> int:
        return self.notifications.dismiss_all(user_id)

    # ─────────────────────────────────────────────────────────────
    # Settings and global refresh schedule
    # ─────────────────────────────────────────────────────────────

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        return self.settings.get(key, default)

    def set_setting(self, key: str, value: str | int | datetime | None):
        return self.settings.set(key, value)

    def get_all_settings(self) -> dict[str, str]:
        return self.settings.get_all()

    def get_refresh_interval_minutes(self) -> int:
        """The user's global refresh interval."""
        return self.settings.get_int(REFRESH_INTERVAL_KEY, DEFAULT_REFRESH_INTERVAL_MINUTES, minimum=1)

    def get_retention_days(self) -> int:
        return self.settings.get_int(RETENTION_DAYS_KEY, DEFAULT_RETENTION_DAYS, minimum=1)

    def get_global_schedule(self) -> tuple[datetime | None, datetime | None]:
        """Return (global_last_refresh_at, global_next_refresh_at)."""
        return (
            self.settings.get_datetime(GLOBAL_LAST_REFRESH_KEY),
            self.settings.get_datetime(GLOBAL_NEXT_REFRESH_KEY),
        )

    def get_global_next_refresh_at(self) -> datetime | None:
        return self.settings.get_datetime(GLOBAL_NEXT_REFRESH_KEY)

    def set_global_schedule(self, last_refresh_at: datetime | None, next_refresh_at: datetime | None):
        self.settings.set_many({
            GLOBAL_LAST_REFRESH_KEY: last_refresh_at,
            GLOBAL_NEXT_REFRESH_KEY: next_refresh_at,
        })
