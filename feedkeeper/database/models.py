"""
Database models - dataclasses for database entities.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class DBFeed:
    id: int
    url: str
    title: str
    type: str
    refresh_interval_minutes: int
    folder_id: int | None = None
    site_url: str | None = None
    icon_url: str | None = None
    description: str | None = None
    last_fetched_at: datetime | None = None
    next_fetch_at: datetime | None = None
    error_count: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None
    paused_at: datetime | None = None
    deleted_at: datetime | None = None
    user_id: int = 1
    article_count: int = 0

    @property
    def is_eligible(self) -> bool:
        """Eligible for refresh: neither paused nor deleted."""
        return self.deleted_at is None and self.paused_at is None


@dataclass
class DBArticle:
    id: int
    feed_id: int
    guid: str
    title: str
    url: str | None
    author: str | None
    summary: str | None
    content: str | None
    published_at: datetime | None
    created_at: datetime
    enclosure_url: str | None = None
    enclosure_type: str | None = None
    thumbnail_url: str | None = None
    feed_type: str = "rss"


@dataclass
class DBArticleState:
    """Per-user side state for an article."""
    user_id: int
    article_id: int
    is_read: bool = False
    read_at: datetime | None = None
    is_bookmarked: bool = False
    bookmarked_at: datetime | None = None
    folder_id: int | None = None
    deleted_at: datetime | None = None


@dataclass
class DBRule:
    """
    Stored automation rule.

    conditions and actions are kept as decoded JSON; the rule engine turns
    them into typed values.
    """
    id: int
    user_id: int
    name: str
    description: str | None
    enabled: bool
    trigger_type: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    priority: int
    match_count: int
    last_matched_at: datetime | None
    created_at: datetime
    updated_at: datetime | None = None


@dataclass
class DBRuleExecution:
    id: int
    rule_id: int
    article_id: int
    success: bool
    actions_taken: list[str] = field(default_factory=list)
    error_message: str | None = None
    executed_at: datetime | None = None


@dataclass
class DBNotification:
    id: int
    user_id: int
    rule_id: int | None
    article_id: int | None
    message: str
    created_at: datetime
    dismissed: bool = False
    article_title: str | None = None


@dataclass
class DBFolder:
    id: int
    name: str
    user_id: int = 1


@dataclass
class ArticlePurgeResult:
    """Rows removed by one retention sweep."""
    read_deleted: int = 0
    expired_deleted: int = 0
    orphaned_states: int = 0

    @property
    def total(self) -> int:
        return self.read_deleted + self.expired_deleted
