"""
Pydantic models for API request/response validation.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .database import DBArticle, DBFeed
from .database.models import DBNotification, DBRule, DBRuleExecution
from .rules_engine import RuleTestResult, TriggerType


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ─────────────────────────────────────────────────────────────
# Feed Schemas
# ─────────────────────────────────────────────────────────────

class FeedResponse(BaseModel):
    """Feed with its schedule and health."""
    id: int
    url: str
    title: str
    type: str
    folder_id: int | None = None
    folder: str | None = None  # Populated by API
    site_url: str | None = None
    icon_url: str | None = None
    description: str | None = None
    refresh_interval_minutes: int
    last_fetched_at: str | None = None
    next_fetch_at: str | None = None
    error_count: int = 0
    last_error: str | None = None
    last_error_at: str | None = None
    paused: bool = False
    article_count: int = 0

    @classmethod
    def from_db(cls, feed: DBFeed, folder: str | None = None) -> "FeedResponse":
        return cls(
            id=feed.id,
            url=feed.url,
            title=feed.title,
            type=feed.type,
            folder_id=feed.folder_id,
            folder=folder,
            site_url=feed.site_url,
            icon_url=feed.icon_url,
            description=feed.description,
            refresh_interval_minutes=feed.refresh_interval_minutes,
            last_fetched_at=_iso(feed.last_fetched_at),
            next_fetch_at=_iso(feed.next_fetch_at),
            error_count=feed.error_count,
            last_error=feed.last_error,
            last_error_at=_iso(feed.last_error_at),
            paused=feed.paused_at is not None,
            article_count=feed.article_count,
        )


class AddFeedRequest(BaseModel):
    """Request to add a new feed."""
    url: str
    title: str | None = None
    folder: str | None = None


class UpdateFeedRequest(BaseModel):
    """Request to update a feed."""
    title: str | None = None
    # Empty string removes the feed from its folder
    folder: str | None = None
    refresh_interval_minutes: int | None = Field(default=None, ge=1, le=10080)


class RefreshFeedResponse(BaseModel):
    """Result of a manual single-feed refresh."""
    success: bool
    new_articles: int
    next_fetch_at: str | None = None


# ─────────────────────────────────────────────────────────────
# Article Schemas
# ─────────────────────────────────────────────────────────────

class ArticleResponse(BaseModel):
    """Article for list view."""
    id: int
    feed_id: int
    guid: str
    title: str
    url: str | None
    author: str | None = None
    summary: str | None = None
    published_at: str | None
    created_at: str
    thumbnail_url: str | None = None
    enclosure_url: str | None = None
    enclosure_type: str | None = None

    @classmethod
    def from_db(cls, article: DBArticle) -> "ArticleResponse":
        return cls(
            id=article.id,
            feed_id=article.feed_id,
            guid=article.guid,
            title=article.title,
            url=article.url,
            author=article.author,
            summary=article.summary,
            published_at=_iso(article.published_at),
            created_at=article.created_at.isoformat(),
            thumbnail_url=article.thumbnail_url,
            enclosure_url=article.enclosure_url,
            enclosure_type=article.enclosure_type,
        )


# ─────────────────────────────────────────────────────────────
# Rule Schemas
# ─────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str
    value: Any
    case_sensitive: bool | None = None


class RuleActionModel(BaseModel):
    type: str
    params: dict[str, Any] = Field(default_factory=dict)


class RuleResponse(BaseModel):
    """Automation rule for display."""
    id: int
    name: str
    description: str | None
    enabled: bool
    trigger_type: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    priority: int
    match_count: int
    last_matched_at: str | None
    created_at: str
    updated_at: str | None

    @classmethod
    def from_db(cls, rule: DBRule) -> "RuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            enabled=rule.enabled,
            trigger_type=rule.trigger_type,
            conditions=rule.conditions,
            actions=rule.actions,
            priority=rule.priority,
            match_count=rule.match_count,
            last_matched_at=_iso(rule.last_matched_at),
            created_at=rule.created_at.isoformat(),
            updated_at=_iso(rule.updated_at),
        )


class CreateRuleRequest(BaseModel):
    """Request to create an automation rule."""
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    enabled: bool = True
    trigger_type: TriggerType = TriggerType.NEW_ARTICLE
    conditions: list[RuleCondition] = Field(default_factory=list)
    actions: list[RuleActionModel] = Field(min_length=1)
    priority: int = Field(default=0, ge=0, le=100)


class UpdateRuleRequest(BaseModel):
    """Request to update an automation rule. Omitted fields are kept."""
    name: str | None = Field(default=None, min_length=1, max_length=100)
    # Empty string clears the description
    description: str | None = Field(default=None, max_length=500)
    enabled: bool | None = None
    trigger_type: TriggerType | None = None
    conditions: list[RuleCondition] | None = None
    actions: list[RuleActionModel] | None = Field(default=None, min_length=1)
    priority: int | None = Field(default=None, ge=0, le=100)


class RuleDryRunRequest(BaseModel):
    """Dry run of an unsaved rule definition."""
    conditions: list[RuleCondition] = Field(default_factory=list)
    actions: list[RuleActionModel] = Field(default_factory=list)
    limit: int = Field(default=10, ge=1, le=100)


class RuleDryRunMatch(BaseModel):
    article_id: int
    title: str
    feed_id: int
    would_match: bool
    would_execute_actions: list[dict[str, Any]]

    @classmethod
    def from_result(cls, result: RuleTestResult) -> "RuleDryRunMatch":
        return cls(
            article_id=result.article.id,
            title=result.article.title,
            feed_id=result.article.feed_id,
            would_match=result.would_match,
            would_execute_actions=result.would_execute_actions,
        )


class RuleDryRunResponse(BaseModel):
    tested: int
    matched: int
    results: list[RuleDryRunMatch]


class RuleExecutionResponse(BaseModel):
    id: int
    rule_id: int
    article_id: int
    success: bool
    actions_taken: list[str]
    error_message: str | None
    executed_at: str | None

    @classmethod
    def from_db(cls, execution: DBRuleExecution) -> "RuleExecutionResponse":
        return cls(
            id=execution.id,
            rule_id=execution.rule_id,
            article_id=execution.article_id,
            success=execution.success,
            actions_taken=execution.actions_taken,
            error_message=execution.error_message,
            executed_at=_iso(execution.executed_at),
        )


class RuleStatsResponse(BaseModel):
    total_executions: int
    successful: int
    failed: int
    last_execution: str | None


class BulkToggleRulesRequest(BaseModel):
    rule_ids: list[int]
    enabled: bool


class BulkDeleteRulesRequest(BaseModel):
    rule_ids: list[int]


# ─────────────────────────────────────────────────────────────
# Notification Schemas
# ─────────────────────────────────────────────────────────────

class NotificationResponse(BaseModel):
    """Queued notification produced by a rule's notify action."""
    id: int
    rule_id: int | None
    article_id: int | None
    article_title: str | None = None
    message: str
    created_at: str
    dismissed: bool

    @classmethod
    def from_db(cls, notification: DBNotification) -> "NotificationResponse":
        return cls(
            id=notification.id,
            rule_id=notification.rule_id,
            article_id=notification.article_id,
            article_title=notification.article_title,
            message=notification.message,
            created_at=notification.created_at.isoformat(),
            dismissed=notification.dismissed,
        )


# ─────────────────────────────────────────────────────────────
# Settings Schemas
# ─────────────────────────────────────────────────────────────

class SettingsResponse(BaseModel):
    """Application settings and the global refresh schedule."""
    refresh_interval_minutes: int
    retention_days: int
    global_last_refresh_at: str | None = None
    global_next_refresh_at: str | None = None


class SettingsUpdateRequest(BaseModel):
    """Request to update settings."""
    refresh_interval_minutes: int | None = Field(default=None, ge=1, le=1440)
    retention_days: int | None = Field(default=None, ge=1)


# ─────────────────────────────────────────────────────────────
# OPML Schemas
# ─────────────────────────────────────────────────────────────

class OPMLImportRequest(BaseModel):
    """Request to import feeds from OPML."""
    opml_content: str


class OPMLExportResponse(BaseModel):
    opml: str
    feed_count: int
