"""
Database row converters - convert SQLite rows to dataclasses.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone

from .models import (
    DBArticle,
    DBArticleState,
    DBFeed,
    DBFolder,
    DBNotification,
    DBRule,
    DBRuleExecution,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """
    Serialize a datetime for storage.

    Everything is stored in UTC at second precision so that stored
    timestamps compare correctly as strings.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_db_time(value: str | None) -> datetime | None:
    """Parse a stored timestamp; naive values (SQLite defaults) are UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _safe_get(row: sqlite3.Row, col: str, default=None):
    """Read an optional column that may be absent from a query."""
    try:
        return row[col]
    except (IndexError, KeyError):
        return default


def _load_json_list(raw: str | None, what: str) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Could not decode stored {what}: {raw!r}")
        return []
    return value if isinstance(value, list) else []


def row_to_feed(row: sqlite3.Row) -> DBFeed:
    """Convert a database row to a DBFeed."""
    return DBFeed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        type=row["type"] or "rss",
        refresh_interval_minutes=row["refresh_interval_minutes"],
        folder_id=row["folder_id"],
        site_url=row["site_url"],
        icon_url=row["icon_url"],
        description=row["description"],
        last_fetched_at=parse_db_time(row["last_fetched_at"]),
        next_fetch_at=parse_db_time(row["next_fetch_at"]),
        error_count=row["error_count"] or 0,
        last_error=row["last_error"],
        last_error_at=parse_db_time(row["last_error_at"]),
        paused_at=parse_db_time(row["paused_at"]),
        deleted_at=parse_db_time(row["deleted_at"]),
        user_id=row["user_id"],
        article_count=_safe_get(row, "article_count", 0) or 0,
    )


def row_to_article(row: sqlite3.Row) -> DBArticle:
    """Convert a database row to a DBArticle."""
    return DBArticle(
        id=row["id"],
        feed_id=row["feed_id"],
        guid=row["guid"],
        title=row["title"],
        url=row["url"],
        author=row["author"],
        summary=row["summary"],
        content=row["content"],
        published_at=parse_db_time(row["published_at"]),
        created_at=parse_db_time(row["created_at"]) or utc_now(),
        enclosure_url=row["enclosure_url"],
        enclosure_type=row["enclosure_type"],
        thumbnail_url=row["thumbnail_url"],
        feed_type=_safe_get(row, "feed_type") or "rss",
    )


def row_to_article_state(row: sqlite3.Row) -> DBArticleState:
    """Convert a database row to a DBArticleState."""
    return DBArticleState(
        user_id=row["user_id"],
        article_id=row["article_id"],
        is_read=bool(row["is_read"]),
        read_at=parse_db_time(row["read_at"]),
        is_bookmarked=bool(row["is_bookmarked"]),
        bookmarked_at=parse_db_time(row["bookmarked_at"]),
        folder_id=row["folder_id"],
        deleted_at=parse_db_time(row["deleted_at"]),
    )


def row_to_rule(row: sqlite3.Row) -> DBRule:
    """Convert a database row to a DBRule."""
    return DBRule(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        enabled=bool(row["enabled"]),
        trigger_type=row["trigger_type"],
        conditions=_load_json_list(row["conditions"], "rule conditions"),
        actions=_load_json_list(row["actions"], "rule actions"),
        priority=row["priority"],
        match_count=row["match_count"] or 0,
        last_matched_at=parse_db_time(row["last_matched_at"]),
        created_at=parse_db_time(row["created_at"]) or utc_now(),
        updated_at=parse_db_time(row["updated_at"]),
    )


def row_to_rule_execution(row: sqlite3.Row) -> DBRuleExecution:
    """Convert a database row to a DBRuleExecution."""
    return DBRuleExecution(
        id=row["id"],
        rule_id=row["rule_id"],
        article_id=row["article_id"],
        success=bool(row["success"]),
        actions_taken=_load_json_list(row["actions_taken"], "actions taken"),
        error_message=row["error_message"],
        executed_at=parse_db_time(row["executed_at"]),
    )


def row_to_notification(row: sqlite3.Row) -> DBNotification:
    """Convert a database row to a DBNotification."""
    return DBNotification(
        id=row["id"],
        user_id=row["user_id"],
        rule_id=row["rule_id"],
        article_id=row["article_id"],
        message=row["message"],
        created_at=parse_db_time(row["created_at"]) or utc_now(),
        dismissed=bool(row["dismissed"]),
        article_title=_safe_get(row, "article_title"),
    )


def row_to_folder(row: sqlite3.Row) -> DBFolder:
    return DBFolder(id=row["id"], name=row["name"], user_id=row["user_id"])
