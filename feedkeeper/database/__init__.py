"""
Database module - SQLite storage for feeds, articles and automation rules.

Uses repository pattern for better separation of concerns.
"""

from .connection import DatabaseConnection
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
from .article_repository import ArticleRepository
from .feed_repository import FeedRepository
from .folder_repository import FolderRepository
from .notification_repository import NotificationRepository
from .rule_repository import RuleRepository
from .settings_repository import SettingsRepository
from .user_article_state_repository import UserArticleStateRepository
from .database import Database

__all__ = [
    "ArticlePurgeResult",
    "Database",
    "DatabaseConnection",
    "DBArticle",
    "DBArticleState",
    "DBFeed",
    "DBFolder",
    "DBNotification",
    "DBRule",
    "DBRuleExecution",
    "ArticleRepository",
    "FeedRepository",
    "FolderRepository",
    "NotificationRepository",
    "RuleRepository",
    "SettingsRepository",
    "UserArticleStateRepository",
]
