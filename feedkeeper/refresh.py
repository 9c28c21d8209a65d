"""
Per-feed refresh pipeline.

One invocation fetches a feed, inserts the entries it has not seen
before, updates the feed's health and schedule, and hands the new
articles to the rule engine. It never raises: every outcome comes back
as a RefreshResult.

Concurrent invocations for different feeds are fine. Two concurrent
invocations for the same feed are prevented by the scheduler.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from .config import DEFAULT_USER_ID
from .database.converters import utc_now
from .feeds import (
    FeedError,
    FeedParser,
    FeedTimeoutError,
    FeedType,
    ParseOptions,
    describe_error,
    detect_feed_type,
    normalize_article,
)

if TYPE_CHECKING:
    from .database import Database, DBFeed
    from .rules_engine import RuleEngine

logger = logging.getLogger(__name__)

# Failed feeds wait this many intervals before the next attempt
ERROR_BACKOFF_MULTIPLIER = 2


@dataclass
class RefreshResult:
    success: bool
    new_articles: int = 0
    error: str | None = None
    next_fetch_at: datetime | None = None
    new_article_ids: list[int] = field(default_factory=list)


class FeedRefresher:
    """Runs the refresh pipeline for single feeds."""

    def __init__(
        self,
        db: "Database",
        feed_parser: FeedParser,
        rule_engine: "RuleEngine | None" = None,
        clock: Callable[[], datetime] = utc_now,
        user_id: int = DEFAULT_USER_ID,
    ):
        self.db = db
        self.feed_parser = feed_parser
        self.rule_engine = rule_engine
        self._clock = clock
        self.user_id = user_id

    async def refresh(self, feed: "DBFeed", timeout: float | None = None) -> RefreshResult:
        """
        Refresh one feed.

        Args:
            feed: The feed row to refresh
            timeout: Seconds allowed for fetching; on expiry the feed is
                recorded as failed like any other fetch error

        Returns:
            RefreshResult with success flag, new article count and error
        """
        try:
            doc = await self._fetch(feed, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._record_failure(feed, e)

        # Storage failures back off like fetch failures
        try:
            return self._store(feed, doc)
        except Exception as e:
            return self._record_failure(feed, e)

    async def _fetch(self, feed: "DBFeed", timeout: float | None):
        options = ParseOptions(
            timeout=timeout,
            # Platform avatar lookups cost an extra request; once is enough
            skip_icon_fetch=bool(feed.icon_url),
        )
        if timeout is None:
            return await self.feed_parser.parse_feed(feed.url, options)
        try:
            return await asyncio.wait_for(self.feed_parser.parse_feed(feed.url, options), timeout)
        except asyncio.TimeoutError as e:
            raise FeedTimeoutError(f"Timeout after {timeout:g}s") from e

    def _record_failure(self, feed: "DBFeed", error: Exception) -> RefreshResult:
        message = describe_error(error)
        if isinstance(error, FeedError):
            logger.warning(f"Refresh failed for feed {feed.id} ({feed.url}): {message}")
        else:
            logger.exception(f"Unexpected error refreshing feed {feed.id} ({feed.url})")

        now = self._clock()
        next_fetch_at = now + timedelta(minutes=feed.refresh_interval_minutes * ERROR_BACKOFF_MULTIPLIER)
        try:
            self.db.record_feed_failure(feed.id, now, next_fetch_at, message)
        except Exception:
            logger.exception(f"Could not record failure for feed {feed.id}")
            next_fetch_at = None
        return RefreshResult(success=False, error=message, next_fetch_at=next_fetch_at)

    def _resolve_type(self, feed: "DBFeed", doc) -> FeedType:
        """
        Decide the type to normalize with.

        Generic rss/atom feeds are re-classified on every fetch so that a
        feed added by URL picks up youtube/reddit/podcast handling.
        """
        try:
            stored = FeedType(feed.type)
        except ValueError:
            stored = FeedType.RSS
        if stored not in (FeedType.RSS, FeedType.ATOM):
            return stored
        detected = detect_feed_type(feed.url, doc)
        return stored if detected is FeedType.RSS else detected

    def _store(self, feed: "DBFeed", doc) -> RefreshResult:
        feed_type = self._resolve_type(feed, doc)

        new_ids = self.db.insert_articles(
            feed.id,
            (normalize_article(raw, feed_type, feed.id) for raw in doc.entries),
        )

        now = self._clock()
        next_fetch_at = now + timedelta(minutes=feed.refresh_interval_minutes)
        self.db.record_feed_success(
            feed.id,
            now,
            next_fetch_at,
            title=doc.title,
            site_url=doc.link,
            icon_url=doc.favicon,
            description=doc.description,
            feed_type=feed_type.value if feed_type.value != feed.type else None,
        )

        if new_ids:
            logger.info(f"Feed {feed.id} ({feed.url}): {len(new_ids)} new articles")
            self._run_rules(feed, new_ids)

        return RefreshResult(
            success=True,
            new_articles=len(new_ids),
            next_fetch_at=next_fetch_at,
            new_article_ids=new_ids,
        )

    def _run_rules(self, feed: "DBFeed", article_ids: list[int]):
        """Rule failures are contained here; the refresh itself succeeded."""
        if self.rule_engine is None:
            return
        try:
            self.rule_engine.evaluate_articles(article_ids, feed.user_id or self.user_id)
        except Exception:
            logger.exception(f"Rule evaluation failed for new articles of feed {feed.id}")
