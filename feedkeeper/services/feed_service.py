"""
Feed service: business logic for feed management operations.

Handles subscription, per-feed settings, manual and bulk refresh, and
OPML import/export.
"""

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Callable

from fastapi import BackgroundTasks, HTTPException

from ..config import DEFAULT_USER_ID, config
from ..database import Database
from ..database.converters import utc_now
from ..database.models import DBArticle, DBFeed
from ..events import (
    CompleteEvent,
    FeedCreatedEvent,
    FolderCreatedEvent,
    ImportStartEvent,
    ImportStats,
    RefreshEvent,
    RefreshStats,
    StartEvent,
)
from ..exceptions import RefreshFailedError, require_feed
from ..feeds import FeedError, detect_feed_type
from ..opml import OPMLDocument, OPMLFeed, generate_opml, parse_opml
from ..refresh import RefreshResult
from ..scheduler import FeedAlreadyRefreshing

if TYPE_CHECKING:
    from ..feeds import FeedParser
    from ..scheduler import FeedScheduler

logger = logging.getLogger(__name__)

Emit = Callable[[RefreshEvent], None]
IsCancelled = Callable[[], bool]


class FeedService:
    """Service for feed-related business logic."""

    def __init__(
        self,
        db: Database,
        feed_parser: "FeedParser | None" = None,
        scheduler: "FeedScheduler | None" = None,
    ):
        self.db = db
        self.feed_parser = feed_parser
        self.scheduler = scheduler

    def _require_parser(self) -> "FeedParser":
        if not self.feed_parser:
            raise HTTPException(status_code=500, detail="Feed parser not initialized")
        return self.feed_parser

    def _require_scheduler(self) -> "FeedScheduler":
        if not self.scheduler:
            raise HTTPException(status_code=500, detail="Scheduler not initialized")
        return self.scheduler

    # ─────────────────────────────────────────────────────────────
    # Feed Management
    # ─────────────────────────────────────────────────────────────

    def list_feeds(self) -> list[DBFeed]:
        """List all subscribed (not deleted) feeds."""
        return self.db.get_feeds(DEFAULT_USER_ID)

    def get_feed(self, feed_id: int) -> DBFeed:
        return require_feed(self.db.get_feed(feed_id))

    def list_articles(self, feed_id: int, limit: int = 50, offset: int = 0) -> list[DBArticle]:
        require_feed(self.db.get_feed(feed_id))
        return self.db.get_feed_articles(feed_id, limit, offset)

    def folder_names(self) -> dict[int, str]:
        return {f.id: f.name for f in self.db.get_folders(DEFAULT_USER_ID)}

    def _folder_id(self, folder: str | None) -> int | None:
        if not folder:
            return None
        db_folder, _ = self.db.get_or_create_folder(folder.strip(), DEFAULT_USER_ID)
        return db_folder.id

    async def subscribe(
        self,
        url: str,
        background_tasks: BackgroundTasks,
        title: str | None = None,
        folder: str | None = None,
    ) -> DBFeed:
        """
        Subscribe to a new feed.

        The URL is validated by fetching it once; the first real refresh
        (which inserts articles and runs rules) happens in the background.
        A previously unsubscribed feed is restored instead of duplicated.

        Raises:
            HTTPException: 400 if the URL is not a reachable feed, 409 if
                already subscribed
        """
        feed_parser = self._require_parser()

        url = url.strip()
        existing = self.db.get_feed_by_url(url, DEFAULT_USER_ID)
        if existing and existing.deleted_at is None:
            raise HTTPException(status_code=409, detail="Already subscribed to this feed")

        try:
            doc = await feed_parser.parse_feed(url)
        except FeedError as e:
            raise HTTPException(status_code=400, detail=f"Invalid feed URL: {e}")

        folder_id = self._folder_id(folder)
        if existing:
            self.db.restore_feed(existing.id, folder_id)
            if title:
                self.db.update_feed(existing.id, title=title)
            feed_id = existing.id
            logger.info(f"Restored feed {feed_id} ({url})")
        else:
            feed_id = self.db.add_feed(
                url,
                title or doc.title or url,
                feed_type=detect_feed_type(url, doc).value,
                folder_id=folder_id,
                refresh_interval_minutes=config.DEFAULT_FEED_INTERVAL_MINUTES,
                user_id=DEFAULT_USER_ID,
                site_url=doc.link,
                icon_url=doc.favicon,
                description=doc.description,
            )
            logger.info(f"Subscribed to feed {feed_id} ({url})")

        if self.scheduler:
            background_tasks.add_task(self._initial_refresh, feed_id)

        db_feed = self.db.get_feed(feed_id)
        if not db_feed:
            raise HTTPException(status_code=500, detail="Failed to retrieve feed")
        return db_feed

    async def _initial_refresh(self, feed_id: int):
        feed = self.db.get_feed(feed_id)
        if feed is None or self.scheduler is None:
            return
        try:
            await self.scheduler.refresh_feed(feed, timeout=config.MANUAL_FEED_TIMEOUT_SECONDS)
        except FeedAlreadyRefreshing:
            logger.debug(f"Initial refresh of feed {feed_id} skipped, already refreshing")

    def update_feed(
        self,
        feed_id: int,
        title: str | None = None,
        folder: str | None = None,
        refresh_interval_minutes: int | None = None,
    ) -> DBFeed:
        """
        Update a feed's title, folder or refresh interval.

        folder: empty string clears the folder, None keeps it. A new
        interval re-derives next_fetch_at from last_fetched_at; a feed that
        was never fetched stays due immediately.
        """
        feed = require_feed(self.db.get_feed(feed_id))

        clear_folder = folder == ""
        self.db.update_feed(
            feed_id,
            title=title,
            folder_id=None if clear_folder else self._folder_id(folder),
            clear_folder=clear_folder,
        )

        if refresh_interval_minutes is not None and refresh_interval_minutes != feed.refresh_interval_minutes:
            next_fetch_at = (
                feed.last_fetched_at + timedelta(minutes=refresh_interval_minutes)
                if feed.last_fetched_at else None
            )
            self.db.set_feed_refresh_interval(feed_id, refresh_interval_minutes, next_fetch_at)

        return require_feed(self.db.get_feed(feed_id))

    def pause_feed(self, feed_id: int) -> DBFeed:
        feed = require_feed(self.db.get_feed(feed_id))
        if feed.paused_at is None:
            self.db.set_feed_paused(feed_id, utc_now())
        return require_feed(self.db.get_feed(feed_id))

    def resume_feed(self, feed_id: int) -> DBFeed:
        require_feed(self.db.get_feed(feed_id))
        self.db.set_feed_paused(feed_id, None)
        return require_feed(self.db.get_feed(feed_id))

    def unsubscribe(self, feed_id: int) -> None:
        """Soft delete a feed. Its articles are kept."""
        require_feed(self.db.get_feed(feed_id))
        self.db.delete_feed(feed_id, utc_now())

    # ─────────────────────────────────────────────────────────────
    # Refresh
    # ─────────────────────────────────────────────────────────────

    async def refresh_feed(self, feed_id: int) -> RefreshResult:
        """
        Refresh one feed now, with the manual timeout.

        Raises:
            HTTPException: 404 if feed not found, 409 if it is already refreshing
            RefreshFailedError: If the refresh ran and failed
        """
        feed = require_feed(self.db.get_feed(feed_id))
        scheduler = self._require_scheduler()

        try:
            result = await scheduler.refresh_feed(feed, timeout=config.MANUAL_FEED_TIMEOUT_SECONDS)
        except FeedAlreadyRefreshing as e:
            raise HTTPException(status_code=409, detail=str(e))

        if not result.success:
            raise RefreshFailedError(result.error or "Unknown error")
        return result

    def feeds_to_refresh(self, feed_ids: list[int] | None) -> list[DBFeed]:
        """
        Resolve a bulk refresh request to eligible feeds.

        Raises:
            HTTPException: 400 if nothing is eligible
        """
        feeds = self.db.get_eligible_feeds(feed_ids or None)
        if not feeds:
            raise HTTPException(status_code=400, detail="No feeds to refresh")
        return feeds

    async def refresh_many(
        self,
        feeds: list[DBFeed],
        emit: Emit,
        is_cancelled: IsCancelled,
        refresh_all: bool = False,
    ) -> RefreshStats:
        """
        Bulk refresh with progress events.

        A refresh of every feed that ran to completion also counts as the
        global refresh, so the background scheduler waits a full interval.
        """
        scheduler = self._require_scheduler()
        started_at = utc_now()
        stats = await scheduler.refresh_feeds(
            feeds,
            timeout=config.BACKGROUND_FEED_TIMEOUT_SECONDS,
            emit=emit,
            is_cancelled=is_cancelled,
        )
        if refresh_all and not is_cancelled():
            scheduler.persist_global_schedule(started_at)
        return stats

    # ─────────────────────────────────────────────────────────────
    # OPML Import/Export
    # ─────────────────────────────────────────────────────────────

    def parse_import(self, opml_content: str) -> OPMLDocument:
        """
        Raises:
            HTTPException: 400 if the content is not OPML
        """
        try:
            return parse_opml(opml_content)
        except ValueError as e:
            raise HTTPException(
                status_code=400,
                detail={"error": "Invalid OPML format", "details": str(e)},
            )

    async def _import_single_feed(
        self,
        opml_feed: OPMLFeed,
        folder_ids: dict[str, int],
        emit: Emit,
        stats: ImportStats,
    ) -> DBFeed | None:
        """Create one feed from OPML. Returns the feed if it should be refreshed."""
        feed_parser = self._require_parser()
        title = opml_feed.title or opml_feed.url
        existing = self.db.get_feed_by_url(opml_feed.url, DEFAULT_USER_ID)

        if existing and existing.deleted_at is None:
            stats.skipped += 1
            emit(FeedCreatedEvent(title=title, id=existing.id, status="duplicate", folder=opml_feed.folder))
            return None

        folder_id = folder_ids.get(opml_feed.folder) if opml_feed.folder else None
        try:
            url = await feed_parser.validate_feed_url(opml_feed.url)
            if existing:
                self.db.restore_feed(existing.id, folder_id)
                feed_id = existing.id
            else:
                feed_id = self.db.add_feed(
                    url,
                    title,
                    feed_type=detect_feed_type(url).value,
                    folder_id=folder_id,
                    refresh_interval_minutes=config.DEFAULT_FEED_INTERVAL_MINUTES,
                    user_id=DEFAULT_USER_ID,
                    site_url=opml_feed.site_url,
                )
        except Exception as e:
            logger.warning(f"OPML import of {opml_feed.url} failed: {e}")
            stats.record_failure(0, title, str(e) or type(e).__name__)
            return None

        emit(FeedCreatedEvent(title=title, id=feed_id, status="created", folder=opml_feed.folder))
        return self.db.get_feed(feed_id)

    async def import_opml(
        self,
        doc: OPMLDocument,
        emit: Emit,
        is_cancelled: IsCancelled,
    ) -> ImportStats:
        """
        Import an OPML document with progress events.

        Folders first, then feeds, then a refresh of every created feed.
        The import ends with one complete event carrying the combined stats.
        """
        scheduler = self._require_scheduler()
        stats = ImportStats()
        emit(ImportStartEvent(total_folders=len(doc.folders), total_feeds=len(doc.feeds)))

        folder_ids: dict[str, int] = {}
        for name in doc.folders:
            folder, created = self.db.get_or_create_folder(name, DEFAULT_USER_ID)
            folder_ids[name] = folder.id
            if created:
                emit(FolderCreatedEvent(name=name, id=folder.id))

        created_feeds = []
        for opml_feed in doc.feeds:
            feed = await self._import_single_feed(opml_feed, folder_ids, emit, stats)
            if feed is not None:
                created_feeds.append(feed)

        if created_feeds:
            def forward(event: RefreshEvent):
                # The import has its own start and complete events
                if not isinstance(event, (StartEvent, CompleteEvent)):
                    emit(event)

            refresh_stats = await scheduler.refresh_feeds(
                created_feeds,
                timeout=config.MANUAL_FEED_TIMEOUT_SECONDS,
                emit=forward,
                is_cancelled=is_cancelled,
            )
            stats.success += refresh_stats.success
            stats.errors += refresh_stats.errors
            stats.failed_feeds.extend(refresh_stats.failed_feeds)

        logger.info(
            f"OPML import: {len(created_feeds)} created, {stats.skipped} skipped, {stats.errors} errors"
        )
        emit(CompleteEvent(stats=stats))
        return stats

    def export_opml(self, title: str = "Feedkeeper Subscriptions") -> dict:
        """
        Export all feeds as OPML.

        Returns:
            Dict with opml content and feed_count
        """
        feeds = self.db.get_feeds(DEFAULT_USER_ID)
        folders = self.folder_names()

        opml_feeds = [
            OPMLFeed(
                url=f.url,
                title=f.title,
                folder=folders.get(f.folder_id) if f.folder_id else None,
                site_url=f.site_url,
                feed_type=f.type,
            )
            for f in feeds
        ]

        return {
            "opml": generate_opml(opml_feeds, title=title),
            "feed_count": len(feeds),
        }
