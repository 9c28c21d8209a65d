"""
Feedkeeper API Server

FastAPI application providing endpoints for:
- Feed management (subscribe, pause, refresh, OPML)
- Live refresh progress (server-sent events)
- Automation rules
- Rule notifications
- Settings and scheduler status

On startup the background feed scheduler is started unless
SCHEDULER_ENABLED is false.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import config, state
from .database import Database
from .events import RefreshEventBus
from .feeds import FeedParser
from .notification_service import DatabaseNotificationChannel
from .refresh import FeedRefresher
from .routes import (
    feeds_router,
    misc_public_router,
    misc_router,
    notifications_router,
    rules_router,
    stream_router,
)
from .rules_engine import RuleEngine
from .scheduler import FeedScheduler

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_scheduler(db: Database, feed_parser: FeedParser) -> FeedScheduler:
    """Wire the refresh pipeline, rule engine and scheduler onto shared state."""
    state.rule_engine = RuleEngine(db, notifier=DatabaseNotificationChannel(db))
    state.refresher = FeedRefresher(db, feed_parser, rule_engine=state.rule_engine)
    state.events = RefreshEventBus()
    return FeedScheduler(
        db,
        state.refresher,
        state.events,
        tick_seconds=config.SCHEDULER_TICK_SECONDS,
        initial_delay_seconds=config.SCHEDULER_INITIAL_DELAY_SECONDS,
        batch_size=config.REFRESH_BATCH_SIZE,
        feed_timeout_seconds=config.BACKGROUND_FEED_TIMEOUT_SECONDS,
        memory_warning_mb=config.MEMORY_WARNING_MB,
        memory_critical_mb=config.MEMORY_CRITICAL_MB,
        failure_threshold=config.CIRCUIT_BREAKER_THRESHOLD,
        max_backoff_seconds=config.CIRCUIT_BREAKER_MAX_BACKOFF_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup application resources."""
    # Startup - skip if already initialized (e.g., by tests)
    if state.db is None:
        configure_logging()
        state.db = Database(config.DB_PATH)
        state.feed_parser = FeedParser(
            timeout=config.FETCH_TIMEOUT_SECONDS,
            resolve_dns=config.SSRF_RESOLVE_DNS,
        )
        state.scheduler = build_scheduler(state.db, state.feed_parser)

        if config.SCHEDULER_ENABLED:
            await state.scheduler.start()
        else:
            logger.info("Background feed scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    # Shutdown
    if state.scheduler:
        await state.scheduler.stop()


app = FastAPI(
    title="Feedkeeper API",
    version="1.0.0",
    lifespan=lifespan
)

# Include routers; the streaming routes go before /feeds/{feed_id}
app.include_router(misc_public_router)
app.include_router(misc_router)
app.include_router(stream_router)
app.include_router(feeds_router)
app.include_router(rules_router)
app.include_router(notifications_router)
