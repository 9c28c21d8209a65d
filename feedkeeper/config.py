"""
Configuration and application state management.
"""

import os
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import load_dotenv
from fastapi import HTTPException

if TYPE_CHECKING:
    from .database import Database
    from .events import RefreshEventBus
    from .feeds import FeedParser
    from .refresh import FeedRefresher
    from .rules_engine import RuleEngine
    from .scheduler import FeedScheduler

# Load environment variables
load_dotenv()

# Single user app - every per-user record belongs to this id
DEFAULT_USER_ID = 1


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


class Config:
    """Application configuration from environment."""
    DB_PATH: Path = Path(os.getenv("DB_PATH", "./data/feeds.db"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Empty disables authentication (local development)
    AUTH_API_KEY: str = os.getenv("AUTH_API_KEY", "")

    # Background scheduler
    SCHEDULER_ENABLED: bool = _parse_bool(os.getenv("SCHEDULER_ENABLED"), default=True)
    SCHEDULER_TICK_SECONDS: float = float(os.getenv("SCHEDULER_TICK_SECONDS", "60"))
    SCHEDULER_INITIAL_DELAY_SECONDS: float = float(os.getenv("SCHEDULER_INITIAL_DELAY_SECONDS", "5"))
    REFRESH_BATCH_SIZE: int = int(os.getenv("REFRESH_BATCH_SIZE", "10"))
    CIRCUIT_BREAKER_THRESHOLD: int = int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "3"))
    CIRCUIT_BREAKER_MAX_BACKOFF_SECONDS: float = float(
        os.getenv("CIRCUIT_BREAKER_MAX_BACKOFF_SECONDS", "1800")
    )

    # Memory guard thresholds (resident set size, MB)
    MEMORY_WARNING_MB: float = float(os.getenv("MEMORY_WARNING_MB", "400"))
    MEMORY_CRITICAL_MB: float = float(os.getenv("MEMORY_CRITICAL_MB", "500"))

    # Per-feed timeouts: bulk refreshes fail fast, manual ones get more room
    BACKGROUND_FEED_TIMEOUT_SECONDS: float = float(os.getenv("BACKGROUND_FEED_TIMEOUT_SECONDS", "15"))
    MANUAL_FEED_TIMEOUT_SECONDS: float = float(os.getenv("MANUAL_FEED_TIMEOUT_SECONDS", "30"))

    # Fetcher
    FETCH_TIMEOUT_SECONDS: float = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))
    SSRF_RESOLVE_DNS: bool = _parse_bool(os.getenv("SSRF_RESOLVE_DNS"), default=True)

    # Event stream
    SSE_KEEPALIVE_SECONDS: float = float(os.getenv("SSE_KEEPALIVE_SECONDS", "15"))

    # Defaults for new feeds and the global schedule
    DEFAULT_FEED_INTERVAL_MINUTES: int = int(os.getenv("DEFAULT_FEED_INTERVAL_MINUTES", "30"))
    DEFAULT_REFRESH_INTERVAL_MINUTES: int = int(os.getenv("DEFAULT_REFRESH_INTERVAL_MINUTES", "15"))


config = Config()


class AppState:
    """Shared application state."""
    db: "Database | None" = None
    feed_parser: "FeedParser | None" = None
    refresher: "FeedRefresher | None" = None
    rule_engine: "RuleEngine | None" = None
    events: "RefreshEventBus | None" = None
    scheduler: "FeedScheduler | None" = None


state = AppState()


def get_db() -> "Database":
    """Dependency to get database instance."""
    if not state.db:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return state.db
