"""
Background Feed Scheduler.

A control loop that wakes on a fixed tick and, when the user's global
refresh is due, refreshes every due feed in bounded concurrent batches.

Each tick goes through, in order:
1. memory guard - skip the cycle when the process is above the critical
   threshold, warn above the warning threshold
2. overlap guard - skip while the previous cycle is still running
3. schedule check - skip (without touching the feeds table) while the
   global next_refresh_at is in the future
4. batch refresh of due feeds, then persist the next global refresh
5. once a day, after a completed cycle, delete articles past the
   retention window

Failures of the cycle itself (the datastore queries) feed a circuit
breaker: after CIRCUIT_BREAKER_THRESHOLD consecutive failures the loop
backs off exponentially until a cycle succeeds. Failures of individual
feeds never count toward it; they are recorded on the feed.
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable

from .database.converters import utc_now
from .events import (
    CompleteEvent,
    FeedCompleteEvent,
    FeedErrorEvent,
    FeedRefreshingEvent,
    RefreshEvent,
    RefreshEventBus,
    RefreshStats,
    StartEvent,
)
from .feeds import describe_error
from .refresh import FeedRefresher, RefreshResult

if TYPE_CHECKING:
    from .database import Database, DBFeed

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 60.0
DEFAULT_INITIAL_DELAY_SECONDS = 5.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_FEED_TIMEOUT_SECONDS = 15.0
DEFAULT_MEMORY_WARNING_MB = 400.0
DEFAULT_MEMORY_CRITICAL_MB = 500.0
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_MAX_BACKOFF_SECONDS = 1800.0
CLEANUP_INTERVAL = timedelta(days=1)


def current_memory_mb() -> float | None:
    """Resident set size of this process in MB, or None if unavailable."""
    try:
        with open("/proc/self/statm") as f:
            resident_pages = int(f.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError, AttributeError):
        pass

    try:
        import resource
    except ImportError:
        return None
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS and kilobytes on Linux
    return peak / (1024 * 1024) if sys.platform == "darwin" else peak / 1024


class FeedAlreadyRefreshing(Exception):
    """The feed is being refreshed by another caller."""

    def __init__(self, feed_id: int):
        self.feed_id = feed_id
        super().__init__(f"Feed {feed_id} is already being refreshed")


class CycleOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED_MEMORY = "skipped_memory"
    SKIPPED_BUSY = "skipped_busy"
    SKIPPED_NOT_DUE = "skipped_not_due"
    FAILED = "failed"


@dataclass
class SchedulerState:
    """Everything the scheduler mutates. Only the scheduler writes it."""
    running: bool = False
    is_refreshing: bool = False
    consecutive_failures: int = 0
    breaker_open: bool = False
    in_flight: set[int] = field(default_factory=set)
    loop_task: asyncio.Task | None = None
    cycle_task: asyncio.Task | None = None
    last_cycle_at: datetime | None = None
    last_outcome: CycleOutcome | None = None
    last_error: str | None = None
    last_cleanup_at: datetime | None = None


class FeedScheduler:
    """Background refresh loop plus the batch runner shared with manual refreshes."""

    def __init__(
        self,
        db: "Database",
        refresher: FeedRefresher,
        events: RefreshEventBus,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        feed_timeout_seconds: float = DEFAULT_FEED_TIMEOUT_SECONDS,
        memory_warning_mb: float = DEFAULT_MEMORY_WARNING_MB,
        memory_critical_mb: float = DEFAULT_MEMORY_CRITICAL_MB,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        memory_sampler: Callable[[], float | None] = current_memory_mb,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.refresher = refresher
        self.events = events
        self.tick_seconds = tick_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.batch_size = max(1, batch_size)
        self.feed_timeout_seconds = feed_timeout_seconds
        self.memory_warning_mb = memory_warning_mb
        self.memory_critical_mb = memory_critical_mb
        self.failure_threshold = failure_threshold
        self.max_backoff_seconds = max_backoff_seconds
        self._memory_sampler = memory_sampler
        self._clock = clock
        self.state = SchedulerState()

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        if self.state.running:
            logger.debug("Background feed scheduler already running")
            return False

        self.state.running = True
        self.state.loop_task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Starting background feed scheduler (tick {self.tick_seconds:g}s, "
            f"batch size {self.batch_size})"
        )
        return True

    async def stop(self):
        """Stop the loop and cancel any cycle in progress."""
        if not self.state.running and self.state.loop_task is None:
            return

        self.state.running = False
        tasks = [t for t in (self.state.loop_task, self.state.cycle_task) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state.loop_task = None
        self.state.cycle_task = None
        logger.info("Stopped background feed scheduler")

    async def _run_loop(self):
        """Fire a tick every interval; a slow cycle does not delay the cadence."""
        loop = asyncio.get_running_loop()
        await asyncio.sleep(self.initial_delay_seconds)

        while self.state.running:
            started = loop.time()
            cycle = self.state.cycle_task
            if cycle is not None and not cycle.done():
                # Logs and skips; the running cycle keeps its task
                await self._guarded_tick()
            else:
                cycle = asyncio.create_task(self._guarded_tick())
                self.state.cycle_task = cycle
            # Wait for the cycle up to one tick so the breaker state is current
            await asyncio.wait({cycle}, timeout=self.tick_seconds)

            remaining = self.next_delay() - (loop.time() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)

    async def _guarded_tick(self):
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unexpected error in background refresh cycle")

    def next_delay(self) -> float:
        """Seconds until the next tick: the base tick, or backoff while the breaker is open."""
        if not self.state.breaker_open:
            return self.tick_seconds
        exponent = self.state.consecutive_failures - self.failure_threshold + 1
        return min(self.tick_seconds * (2 ** exponent), self.max_backoff_seconds)

    # ─────────────────────────────────────────────────────────────
    # One tick
    # ─────────────────────────────────────────────────────────────

    async def tick(self) -> CycleOutcome:
        """Run one scheduler tick and return what it did."""
        if not self._check_memory():
            return self._finish(CycleOutcome.SKIPPED_MEMORY)

        if self.state.is_refreshing:
            logger.info("Previous cycle still running, skipping this tick")
            return self._finish(CycleOutcome.SKIPPED_BUSY)

        self.state.is_refreshing = True
        try:
            return self._finish(await self._run_cycle())
        finally:
            self.state.is_refreshing = False

    def _check_memory(self) -> bool:
        """False when the process is too large to start a cycle."""
        try:
            usage = self._memory_sampler()
        except Exception:
            logger.exception("Memory sampling failed")
            return True
        if usage is None:
            return True

        if usage >= self.memory_critical_mb:
            logger.critical(
                f"CRITICAL: Memory usage {usage:.0f}MB exceeds {self.memory_critical_mb:.0f}MB, "
                f"skipping refresh cycle"
            )
            return False
        if usage >= self.memory_warning_mb:
            logger.warning(
                f"WARNING: Memory usage {usage:.0f}MB exceeds {self.memory_warning_mb:.0f}MB"
            )
        return True

    async def _run_cycle(self) -> CycleOutcome:
        now = self._clock()

        try:
            next_refresh_at = self.db.get_global_next_refresh_at()
        except Exception as e:
            return self._cycle_failed(e)

        if next_refresh_at is not None and next_refresh_at > now:
            logger.debug(f"Next global refresh at {next_refresh_at.isoformat()}, nothing to do")
            return CycleOutcome.SKIPPED_NOT_DUE

        try:
            feeds = self.db.get_due_feeds(now)
        except Exception as e:
            return self._cycle_failed(e)

        if feeds:
            logger.info(f"Background refresh of {len(feeds)} due feeds")
            stats = await self.refresh_feeds(feeds, timeout=self.feed_timeout_seconds)
            logger.info(f"Background refresh complete: {stats.success} succeeded, {stats.errors} failed")

        try:
            self.persist_global_schedule(now)
        except Exception as e:
            return self._cycle_failed(e)

        self._cycle_succeeded()
        self.purge_old_articles(now)
        return CycleOutcome.COMPLETED

    def _cycle_failed(self, error: Exception) -> CycleOutcome:
        self.state.consecutive_failures += 1
        self.state.last_error = str(error) or type(error).__name__
        logger.error(
            f"Refresh cycle failed ({self.state.consecutive_failures} consecutive): "
            f"{self.state.last_error}"
        )
        if not self.state.breaker_open and self.state.consecutive_failures >= self.failure_threshold:
            self.state.breaker_open = True
            logger.error(
                f"Circuit breaker activated after {self.state.consecutive_failures} consecutive "
                f"failures, backing off to {self.next_delay():g}s"
            )
        return CycleOutcome.FAILED

    def _cycle_succeeded(self):
        if self.state.breaker_open:
            logger.info("Circuit breaker reset after successful refresh cycle")
        self.state.breaker_open = False
        self.state.consecutive_failures = 0
        self.state.last_error = None

    def _finish(self, outcome: CycleOutcome) -> CycleOutcome:
        self.state.last_cycle_at = self._clock()
        self.state.last_outcome = outcome
        return outcome

    def purge_old_articles(self, now: datetime):
        """Run the retention sweep at most once per CLEANUP_INTERVAL."""
        last = self.state.last_cleanup_at
        if last is not None and now - last < CLEANUP_INTERVAL:
            return
        self.state.last_cleanup_at = now
        try:
            result = self.db.purge_old_articles(now)
        except Exception:
            logger.exception("Article cleanup failed")
            return
        logger.info(
            f"Cleaned up {result.total} old articles ({result.read_deleted} read, "
            f"{result.expired_deleted} past the hard limit)"
        )

    def persist_global_schedule(self, refreshed_at: datetime):
        """Record a completed refresh and schedule the next one from the user's interval."""
        interval = self.db.get_refresh_interval_minutes()
        self.db.set_global_schedule(refreshed_at, refreshed_at + timedelta(minutes=interval))

    # ─────────────────────────────────────────────────────────────
    # Refreshing feeds
    # ─────────────────────────────────────────────────────────────

    async def refresh_feed(self, feed: "DBFeed", timeout: float | None = None) -> RefreshResult:
        """
        Refresh one feed unless another caller is already refreshing it.

        Raises:
            FeedAlreadyRefreshing: If the feed is in flight
        """
        if feed.id in self.state.in_flight:
            raise FeedAlreadyRefreshing(feed.id)

        self.state.in_flight.add(feed.id)
        try:
            return await self.refresher.refresh(feed, timeout=timeout)
        finally:
            self.state.in_flight.discard(feed.id)

    async def refresh_feeds(
        self,
        feeds: Iterable["DBFeed"],
        timeout: float | None = None,
        emit: Callable[[RefreshEvent], None] | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> RefreshStats:
        """
        Refresh feeds in sequential batches of concurrent refreshes.

        Progress events go to emit (the event bus by default). The
        cancellation check runs before each batch; feeds already refreshed
        keep their committed state.
        """
        emit = emit or self.events.publish

        runnable: list["DBFeed"] = []
        seen: set[int] = set()
        for feed in feeds:
            if feed.id in seen:
                continue
            seen.add(feed.id)
            if feed.id in self.state.in_flight:
                logger.info(f"Feed {feed.id} is already refreshing, leaving it out of this run")
                continue
            runnable.append(feed)

        stats = RefreshStats()
        emit(StartEvent(total_feeds=len(runnable)))

        for start in range(0, len(runnable), self.batch_size):
            if is_cancelled is not None and is_cancelled():
                logger.info(f"Refresh cancelled after {start} of {len(runnable)} feeds")
                break
            batch = runnable[start:start + self.batch_size]
            await asyncio.gather(*(
                self._refresh_in_batch(feed, timeout, emit, stats) for feed in batch
            ))

        emit(CompleteEvent(stats=stats))
        return stats

    async def _refresh_in_batch(
        self,
        feed: "DBFeed",
        timeout: float | None,
        emit: Callable[[RefreshEvent], None],
        stats: RefreshStats,
    ):
        emit(FeedRefreshingEvent(id=feed.id, title=feed.title))
        try:
            result = await self.refresh_feed(feed, timeout=timeout)
        except FeedAlreadyRefreshing:
            result = RefreshResult(success=False, error="Refresh already in progress")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error refreshing feed {feed.id}")
            result = RefreshResult(success=False, error=describe_error(e))

        if result.success:
            stats.record_success()
            emit(FeedCompleteEvent(
                id=feed.id,
                title=feed.title,
                new_articles=result.new_articles,
                next_fetch_at=result.next_fetch_at,
            ))
        else:
            error = result.error or "Unknown error"
            stats.record_failure(feed.id, feed.title, error)
            emit(FeedErrorEvent(id=feed.id, title=feed.title, error=error))

    def snapshot(self) -> dict:
        """Current scheduler state for status endpoints."""
        return {
            "running": self.state.running,
            "is_refreshing": self.state.is_refreshing,
            "consecutive_failures": self.state.consecutive_failures,
            "circuit_breaker_open": self.state.breaker_open,
            "next_delay_seconds": self.next_delay(),
            "feeds_in_flight": sorted(self.state.in_flight),
            "last_cycle_at": self.state.last_cycle_at.isoformat() if self.state.last_cycle_at else None,
            "last_outcome": self.state.last_outcome.value if self.state.last_outcome else None,
            "last_error": self.state.last_error,
            "last_cleanup_at": self.state.last_cleanup_at.isoformat() if self.state.last_cleanup_at else None,
        }
