"""
Tests for the background feed scheduler.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from feedkeeper.database import DBFeed
from feedkeeper.events import (
    CompleteEvent,
    FeedCompleteEvent,
    FeedErrorEvent,
    RefreshEventBus,
    StartEvent,
)
from feedkeeper.refresh import FeedRefresher, RefreshResult
from feedkeeper.scheduler import CycleOutcome, FeedAlreadyRefreshing, FeedScheduler

from .fakes import FEED_URL, RSS_FEED, FakeFeedParser

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def feed(feed_id: int, title: str | None = None) -> DBFeed:
    return DBFeed(
        id=feed_id,
        url=f"https://example.com/{feed_id}.xml",
        title=title or f"Feed {feed_id}",
        type="rss",
        refresh_interval_minutes=30,
    )


class RecordingRefresher:
    """Refresher double that records calls and peak concurrency."""

    def __init__(self, delay: float = 0.01, fail: set[int] | None = None):
        self.delay = delay
        self.fail = fail or set()
        self.calls: list[int] = []
        self.timeouts: list[float | None] = []
        self.active = 0
        self.peak = 0

    async def refresh(self, feed, timeout=None) -> RefreshResult:
        self.calls.append(feed.id)
        self.timeouts.append(timeout)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if feed.id in self.fail:
            raise RuntimeError("boom")
        return RefreshResult(success=True, new_articles=1, next_fetch_at=NOW)


def make_scheduler(db=None, refresher=None, **kwargs) -> FeedScheduler:
    if db is None:
        db = MagicMock()
        db.get_global_next_refresh_at.return_value = None
        db.get_due_feeds.return_value = []
        db.get_refresh_interval_minutes.return_value = 30
    kwargs.setdefault("memory_sampler", lambda: 100.0)
    kwargs.setdefault("clock", lambda: NOW)
    return FeedScheduler(db, refresher or RecordingRefresher(), RefreshEventBus(), **kwargs)


class TestTickGuards:
    """Tests for the checks that run before a cycle."""

    @pytest.mark.asyncio
    async def test_critical_memory_skips_cycle(self, caplog):
        scheduler = make_scheduler(memory_sampler=lambda: 600.0)

        outcome = await scheduler.tick()

        assert outcome is CycleOutcome.SKIPPED_MEMORY
        assert "CRITICAL: Memory usage 600MB" in caplog.text
        scheduler.db.get_global_next_refresh_at.assert_not_called()

    @pytest.mark.asyncio
    async def test_high_memory_warns_and_continues(self, caplog):
        scheduler = make_scheduler(memory_sampler=lambda: 450.0)

        outcome = await scheduler.tick()

        assert outcome is CycleOutcome.COMPLETED
        assert "WARNING: Memory usage 450MB" in caplog.text

    @pytest.mark.asyncio
    async def test_unavailable_memory_sample_ignored(self):
        scheduler = make_scheduler(memory_sampler=lambda: None)
        assert await scheduler.tick() is CycleOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_busy_skips(self, caplog):
        caplog.set_level(logging.INFO)
        scheduler = make_scheduler()
        scheduler.state.is_refreshing = True

        outcome = await scheduler.tick()

        assert outcome is CycleOutcome.SKIPPED_BUSY
        assert "Previous cycle still running" in caplog.text
        assert scheduler.state.is_refreshing is True

    @pytest.mark.asyncio
    async def test_not_due_skips_without_loading_feeds(self):
        scheduler = make_scheduler()
        scheduler.db.get_global_next_refresh_at.return_value = NOW + timedelta(minutes=5)

        outcome = await scheduler.tick()

        assert outcome is CycleOutcome.SKIPPED_NOT_DUE
        scheduler.db.get_due_feeds.assert_not_called()
        scheduler.db.set_global_schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_completed_cycle_persists_schedule(self):
        scheduler = make_scheduler()

        outcome = await scheduler.tick()

        assert outcome is CycleOutcome.COMPLETED
        scheduler.db.get_due_feeds.assert_called_once_with(NOW)
        scheduler.db.set_global_schedule.assert_called_once_with(NOW, NOW + timedelta(minutes=30))
        assert scheduler.state.last_outcome is CycleOutcome.COMPLETED
        assert scheduler.state.is_refreshing is False


class TestCircuitBreaker:
    """Tests for cycle failure tracking and backoff."""

    @pytest.mark.asyncio
    async def test_activates_after_threshold(self, caplog):
        scheduler = make_scheduler(tick_seconds=60)
        scheduler.db.get_global_next_refresh_at.side_effect = RuntimeError("database is locked")

        for _ in range(2):
            assert await scheduler.tick() is CycleOutcome.FAILED
        assert scheduler.state.breaker_open is False
        assert scheduler.next_delay() == 60

        await scheduler.tick()

        assert scheduler.state.consecutive_failures == 3
        assert scheduler.state.breaker_open is True
        assert scheduler.state.last_error == "database is locked"
        assert "Circuit breaker activated" in caplog.text

    @pytest.mark.asyncio
    async def test_backoff_grows_and_is_capped(self):
        scheduler = make_scheduler(tick_seconds=60, max_backoff_seconds=1800)
        scheduler.db.get_global_next_refresh_at.side_effect = RuntimeError("down")

        delays = []
        for _ in range(8):
            await scheduler.tick()
            delays.append(scheduler.next_delay())

        assert delays == [60, 60, 120, 240, 480, 960, 1800, 1800]

    @pytest.mark.asyncio
    async def test_resets_after_success(self, caplog):
        caplog.set_level(logging.INFO)
        scheduler = make_scheduler(tick_seconds=60)
        scheduler.db.get_global_next_refresh_at.side_effect = RuntimeError("down")
        for _ in range(3):
            await scheduler.tick()

        scheduler.db.get_global_next_refresh_at.side_effect = None
        outcome = await scheduler.tick()

        assert outcome is CycleOutcome.COMPLETED
        assert scheduler.state.breaker_open is False
        assert scheduler.state.consecutive_failures == 0
        assert scheduler.next_delay() == 60
        assert "Circuit breaker reset" in caplog.text

    @pytest.mark.asyncio
    async def test_feed_failures_do_not_count(self):
        refresher = RecordingRefresher(fail={1, 2})
        scheduler = make_scheduler(refresher=refresher)
        scheduler.db.get_due_feeds.return_value = [feed(1), feed(2)]

        for _ in range(3):
            assert await scheduler.tick() is CycleOutcome.COMPLETED

        assert scheduler.state.consecutive_failures == 0
        assert scheduler.state.breaker_open is False


class TestRefreshFeeds:
    """Tests for the batch runner."""

    @pytest.mark.asyncio
    async def test_batches_bound_concurrency(self):
        refresher = RecordingRefresher()
        scheduler = make_scheduler(refresher=refresher, batch_size=3)

        stats = await scheduler.refresh_feeds([feed(i) for i in range(1, 8)], emit=lambda e: None)

        assert sorted(refresher.calls) == list(range(1, 8))
        assert refresher.peak == 3
        assert stats.success == 7
        assert stats.errors == 0

    @pytest.mark.asyncio
    async def test_events_in_order(self):
        scheduler = make_scheduler(refresher=RecordingRefresher(fail={2}))
        events = []

        stats = await scheduler.refresh_feeds([feed(1), feed(2)], emit=events.append)

        assert isinstance(events[0], StartEvent)
        assert events[0].total_feeds == 2
        assert isinstance(events[-1], CompleteEvent)
        assert events[-1].stats is stats
        completes = [e for e in events if isinstance(e, FeedCompleteEvent)]
        errors = [e for e in events if isinstance(e, FeedErrorEvent)]
        assert [e.id for e in completes] == [1]
        assert [e.id for e in errors] == [2]
        assert errors[0].error == "[unknown] boom"
        assert stats.failed_feeds[0].title == "Feed 2"

    @pytest.mark.asyncio
    async def test_events_published_to_bus_by_default(self):
        scheduler = make_scheduler()
        received = []
        scheduler.events.subscribe(received.append)

        await scheduler.refresh_feeds([feed(1)])

        assert [e.type for e in received] == ["start", "feed_refreshing", "feed_complete", "complete"]

    @pytest.mark.asyncio
    async def test_cancellation_checked_before_each_batch(self):
        refresher = RecordingRefresher()
        scheduler = make_scheduler(refresher=refresher, batch_size=2)
        events = []

        stats = await scheduler.refresh_feeds(
            [feed(i) for i in range(1, 6)],
            emit=events.append,
            is_cancelled=lambda: len(refresher.calls) >= 2,
        )

        assert refresher.calls == [1, 2]
        assert stats.success == 2
        assert isinstance(events[-1], CompleteEvent)

    @pytest.mark.asyncio
    async def test_duplicates_refreshed_once(self):
        refresher = RecordingRefresher()
        scheduler = make_scheduler(refresher=refresher)

        await scheduler.refresh_feeds([feed(1), feed(1), feed(2)], emit=lambda e: None)

        assert sorted(refresher.calls) == [1, 2]

    @pytest.mark.asyncio
    async def test_in_flight_feed_left_out(self):
        refresher = RecordingRefresher()
        scheduler = make_scheduler(refresher=refresher)
        scheduler.state.in_flight.add(1)
        events = []

        await scheduler.refresh_feeds([feed(1), feed(2)], emit=events.append)

        assert refresher.calls == [2]
        assert events[0].total_feeds == 1

    @pytest.mark.asyncio
    async def test_refresh_feed_rejects_in_flight(self):
        scheduler = make_scheduler()
        scheduler.state.in_flight.add(1)

        with pytest.raises(FeedAlreadyRefreshing):
            await scheduler.refresh_feed(feed(1))

    @pytest.mark.asyncio
    async def test_concurrent_refresh_of_same_feed(self):
        refresher = RecordingRefresher(delay=0.05)
        scheduler = make_scheduler(refresher=refresher)

        results = await asyncio.gather(
            scheduler.refresh_feed(feed(1)),
            scheduler.refresh_feed(feed(1)),
            return_exceptions=True,
        )

        assert sum(isinstance(r, FeedAlreadyRefreshing) for r in results) == 1
        assert refresher.calls == [1]
        assert scheduler.state.in_flight == set()

    @pytest.mark.asyncio
    async def test_cycle_uses_background_timeout(self):
        refresher = RecordingRefresher()
        scheduler = make_scheduler(refresher=refresher, feed_timeout_seconds=15)
        scheduler.db.get_due_feeds.return_value = [feed(1)]

        await scheduler.tick()

        assert refresher.timeouts == [15]


class TestSchedulerWithDatabase:
    """End-to-end cycle against a real database."""

    @pytest.mark.asyncio
    async def test_cycle_refreshes_due_feeds(self, test_db):
        ok_id = test_db.add_feed(FEED_URL, "Example Feed")
        bad_id = test_db.add_feed("https://example.com/missing.xml", "Missing")
        paused_id = test_db.add_feed("https://example.com/paused.xml", "Paused")
        test_db.set_feed_paused(paused_id, NOW)

        parser = FakeFeedParser({FEED_URL: RSS_FEED})
        refresher = FeedRefresher(test_db, parser, clock=lambda: NOW)
        scheduler = make_scheduler(db=test_db, refresher=refresher)

        outcome = await scheduler.tick()

        assert outcome is CycleOutcome.COMPLETED
        assert test_db.count_feed_articles(ok_id) == 2
        assert test_db.get_feed(bad_id).error_count == 1
        assert "https://example.com/paused.xml" not in parser.requests

        last, next_at = test_db.get_global_schedule()
        assert last == NOW
        assert next_at == NOW + timedelta(minutes=test_db.get_refresh_interval_minutes())

        # Not due again until the global schedule says so
        assert await scheduler.tick() is CycleOutcome.SKIPPED_NOT_DUE


class TestLifecycle:
    """Tests for starting and stopping the loop."""

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, caplog):
        caplog.set_level(logging.INFO)
        scheduler = make_scheduler(initial_delay_seconds=60)

        assert await scheduler.start() is True
        assert await scheduler.start() is False
        assert scheduler.snapshot()["running"] is True
        assert "Starting background feed scheduler" in caplog.text

        await scheduler.stop()
        await scheduler.stop()

        assert scheduler.state.running is False
        assert scheduler.state.loop_task is None
        assert caplog.text.count("Stopped background feed scheduler") == 1

    @pytest.mark.asyncio
    async def test_loop_runs_ticks(self):
        scheduler = make_scheduler(initial_delay_seconds=0, tick_seconds=0.01)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert scheduler.db.set_global_schedule.call_count >= 2
        assert scheduler.state.last_outcome is CycleOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_snapshot(self):
        scheduler = make_scheduler(tick_seconds=60)
        await scheduler.tick()

        snapshot = scheduler.snapshot()

        assert snapshot["running"] is False
        assert snapshot["circuit_breaker_open"] is False
        assert snapshot["next_delay_seconds"] == 60
        assert snapshot["last_outcome"] == "completed"
        assert snapshot["last_cycle_at"] == NOW.isoformat()
