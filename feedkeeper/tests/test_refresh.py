"""
Tests for the per-feed refresh pipeline.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from feedkeeper.feeds import FeedNetworkError, FetchFailedError
from feedkeeper.refresh import FeedRefresher

from .fakes import FEED_URL, RSS_FEED, RSS_FEED_UPDATED, FakeFeedParser

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
REDDIT_URL = "https://www.reddit.com/r/python/.rss"


def make_refresher(db, responses, rule_engine=None, delay=0.0) -> FeedRefresher:
    return FeedRefresher(
        db,
        FakeFeedParser(responses, delay=delay),
        rule_engine=rule_engine,
        clock=lambda: NOW,
    )


class TestRefreshSuccess:
    """Tests for successful refreshes."""

    @pytest.mark.asyncio
    async def test_inserts_new_articles(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED})

        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.success is True
        assert result.new_articles == 2
        assert len(result.new_article_ids) == 2
        assert test_db.count_feed_articles(feed_id) == 2

    @pytest.mark.asyncio
    async def test_second_refresh_inserts_nothing(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED})

        await refresher.refresh(test_db.get_feed(feed_id))
        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.success is True
        assert result.new_articles == 0
        assert test_db.count_feed_articles(feed_id) == 2

    @pytest.mark.asyncio
    async def test_only_unseen_entries_inserted(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(test_db, {FEED_URL: [RSS_FEED, RSS_FEED_UPDATED]})

        await refresher.refresh(test_db.get_feed(feed_id))
        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.new_articles == 1
        article = test_db.get_article(result.new_article_ids[0])
        assert article.title == "Third post"

    @pytest.mark.asyncio
    async def test_schedules_next_fetch(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed", refresh_interval_minutes=45)
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED})

        result = await refresher.refresh(test_db.get_feed(feed_id))

        feed = test_db.get_feed(feed_id)
        assert result.next_fetch_at == NOW + timedelta(minutes=45)
        assert feed.last_fetched_at == NOW
        assert feed.next_fetch_at == NOW + timedelta(minutes=45)

    @pytest.mark.asyncio
    async def test_success_clears_error_state(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(
            test_db, {FEED_URL: [FetchFailedError(503, "Service Unavailable"), RSS_FEED]}
        )

        await refresher.refresh(test_db.get_feed(feed_id))
        assert test_db.get_feed(feed_id).error_count == 1

        await refresher.refresh(test_db.get_feed(feed_id))
        feed = test_db.get_feed(feed_id)
        assert feed.error_count == 0
        assert feed.last_error is None
        assert feed.last_error_at is None

    @pytest.mark.asyncio
    async def test_placeholder_title_replaced(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Untitled Feed")
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED})

        await refresher.refresh(test_db.get_feed(feed_id))

        assert test_db.get_feed(feed_id).title == "Example Feed"

    @pytest.mark.asyncio
    async def test_custom_title_kept(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "My Reading")
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED})

        await refresher.refresh(test_db.get_feed(feed_id))

        assert test_db.get_feed(feed_id).title == "My Reading"

    @pytest.mark.asyncio
    async def test_generic_type_upgraded(self, test_db):
        feed_id = test_db.add_feed(REDDIT_URL, "r/python", feed_type="rss")
        refresher = make_refresher(test_db, {REDDIT_URL: RSS_FEED})

        await refresher.refresh(test_db.get_feed(feed_id))

        assert test_db.get_feed(feed_id).type == "reddit"

    @pytest.mark.asyncio
    async def test_specific_type_not_downgraded(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed", feed_type="podcast")
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED})

        await refresher.refresh(test_db.get_feed(feed_id))

        assert test_db.get_feed(feed_id).type == "podcast"


class TestRefreshFailure:
    """Tests for failed refreshes."""

    @pytest.mark.asyncio
    async def test_http_error_recorded(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed", refresh_interval_minutes=30)
        refresher = make_refresher(test_db, {FEED_URL: FetchFailedError(503, "Service Unavailable")})

        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.success is False
        assert result.error == "[fetch] Failed to fetch feed: 503 Service Unavailable"
        feed = test_db.get_feed(feed_id)
        assert feed.error_count == 1
        assert feed.last_error == result.error
        assert feed.last_error_at == NOW

    @pytest.mark.asyncio
    async def test_failure_backs_off_two_intervals(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed", refresh_interval_minutes=30)
        refresher = make_refresher(test_db, {})

        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.next_fetch_at == NOW + timedelta(minutes=60)
        assert test_db.get_feed(feed_id).next_fetch_at == NOW + timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_consecutive_failures_counted(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(test_db, {FEED_URL: FeedNetworkError("connection refused")})

        for _ in range(3):
            await refresher.refresh(test_db.get_feed(feed_id))

        feed = test_db.get_feed(feed_id)
        assert feed.error_count == 3
        assert feed.last_error == "[network] connection refused"

    @pytest.mark.asyncio
    async def test_failure_keeps_last_fetched_at(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(test_db, {FEED_URL: [RSS_FEED, FetchFailedError(500, "Server Error")]})

        await refresher.refresh(test_db.get_feed(feed_id))
        await refresher.refresh(test_db.get_feed(feed_id))

        assert test_db.get_feed(feed_id).last_fetched_at == NOW

    @pytest.mark.asyncio
    async def test_timeout(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED}, delay=1.0)

        result = await refresher.refresh(test_db.get_feed(feed_id), timeout=0.05)

        assert result.success is False
        assert result.error == "[timeout] Timeout after 0.05s"
        assert test_db.get_feed(feed_id).error_count == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_insert(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        refresher = make_refresher(test_db, {FEED_URL: b"not a feed"})

        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.success is False
        assert result.error.startswith("[parse]")
        assert test_db.count_feed_articles(feed_id) == 0

    @pytest.mark.asyncio
    async def test_storage_error_recorded_and_backed_off(self, test_db, monkeypatch):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed", refresh_interval_minutes=30)
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED})

        def locked(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(test_db, "insert_articles", locked)

        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.success is False
        assert result.error == "[unknown] database is locked"
        assert result.next_fetch_at == NOW + timedelta(minutes=60)
        feed = test_db.get_feed(feed_id)
        assert feed.error_count == 1
        assert feed.last_error == "[unknown] database is locked"
        assert feed.last_error_at == NOW
        assert feed.next_fetch_at == NOW + timedelta(minutes=60)


class TestRefreshRules:
    """Tests for the hand-off to the rule engine."""

    @pytest.mark.asyncio
    async def test_new_articles_evaluated(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        engine = MagicMock()
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED}, rule_engine=engine)

        result = await refresher.refresh(test_db.get_feed(feed_id))

        engine.evaluate_articles.assert_called_once_with(result.new_article_ids, 1)

    @pytest.mark.asyncio
    async def test_no_new_articles_skips_rules(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        engine = MagicMock()
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED}, rule_engine=engine)

        await refresher.refresh(test_db.get_feed(feed_id))
        engine.reset_mock()
        await refresher.refresh(test_db.get_feed(feed_id))

        engine.evaluate_articles.assert_not_called()

    @pytest.mark.asyncio
    async def test_rule_failure_does_not_fail_refresh(self, test_db):
        feed_id = test_db.add_feed(FEED_URL, "Example Feed")
        engine = MagicMock()
        engine.evaluate_articles.side_effect = RuntimeError("boom")
        refresher = make_refresher(test_db, {FEED_URL: RSS_FEED}, rule_engine=engine)

        result = await refresher.refresh(test_db.get_feed(feed_id))

        assert result.success is True
        assert result.new_articles == 2
