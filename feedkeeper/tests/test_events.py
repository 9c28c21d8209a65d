"""
Tests for refresh event encoding and the in-process event bus.
"""

import json
from datetime import datetime, timezone

from feedkeeper.events import (
    KEEPALIVE_FRAME,
    CompleteEvent,
    FeedCompleteEvent,
    FeedCreatedEvent,
    ImportStats,
    RefreshEventBus,
    RefreshStats,
    StartEvent,
    event_to_dict,
    format_sse,
    parse_sse_stream,
)


class TestFormatSSE:
    """Tests for serializing events as text/event-stream frames."""

    def test_frame_shape(self):
        frame = format_sse(StartEvent(total_feeds=3))
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == {"type": "start", "total_feeds": 3}

    def test_datetime_serialized_as_iso(self):
        when = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        frame = format_sse(FeedCompleteEvent(id=1, title="Feed", new_articles=2, next_fetch_at=when))
        data = json.loads(frame[len("data: "):])
        assert data["next_fetch_at"] == "2025-03-01T12:00:00+00:00"

    def test_complete_includes_stats(self):
        stats = RefreshStats()
        stats.record_success()
        stats.record_failure(2, "Broken", "[fetch] Failed to fetch feed: 404 Not Found")
        data = event_to_dict(CompleteEvent(stats=stats))
        assert data == {
            "type": "complete",
            "stats": {
                "success": 1,
                "errors": 1,
                "failed_feeds": [
                    {"id": 2, "title": "Broken", "error": "[fetch] Failed to fetch feed: 404 Not Found"}
                ],
            },
        }

    def test_import_stats_include_skipped(self):
        data = event_to_dict(CompleteEvent(stats=ImportStats(skipped=2)))
        assert data["stats"]["skipped"] == 2

    def test_feed_created(self):
        data = event_to_dict(FeedCreatedEvent(title="Feed", id=4, status="created", folder="Tech"))
        assert data == {"type": "feed_created", "title": "Feed", "id": 4, "status": "created", "folder": "Tech"}


class TestParseSSEStream:
    """Tests for decoding a text/event-stream."""

    def test_round_trip(self):
        events = [StartEvent(total_feeds=1), CompleteEvent(stats=RefreshStats(success=1))]
        text = "".join(format_sse(e) for e in events)
        parsed = list(parse_sse_stream(text.splitlines(keepends=True)))
        assert [p["type"] for p in parsed] == ["start", "complete"]
        assert parsed[1]["stats"]["success"] == 1

    def test_keepalives_skipped(self):
        text = KEEPALIVE_FRAME + format_sse(StartEvent(total_feeds=0)) + KEEPALIVE_FRAME
        parsed = list(parse_sse_stream(text.splitlines()))
        assert parsed == [{"type": "start", "total_feeds": 0}]

    def test_unknown_types_skipped(self):
        lines = [
            'data: {"type": "something_new", "x": 1}', "",
            'data: {"type": "feed_error", "id": 1, "title": "F", "error": "e"}', "",
        ]
        parsed = list(parse_sse_stream(lines))
        assert [p["type"] for p in parsed] == ["feed_error"]

    def test_malformed_frames_skipped(self):
        lines = ["data: {not json", "", 'data: {"type": "start", "total_feeds": 1}', ""]
        assert [p["type"] for p in parse_sse_stream(lines)] == ["start"]


class TestRefreshEventBus:
    """Tests for publish/subscribe."""

    def test_publish_reaches_subscribers(self):
        bus = RefreshEventBus()
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        bus.publish(StartEvent(total_feeds=1))

        assert len(first) == len(second) == 1
        assert bus.subscriber_count == 2

    def test_unsubscribe(self):
        bus = RefreshEventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        bus.publish(StartEvent(total_feeds=1))

        assert received == []
        assert bus.subscriber_count == 0

    def test_failing_listener_is_contained(self, caplog):
        bus = RefreshEventBus()
        received = []

        def broken(event):
            raise RuntimeError("listener down")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(StartEvent(total_feeds=1))

        assert len(received) == 1
        assert "Refresh event listener failed" in caplog.text
