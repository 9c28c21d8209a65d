"""
Refresh progress events.

The scheduler and the streaming endpoints describe a refresh as a stream
of events: start, feed_refreshing, feed_complete / feed_error per feed,
and a final complete with aggregate stats. RefreshEventBus fans them out
to live subscribers; the HTTP layer turns each event into one
text/event-stream frame.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Iterable, Iterator

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"


@dataclass
class FailedFeed:
    id: int
    title: str
    error: str


@dataclass
class RefreshStats:
    success: int = 0
    errors: int = 0
    failed_feeds: list[FailedFeed] = field(default_factory=list)

    def record_success(self):
        self.success += 1

    def record_failure(self, feed_id: int, title: str, error: str):
        self.errors += 1
        self.failed_feeds.append(FailedFeed(id=feed_id, title=title, error=error))


@dataclass
class ImportStats(RefreshStats):
    skipped: int = 0


@dataclass
class StartEvent:
    type: ClassVar[str] = "start"
    total_feeds: int


@dataclass
class ImportStartEvent:
    type: ClassVar[str] = "start"
    total_folders: int
    total_feeds: int


@dataclass
class FolderCreatedEvent:
    type: ClassVar[str] = "folder_created"
    name: str
    id: int


@dataclass
class FeedCreatedEvent:
    type: ClassVar[str] = "feed_created"
    title: str
    id: int
    status: str
    folder: str | None = None


@dataclass
class FeedRefreshingEvent:
    type: ClassVar[str] = "feed_refreshing"
    id: int
    title: str


@dataclass
class FeedCompleteEvent:
    type: ClassVar[str] = "feed_complete"
    id: int
    title: str
    new_articles: int
    next_fetch_at: datetime | None = None


@dataclass
class FeedErrorEvent:
    type: ClassVar[str] = "feed_error"
    id: int
    title: str
    error: str


@dataclass
class CompleteEvent:
    type: ClassVar[str] = "complete"
    stats: RefreshStats


RefreshEvent = (
    StartEvent
    | ImportStartEvent
    | FolderCreatedEvent
    | FeedCreatedEvent
    | FeedRefreshingEvent
    | FeedCompleteEvent
    | FeedErrorEvent
    | CompleteEvent
)

# Event types a consumer understands; anything else is skipped
KNOWN_EVENT_TYPES = {
    "start",
    "folder_created",
    "feed_created",
    "feed_refreshing",
    "feed_complete",
    "feed_error",
    "complete",
}


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def event_to_dict(event: RefreshEvent) -> dict[str, Any]:
    data = {"type": event.type}
    data.update(asdict(event))
    return data


def format_sse(event: RefreshEvent) -> str:
    """One event as a text/event-stream data frame."""
    return f"data: {json.dumps(event_to_dict(event), default=_json_default)}\n\n"


def parse_sse_stream(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """
    Decode a text/event-stream into event dicts.

    Comment lines (keepalives) and event types this version does not know
    are skipped so that newer servers can add events freely.
    """
    data_lines: list[str] = []
    for line in lines:
        line = line.rstrip("\r\n")
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
            continue
        if line == "" and data_lines:
            payload = "\n".join(data_lines)
            data_lines = []
            try:
                event = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed event frame: {payload[:100]!r}")
                continue
            if isinstance(event, dict) and event.get("type") in KNOWN_EVENT_TYPES:
                yield event


Listener = Callable[[RefreshEvent], None]


class RefreshEventBus:
    """In-process publish/subscribe for refresh events."""

    def __init__(self):
        self._listeners: list[Listener] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: RefreshEvent):
        """Deliver an event to every listener; a failing listener is logged and skipped."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Refresh event listener failed on '{event.type}' event")
