"""
Feed Parser - Fetch, parse and normalize feeds.

Handles:
- RSS 2.0 and Atom 1.0 formats
- YouTube channel feeds, Reddit listings and podcast RSS
- Typed errors for bad URLs, HTTP failures, timeouts and unparseable XML
- Retry with backoff for transient HTTP statuses
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator
from urllib.parse import urlparse

import aiohttp
import feedparser

from .extractors import (
    REDDIT_SUMMARY_MAX_LENGTH,
    clean_reddit_content,
    extract_reddit_thumbnail,
    first_image_url,
    make_summary,
    upgrade_reddit_preview,
)
from .url_validator import SSRFError, validate_url

logger = logging.getLogger(__name__)

USER_AGENT = "Feedkeeper/1.0 (personal feed reader)"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"

# Statuses worth another attempt before giving up
RETRY_STATUSES = {408, 429, 500, 502, 503, 504}
RETRY_BASE_DELAY = 0.3
RETRY_MAX_DELAY = 2.0

ITUNES_NAMESPACE = "http://www.itunes.com/dtds/podcast-1.0.dtd"
REDDIT_FAVICON = "https://www.redditstatic.com/desktop2x/img/favicon/android-icon-192x192.png"

_YOUTUBE_GUID_RE = re.compile(r"(?:yt:video:|video:)([a-zA-Z0-9_-]{11})")
_YOUTUBE_LINK_RE = re.compile(r"(?:v=|youtu\.be/|/embed/|/shorts/)([a-zA-Z0-9_-]{11})")
_SUBREDDIT_RE = re.compile(r"/r/([A-Za-z0-9_]+)")
_YOUTUBE_AVATAR_RE = re.compile(r'"avatar":\{"thumbnails":\[\{"url":"([^"]+)"')


# ─────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────

class FeedError(Exception):
    """Base class for feed fetch/parse failures."""
    category = "unknown"


class InvalidUrlError(FeedError):
    """The URL is malformed, not http(s), or points at a blocked address."""
    category = "invalid_url"


class FetchFailedError(FeedError):
    """The server answered with a non-2xx status."""
    category = "fetch"

    def __init__(self, status: int, reason: str = ""):
        self.status = status
        self.reason = reason
        super().__init__(f"Failed to fetch feed: {status} {reason}".rstrip())


class FeedParseError(FeedError):
    """The response body is not a feed."""
    category = "parse"


class FeedTimeoutError(FeedError):
    category = "timeout"


class FeedNetworkError(FeedError):
    """Connection-level failure (DNS, refused, reset, TLS)."""
    category = "network"


def describe_error(error: BaseException) -> str:
    """Format an error for the feed's last_error column: '[category] message'."""
    category = error.category if isinstance(error, FeedError) else "unknown"
    message = str(error) or type(error).__name__
    return f"[{category}] {message}"


# ─────────────────────────────────────────────────────────────
# Data types
# ─────────────────────────────────────────────────────────────

class FeedType(str, Enum):
    RSS = "rss"
    ATOM = "atom"
    YOUTUBE = "youtube"
    REDDIT = "reddit"
    PODCAST = "podcast"


@dataclass
class Enclosure:
    url: str
    type: str | None = None
    length: int | None = None


@dataclass
class RawEntry:
    """A feed entry as it appears in the document, before normalization."""
    guid: str | None
    title: str | None
    link: str | None
    author: str | None
    summary: str | None
    content: str | None
    published: datetime | None
    enclosures: list[Enclosure] = field(default_factory=list)
    thumbnail_url: str | None = None
    image_url: str | None = None
    video_id: str | None = None


@dataclass
class FeedDocument:
    """
    A fetched and parsed feed.

    entries is a one-shot iterator: it yields each entry once and cannot
    be restarted without fetching the feed again.
    """
    url: str
    title: str | None
    link: str | None
    description: str | None
    favicon: str | None
    is_podcast: bool
    entries: Iterator[RawEntry]
    youtube_channel_id: str | None = None


@dataclass
class NormalizedArticle:
    """Canonical article shape shared by every feed type."""
    guid: str
    title: str
    url: str | None
    author: str | None
    summary: str | None
    content: str | None
    published_at: datetime | None
    enclosure_url: str | None = None
    enclosure_type: str | None = None
    thumbnail_url: str | None = None


@dataclass
class ParseOptions:
    timeout: float | None = None
    skip_icon_fetch: bool = False


# ─────────────────────────────────────────────────────────────
# Classification and normalization (pure)
# ─────────────────────────────────────────────────────────────

def _hostname(url: str | None) -> str:
    if not url:
        return ""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_youtube_url(url: str | None) -> bool:
    host = _hostname(url)
    return host == "youtu.be" or host == "youtube.com" or host.endswith(".youtube.com")


def is_reddit_url(url: str | None) -> bool:
    host = _hostname(url)
    return host == "reddit.com" or host.endswith(".reddit.com")


def detect_feed_type(url: str, doc: FeedDocument | None = None) -> FeedType:
    """
    Classify a feed.

    YouTube markers win, then podcast markers, then Reddit URLs; anything
    else is plain rss.
    """
    if is_youtube_url(url):
        return FeedType.YOUTUBE
    if doc is not None and (doc.youtube_channel_id or is_youtube_url(doc.link)):
        return FeedType.YOUTUBE
    if doc is not None and doc.is_podcast:
        return FeedType.PODCAST
    if is_reddit_url(url):
        return FeedType.REDDIT
    return FeedType.RSS


def generate_guid(title: str, feed_id: int | None) -> str:
    """Stable identity for entries that carry neither guid nor link."""
    digest = hashlib.sha256(f"{feed_id}:{title}".encode("utf-8")).hexdigest()
    return f"generated-{digest[:32]}"


def extract_youtube_video_id(guid: str | None, link: str | None) -> str | None:
    if guid:
        match = _YOUTUBE_GUID_RE.search(guid)
        if match:
            return match.group(1)
    if link:
        match = _YOUTUBE_LINK_RE.search(link)
        if match:
            return match.group(1)
    return None


def _reddit_author(author: str | None) -> str | None:
    if not author:
        return None
    name = author.strip().lstrip("/")
    if name.startswith("u/"):
        name = name[2:]
    return f"u/{name}" if name else None


def normalize_article(
    raw: RawEntry,
    feed_type: FeedType | str,
    feed_id: int | None = None,
) -> NormalizedArticle:
    """Map a raw entry onto the canonical article shape for its feed type."""
    feed_type = FeedType(feed_type)

    title = (raw.title or "").strip() or "Untitled"
    url = raw.link or None
    guid = raw.guid or raw.link or generate_guid(title, feed_id)
    content = raw.content or raw.summary
    summary = make_summary(raw.summary or raw.content)
    author = raw.author
    thumbnail = raw.thumbnail_url or first_image_url(content)
    enclosure = raw.enclosures[0] if raw.enclosures else None

    match feed_type:
        case FeedType.YOUTUBE:
            video_id = raw.video_id or extract_youtube_video_id(raw.guid, raw.link)
            if video_id:
                url = url or f"https://www.youtube.com/watch?v={video_id}"
                thumbnail = f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"
        case FeedType.REDDIT:
            content = clean_reddit_content(content)
            summary = make_summary(content, REDDIT_SUMMARY_MAX_LENGTH)
            author = _reddit_author(author)
            if raw.thumbnail_url:
                thumbnail = upgrade_reddit_preview(raw.thumbnail_url)
            else:
                thumbnail = extract_reddit_thumbnail(raw.content or raw.summary)
        case FeedType.PODCAST:
            audio = [e for e in raw.enclosures if (e.type or "").startswith("audio/")]
            enclosure = audio[0] if audio else enclosure
            thumbnail = raw.image_url or raw.thumbnail_url or thumbnail
        case FeedType.RSS | FeedType.ATOM:
            pass

    return NormalizedArticle(
        guid=guid,
        title=title,
        url=url,
        author=author,
        summary=summary,
        content=content,
        published_at=raw.published,
        enclosure_url=enclosure.url if enclosure else None,
        enclosure_type=enclosure.type if enclosure else None,
        thumbnail_url=thumbnail,
    )


def _entry_datetime(entry) -> datetime | None:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            try:
                return datetime(*parsed[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return None


def _entry_enclosures(entry) -> list[Enclosure]:
    enclosures = []
    for enc in entry.get("enclosures", []):
        href = enc.get("href") or enc.get("url")
        if not href:
            continue
        try:
            length = int(enc.get("length")) if enc.get("length") else None
        except (TypeError, ValueError):
            length = None
        enclosures.append(Enclosure(url=href, type=enc.get("type"), length=length))
    return enclosures


def _entry_thumbnail(entry) -> str | None:
    for thumb in entry.get("media_thumbnail", []):
        if thumb.get("url"):
            return thumb["url"]
    for media in entry.get("media_content", []):
        if media.get("medium") == "image" or (media.get("type") or "").startswith("image/"):
            if media.get("url"):
                return media["url"]
    return None


def _to_raw_entry(entry) -> RawEntry:
    content = None
    if entry.get("content"):
        content = entry.content[0].get("value")
    image = entry.get("image")
    return RawEntry(
        guid=entry.get("id") or None,
        title=entry.get("title"),
        link=entry.get("link") or None,
        author=entry.get("author"),
        summary=entry.get("summary"),
        content=content,
        published=_entry_datetime(entry),
        enclosures=_entry_enclosures(entry),
        thumbnail_url=_entry_thumbnail(entry),
        image_url=image.get("href") if isinstance(image, dict) else None,
        video_id=entry.get("yt_videoid"),
    )


def _iter_entries(entries: list) -> Iterator[RawEntry]:
    for entry in entries:
        yield _to_raw_entry(entry)


def _has_podcast_markers(parsed) -> bool:
    namespaces = {ns.lower() for ns in parsed.get("namespaces", {}).values()}
    if ITUNES_NAMESPACE in namespaces:
        return True
    for entry in parsed.entries:
        for enc in entry.get("enclosures", []):
            if (enc.get("type") or "").startswith("audio/"):
                return True
    return False


def fallback_favicon(url: str, site_url: str | None) -> str | None:
    """Icon to use when the feed document names none."""
    if is_reddit_url(url) or is_reddit_url(site_url):
        return REDDIT_FAVICON
    base = site_url or url
    try:
        parsed = urlparse(base)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}/favicon.ico"


def parse_document(url: str, content: bytes | str) -> FeedDocument:
    """
    Parse a feed body that has already been fetched.

    Raises:
        FeedParseError: If the body is not a recognisable feed
    """
    parsed = feedparser.parse(content)

    if parsed.bozo and not parsed.entries and not parsed.feed.get("title"):
        raise FeedParseError(f"Failed to parse feed: {parsed.get('bozo_exception')}")
    if not parsed.get("version") and not parsed.entries:
        raise FeedParseError("Could not parse feed metadata")

    meta = parsed.feed
    image = meta.get("image")
    favicon = (image.get("href") or image.get("url")) if isinstance(image, dict) else None
    favicon = favicon or meta.get("icon") or meta.get("logo")

    return FeedDocument(
        url=url,
        title=(meta.get("title") or "").strip() or None,
        link=meta.get("link") or None,
        description=meta.get("subtitle") or meta.get("description") or None,
        favicon=favicon or None,
        is_podcast=_has_podcast_markers(parsed),
        entries=_iter_entries(list(parsed.entries)),
        youtube_channel_id=meta.get("yt_channelid") or None,
    )


# ─────────────────────────────────────────────────────────────
# Fetching
# ─────────────────────────────────────────────────────────────

class FeedParser:
    """Fetches feeds over HTTP and parses them into FeedDocuments."""

    def __init__(
        self,
        timeout: float = 30,
        user_agent: str | None = None,
        resolve_dns: bool = True,
        max_retries: int = 2,
    ):
        self.timeout = timeout
        self.user_agent = user_agent or USER_AGENT
        self.resolve_dns = resolve_dns
        self.max_retries = max_retries

    async def validate_feed_url(self, url: str) -> str:
        """
        Validate a feed URL, raising InvalidUrlError.

        The DNS lookup blocks, so it runs in the default executor.
        """
        try:
            if not self.resolve_dns:
                return validate_url(url, resolve_dns=False)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, validate_url, url, True)
        except SSRFError as e:
            raise InvalidUrlError(str(e)) from e

    async def parse_feed(self, url: str, options: ParseOptions | None = None) -> FeedDocument:
        """
        Fetch and parse a feed URL.

        Raises:
            InvalidUrlError, FetchFailedError, FeedParseError,
            FeedTimeoutError, FeedNetworkError
        """
        options = options or ParseOptions()
        url = await self.validate_feed_url(url)
        timeout = options.timeout or self.timeout

        try:
            content = await self._fetch_with_retry(url, self.user_agent, timeout)
        except FetchFailedError as e:
            # YouTube sometimes rejects non-browser clients
            if not is_youtube_url(url):
                raise
            logger.info(f"Retrying YouTube feed {url} with browser user agent after {e.status}")
            content = await self._fetch_with_retry(url, BROWSER_USER_AGENT, timeout)

        doc = parse_document(url, content)

        if not doc.favicon and not options.skip_icon_fetch:
            doc.favicon = await self._fetch_platform_icon(url, doc, timeout)
        if not doc.favicon:
            doc.favicon = fallback_favicon(url, doc.link)

        return doc

    async def _fetch_with_retry(self, url: str, user_agent: str, timeout: float) -> bytes:
        attempt = 0
        while True:
            try:
                return await self._request(url, user_agent, timeout)
            except FetchFailedError as e:
                if e.status not in RETRY_STATUSES or attempt >= self.max_retries:
                    raise
                delay = min(RETRY_BASE_DELAY * (2 ** attempt), RETRY_MAX_DELAY)
                attempt += 1
                logger.debug(f"Retrying {url} after {e.status} (attempt {attempt}, {delay:.1f}s)")
                await asyncio.sleep(delay)

    async def _request(self, url: str, user_agent: str, timeout: float) -> bytes:
        """Single GET of the feed body."""
        headers = {"User-Agent": user_agent, "Accept": ACCEPT_HEADER}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=timeout)
                ) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise FetchFailedError(resp.status, resp.reason or "")
                    return await resp.read()
        except asyncio.TimeoutError as e:
            raise FeedTimeoutError(f"Timeout after {timeout:g}s") from e
        except aiohttp.InvalidURL as e:
            raise InvalidUrlError(f"Invalid URL: {e}") from e
        except aiohttp.ClientError as e:
            raise FeedNetworkError(str(e) or type(e).__name__) from e

    async def _fetch_platform_icon(self, url: str, doc: FeedDocument, timeout: float) -> str | None:
        """
        Look up a channel/subreddit avatar.

        Best effort: any failure just means the generic favicon is used.
        """
        try:
            if doc.youtube_channel_id:
                page = await self._request(
                    f"https://www.youtube.com/channel/{doc.youtube_channel_id}",
                    BROWSER_USER_AGENT,
                    timeout,
                )
                match = _YOUTUBE_AVATAR_RE.search(page.decode("utf-8", errors="replace"))
                return match.group(1) if match else None
            if is_reddit_url(url):
                match = _SUBREDDIT_RE.search(urlparse(url).path)
                if not match:
                    return None
                return await self._fetch_subreddit_icon(match.group(1), timeout)
        except FeedError as e:
            logger.debug(f"Icon lookup failed for {url}: {e}")
        return None

    async def _fetch_subreddit_icon(self, subreddit: str, timeout: float) -> str | None:
        headers = {"User-Agent": self.user_agent}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"https://www.reddit.com/r/{subreddit}/about.json",
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=timeout)
                ) as resp:
                    if resp.status != 200:
                        return None
                    payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"Subreddit icon lookup failed for r/{subreddit}: {e}")
            return None

        data = payload.get("data", {}) if isinstance(payload, dict) else {}
        icon = data.get("community_icon") or data.get("icon_img")
        return icon.split("?")[0] if icon else None
