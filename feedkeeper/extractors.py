"""
HTML Extraction - plain text and images from feed entry markup.

Feed entries carry HTML in their summary/content fields. These helpers
turn that markup into the short plain-text summaries and thumbnail URLs
stored on articles.
"""

import html
import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from bs4 import BeautifulSoup

SUMMARY_MAX_LENGTH = 500
REDDIT_SUMMARY_MAX_LENGTH = 200

_REDDIT_TABLE_RE = re.compile(r"<table[^>]*>.*?</table>", re.IGNORECASE | re.DOTALL)


def extract_html_text(content: str | None) -> str:
    """
    Extract text from HTML content.

    Args:
        content: HTML string

    Returns:
        Whitespace-collapsed text content
    """
    if not content:
        return ""

    soup = BeautifulSoup(content, "html.parser")

    # Remove script and style elements
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()

    text = html.unescape(soup.get_text(separator=" "))
    return re.sub(r"\s+", " ", text).strip()


def truncate_text(text: str, max_length: int) -> str:
    """Cut text to max_length characters, marking the cut with '...'."""
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip() + "..."


def make_summary(content: str | None, max_length: int = SUMMARY_MAX_LENGTH) -> str | None:
    """Plain-text summary of an HTML fragment, or None when it has no text."""
    text = extract_html_text(content)
    if not text:
        return None
    return truncate_text(text, max_length)


def first_image_url(content: str | None) -> str | None:
    """URL of the first <img> in an HTML fragment."""
    if not content:
        return None
    soup = BeautifulSoup(content, "html.parser")
    img = soup.find("img", src=True)
    return img["src"] if img else None


# ─────────────────────────────────────────────────────────────
# Reddit
# ─────────────────────────────────────────────────────────────

def clean_reddit_content(content: str | None) -> str | None:
    """Drop the layout table Reddit wraps around post bodies."""
    if not content:
        return content
    return _REDDIT_TABLE_RE.sub("", content).strip() or None


def extract_reddit_thumbnail(content: str | None) -> str | None:
    """
    Find the preview image in a Reddit entry.

    Reddit puts the preview either in an <img> or, for link posts, in an
    <a> that points straight at the image host.
    """
    if not content:
        return None
    soup = BeautifulSoup(content, "html.parser")

    img = soup.find("img", src=True)
    if img:
        return upgrade_reddit_preview(html.unescape(img["src"]))

    for link in soup.find_all("a", href=True):
        href = html.unescape(link["href"])
        host = urlparse(href).hostname or ""
        if host in ("i.redd.it", "preview.redd.it", "external-preview.redd.it", "i.imgur.com"):
            return upgrade_reddit_preview(href)
    return None


def upgrade_reddit_preview(url: str) -> str:
    """
    Ask Reddit's preview hosts for a 640px rendition.

    Signed preview URLs (an 's' query parameter) are returned untouched
    because changing their parameters invalidates the signature.
    """
    parsed = urlparse(url)
    host = parsed.hostname or ""
    if host not in ("preview.redd.it", "external-preview.redd.it"):
        return url

    params = dict(parse_qsl(parsed.query))
    if "s" in params:
        return url

    if host == "preview.redd.it":
        params.update({"width": "640", "crop": "smart", "auto": "webp"})
    else:
        params.update({"width": "640", "format": "jpg", "auto": "webp"})
    return urlunparse(parsed._replace(query=urlencode(params)))
