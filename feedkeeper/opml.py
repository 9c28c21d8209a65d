"""OPML parser for importing and exporting feed subscriptions."""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field


@dataclass
class OPMLFeed:
    """A feed entry from an OPML file."""
    url: str
    title: str | None
    folder: str | None = None
    site_url: str | None = None
    feed_type: str | None = None


@dataclass
class OPMLDocument:
    """Parsed OPML document."""
    title: str | None
    feeds: list[OPMLFeed]
    # Folder names in document order, without duplicates
    folders: list[str] = field(default_factory=list)


def parse_opml(xml_content: str) -> OPMLDocument:
    """
    Parse OPML XML content and extract feed subscriptions.

    Nested outlines become folders; only the innermost named outline is
    kept as a feed's folder. A URL listed twice is imported once.

    Raises:
        ValueError: If XML is invalid or not OPML format
    """
    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as e:
        raise ValueError(f"Invalid XML: {e}")

    if root.tag.lower() != "opml":
        raise ValueError(f"Not an OPML document (root element: {root.tag})")

    doc_title = None
    head = root.find("head")
    if head is not None:
        title_elem = head.find("title")
        if title_elem is not None and title_elem.text:
            doc_title = title_elem.text.strip()

    body = root.find("body")
    if body is None:
        raise ValueError("OPML document missing <body> element")

    feeds: list[OPMLFeed] = []
    _parse_outlines(body, feeds, folder=None)

    unique: list[OPMLFeed] = []
    seen_urls: set[str] = set()
    for feed in feeds:
        key = feed.url.lower()
        if key in seen_urls:
            continue
        seen_urls.add(key)
        unique.append(feed)

    folders = list(dict.fromkeys(f.folder for f in unique if f.folder))
    return OPMLDocument(title=doc_title, feeds=unique, folders=folders)


def _parse_outlines(
    element: ET.Element,
    feeds: list[OPMLFeed],
    folder: str | None
) -> None:
    """Recursively collect feed outlines, tracking the enclosing folder."""
    for outline in element.findall("outline"):
        xml_url = (outline.get("xmlUrl") or outline.get("xmlurl") or "").strip()

        if xml_url:
            title = outline.get("title") or outline.get("text")
            feeds.append(OPMLFeed(
                url=xml_url,
                title=title.strip() if title and title.strip() else None,
                folder=folder,
                site_url=outline.get("htmlUrl") or outline.get("htmlurl"),
                feed_type=outline.get("type"),
            ))
        else:
            folder_name = (outline.get("title") or outline.get("text") or "").strip()
            _parse_outlines(outline, feeds, folder=folder_name or folder)


def generate_opml(feeds: list[OPMLFeed], title: str = "Feed Subscriptions") -> str:
    """
    Generate OPML XML from a list of feeds.

    Feeds with a folder are grouped into folder outlines; feeds without
    one come first at the top level.
    """
    root = ET.Element("opml", version="2.0")

    head = ET.SubElement(root, "head")
    title_elem = ET.SubElement(head, "title")
    title_elem.text = title

    body = ET.SubElement(root, "body")

    by_folder: dict[str | None, list[OPMLFeed]] = {}
    for feed in feeds:
        by_folder.setdefault(feed.folder, []).append(feed)

    for feed in by_folder.pop(None, []):
        _add_feed_outline(body, feed)

    for folder_name, folder_feeds in sorted(by_folder.items()):
        folder_elem = ET.SubElement(body, "outline", text=folder_name, title=folder_name)
        for feed in folder_feeds:
            _add_feed_outline(folder_elem, feed)

    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(
        root, encoding="unicode"
    )


def _add_feed_outline(parent: ET.Element, feed: OPMLFeed) -> None:
    attrs = {
        "type": feed.feed_type or "rss",
        "xmlUrl": feed.url,
        "text": feed.title or feed.url,
    }
    if feed.title:
        attrs["title"] = feed.title
    if feed.site_url:
        attrs["htmlUrl"] = feed.site_url

    ET.SubElement(parent, "outline", **attrs)
