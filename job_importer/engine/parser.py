"""RSS/Atom feed parsing on top of feedparser."""

from __future__ import annotations

import io
from typing import Any

import feedparser
from feedparser.exceptions import CharacterEncodingOverride, NonXMLContentType

from ..errors import ParseError

# Dialect reported by feedparser ("rss20", "atom10", ...), copied onto each item.
FORMAT_KEY = "feed_format"

_BENIGN_BOZO = (CharacterEncodingOverride, NonXMLContentType)


def parse_document(payload: str | bytes) -> feedparser.FeedParserDict:
    """Run feedparser over an in-memory payload.

    A payload that feedparser could not make sense of (``bozo`` set and no
    entries recovered) raises :class:`ParseError`.
    """

    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    document = feedparser.parse(io.BytesIO(data))
    error = document.get("bozo_exception")
    if document.get("bozo") and not document.get("entries") and not isinstance(error, _BENIGN_BOZO):
        raise ParseError(f"Failed to parse feed: {error}")
    return document


def extract_items(document: feedparser.FeedParserDict) -> list[dict[str, Any]]:
    """Return the entries of a parsed feed as plain dictionaries."""

    version = document.get("version") or ""
    if not version:
        raise ParseError("Unsupported feed layout: not an RSS or Atom document")
    items = []
    for entry in document.get("entries", []):
        item = dict(entry)
        item[FORMAT_KEY] = version
        items.append(item)
    return items


def parse_feed(payload: str | bytes) -> list[dict[str, Any]]:
    return extract_items(parse_document(payload))


__all__ = ["FORMAT_KEY", "extract_items", "parse_document", "parse_feed"]
