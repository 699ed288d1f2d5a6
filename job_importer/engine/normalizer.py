"""Map raw feed items of several schemas onto :class:`JobRecord`.

Items arrive as feedparser entries: vendor-namespaced elements are flattened
to ``prefix_name`` keys (``job_listing_company``), the RSS ``description`` is
exposed as ``summary``, ``guid`` as ``id`` and ``pubDate`` as ``published``
with a ``published_parsed`` UTC struct alongside.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from feedparser.datetimes import _parse_date
from selectolax.parser import HTMLParser

from ..models import JobRecord
from .parser import FORMAT_KEY

_CATEGORY_PATTERN = re.compile(r"categories=([^&]+)")
_LOCATION_PATTERN = re.compile(r"Location[:\s]+([^<\n]+)", re.IGNORECASE)
_LISTING_PREFIX = "job_listing_"
TEXT_KEYS = ("value", "#text")


def extract_text(value: Any) -> str:
    """Unwrap the text of a feed value, always trimmed."""

    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        for key in TEXT_KEYS:
            if key in value:
                return extract_text(value[key])
        return ""
    if isinstance(value, (list, tuple)):
        parts = [extract_text(item) for item in value]
        return ", ".join(part for part in parts if part)
    return str(value).strip()


def category_from_url(url: str) -> str:
    match = _CATEGORY_PATTERN.search(url or "")
    return match.group(1) if match else "general"


def _from_struct(value: Any) -> datetime | None:
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError, KeyError):
        return None


def parse_date(value: Any) -> datetime | None:
    """Parse any date layout feedparser understands; ``None`` when unparsable."""

    text = extract_text(value)
    if not text:
        return None
    try:
        parsed = _parse_date(text)
    except (ValueError, TypeError, OverflowError, IndexError):
        return None
    return _from_struct(parsed)


def entry_date(raw: dict[str, Any], *fields: str) -> datetime | None:
    """First date among ``fields``, preferring feedparser's ``<field>_parsed``."""

    for field in fields:
        parsed = _from_struct(raw.get(f"{field}_parsed"))
        if parsed is not None:
            return parsed
        parsed = parse_date(raw.get(field))
        if parsed is not None:
            return parsed
    return None


def plain_text(value: str) -> str:
    """Flatten an HTML fragment to newline separated text."""

    if "<" not in value:
        return value
    tree = HTMLParser(value)
    node = tree.body or tree.root
    if node is None:
        return value
    return node.text(separator="\n", strip=True)


def extract_link(value: Any) -> str:
    """Resolve a link given as text, a link dict or a feedparser ``links`` list."""

    if not value:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return extract_text(value.get("href"))
    if isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, dict) and item.get("rel") == "alternate":
                href = extract_text(item.get("href"))
                if href:
                    return href
        for item in value:
            href = extract_link(item)
            if href:
                return href
    return ""


def _first(raw: dict[str, Any], *keys: str) -> str:
    for key in keys:
        text = extract_text(raw.get(key))
        if text:
            return text
    return ""


def _first_tag(raw: dict[str, Any]) -> str:
    tags = raw.get("tags")
    if isinstance(tags, list):
        for tag in tags:
            term = extract_text(tag.get("term")) if isinstance(tag, dict) else ""
            if term:
                return term
    return extract_text(raw.get("category"))


# ----------------------------------------------------------------------
# Schema rules


def _is_atom_document(raw: dict[str, Any]) -> bool:
    return str(raw.get(FORMAT_KEY) or "").startswith("atom")


def _is_listing(raw: dict[str, Any]) -> bool:
    if any(isinstance(key, str) and key.startswith(_LISTING_PREFIX) for key in raw):
        return True
    return bool(raw.get("title")) and bool(raw.get("summary") or raw.get("description")) and not _is_atom_document(raw)


def _listing_fields(raw: dict[str, Any], source_url: str) -> dict[str, Any]:
    return {
        "title": extract_text(raw.get("title")),
        "company": _first(raw, "job_listing_company", "company") or "Unknown",
        "location": _first(raw, "job_listing_location", "location") or "Remote",
        "description": _first(raw, "summary", "description", "content"),
        "salary": _first(raw, "job_listing_salary", "salary") or None,
        "job_type": _first(raw, "job_listing_job_type", "job_type") or "full-time",
        "category": _first_tag(raw) or category_from_url(source_url),
        "url": _first(raw, "link") or extract_link(raw.get("links")) or _first(raw, "id"),
        "company_url": _first(raw, "job_listing_company_website", "company_website") or None,
        "posted_date": entry_date(raw, "published"),
        "expiry_date": entry_date(raw, "job_listing_application_deadline"),
        "source_id": _first(raw, "id") or None,
    }


def _is_atom_entry(raw: dict[str, Any]) -> bool:
    return bool(raw.get("id")) and bool(raw.get("summary"))


def _atom_company(raw: dict[str, Any]) -> str:
    candidates: list[Any] = [raw.get("author_detail")]
    authors = raw.get("authors")
    if isinstance(authors, list):
        candidates.extend(authors)
    for author in candidates:
        name = extract_text(author.get("name")) if isinstance(author, dict) else ""
        if name:
            return name
    author = raw.get("author")
    return author.strip() if isinstance(author, str) else ""


def _atom_location(raw: dict[str, Any]) -> str:
    if raw.get("location"):
        return extract_text(raw.get("location"))
    text = plain_text(_first(raw, "summary", "content"))
    match = _LOCATION_PATTERN.search(text)
    return match.group(1).strip() if match else "Unknown"


def _atom_fields(raw: dict[str, Any], source_url: str) -> dict[str, Any]:
    return {
        "title": extract_text(raw.get("title")),
        "company": _atom_company(raw) or "Unknown",
        "location": _atom_location(raw),
        "description": _first(raw, "summary", "content"),
        "url": extract_link(raw.get("link")) or extract_link(raw.get("links")),
        "posted_date": entry_date(raw, "published", "updated"),
        "source_id": extract_text(raw.get("id")) or None,
        "job_type": "full-time",
        "category": "higher-education",
    }


def _generic_fields(raw: dict[str, Any], source_url: str) -> dict[str, Any]:
    return {
        "title": extract_text(raw.get("title")) or "Untitled",
        "company": "Unknown",
        "location": "Unknown",
        "description": _first(raw, "summary", "description"),
        "url": extract_link(raw.get("link")) or extract_link(raw.get("links")),
        "job_type": "full-time",
        "category": category_from_url(source_url),
    }


Matcher = Callable[[dict[str, Any]], bool]
Extractor = Callable[[dict[str, Any], str], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class SchemaRule:
    name: str
    matches: Matcher
    extract: Extractor


DEFAULT_RULES: tuple[SchemaRule, ...] = (
    SchemaRule("listing", _is_listing, _listing_fields),
    SchemaRule("atom", _is_atom_entry, _atom_fields),
    SchemaRule("generic", lambda raw: True, _generic_fields),
)


class Normalizer:
    """Apply the first matching schema rule to a raw feed item."""

    def __init__(self, rules: tuple[SchemaRule, ...] = DEFAULT_RULES) -> None:
        if not rules:
            raise ValueError("Normalizer requires at least one schema rule")
        self.rules = rules

    def schema_of(self, raw_item: Any) -> str:
        raw = raw_item if isinstance(raw_item, dict) else {}
        return self._rule_for(raw).name

    def normalize(self, raw_item: Any, source_url: str) -> JobRecord:
        raw = raw_item if isinstance(raw_item, dict) else {}
        fields = {
            "title": "",
            "company": "",
            "location": "",
            "description": "",
            "url": "",
        }
        fields.update(self._rule_for(raw).extract(raw, source_url))
        return JobRecord(source=source_url, **fields)

    def _rule_for(self, raw: dict[str, Any]) -> SchemaRule:
        for rule in self.rules:
            if rule.matches(raw):
                return rule
        return self.rules[-1]


_DEFAULT = Normalizer()


def normalize(raw_item: Any, source_url: str) -> JobRecord:
    return _DEFAULT.normalize(raw_item, source_url)


__all__ = [
    "DEFAULT_RULES",
    "Normalizer",
    "SchemaRule",
    "category_from_url",
    "entry_date",
    "extract_link",
    "extract_text",
    "normalize",
    "parse_date",
    "plain_text",
]
