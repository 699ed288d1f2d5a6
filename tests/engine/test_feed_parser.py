from __future__ import annotations

import time

import pytest

from job_importer.engine.parser import FORMAT_KEY, extract_items, parse_document, parse_feed
from job_importer.errors import ParseError


def test_rss_items_flatten_namespaced_fields(jobicy_rss: str) -> None:
    items = parse_feed(jobicy_rss)
    assert len(items) == 2
    first = items[0]
    assert first["title"] == "Senior Data Engineer"
    assert first["summary"] == "Build pipelines."
    assert first["job_listing_company"] == "Acme Analytics"
    assert first["job_listing_location"] == "Europe"
    assert first["job_listing_salary"] == "$120k"
    assert first["id"] == "https://jobicy.com/?p=1001"
    assert first["link"] == "https://jobicy.com/jobs/1001-senior-data-engineer"
    assert isinstance(first["published_parsed"], time.struct_time)
    assert first[FORMAT_KEY] == "rss20"
    assert type(first) is dict


def test_atom_entries_expose_author_and_alternate_link(highered_atom: str) -> None:
    items = parse_feed(highered_atom.encode("utf-8"))
    assert len(items) == 1
    entry = items[0]
    assert entry["id"] == "urn:higheredjobs:42"
    assert entry["title"] == "Assistant Professor of Biology"
    assert entry["author_detail"]["name"] == "State University"
    assert entry["link"] == "https://www.higheredjobs.com/details.cfm?JobCode=42"
    assert [link["rel"] for link in entry["links"]] == ["self", "alternate"]
    assert "Location: Boston, MA" in entry["summary"]
    assert entry[FORMAT_KEY] == "atom10"


def test_single_item_feed() -> None:
    payload = '<rss version="2.0"><channel><title>One</title><item><title>Only</title></item></channel></rss>'
    [item] = parse_feed(payload)
    assert item["title"] == "Only"


def test_empty_channel_yields_no_items() -> None:
    assert parse_feed('<rss version="2.0"><channel><title>Empty</title></channel></rss>') == []


def test_parse_document_keeps_feed_metadata(jobicy_rss: str) -> None:
    document = parse_document(jobicy_rss)
    assert document["feed"]["title"] == "Jobicy"
    assert not document.get("bozo")


@pytest.mark.parametrize("payload", ["", "<rss><channel>", "not xml at all", "<html><body>nope</body></html>"])
def test_unusable_payload_raises_parse_error(payload: str) -> None:
    with pytest.raises(ParseError):
        parse_feed(payload)


def test_document_without_dialect_is_unsupported() -> None:
    with pytest.raises(ParseError, match="Unsupported feed layout"):
        extract_items({"entries": [{"title": "x"}]})
