"""HTTP feed fetching with per-feed health tracking."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from ..config import FetchConfig
from ..errors import FetchError, ParseError
from ..logging_conf import feed_logger
from ..models import FeedHealth, utcnow
from .normalizer import category_from_url
from .parser import extract_items, parse_document
from .store import BaseFeedHealthStore

_JOB_CATEGORY_PATTERN = re.compile(r"job_categories=([^&]+)")


def feed_display_name(url: str) -> str:
    """Human friendly label for a feed url."""

    match = _JOB_CATEGORY_PATTERN.search(url)
    if match:
        return f"Jobicy - {match.group(1)}"
    if "higheredjobs" in url:
        return "HigherEdJobs"
    return urlparse(url).hostname or url


class FeedFetcher:
    """Download a feed, split it into raw items and record the attempt."""

    def __init__(
        self,
        fetch_config: FetchConfig,
        health_store: BaseFeedHealthStore,
        client: httpx.Client | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.fetch_config = fetch_config
        self.health_store = health_store
        self._client = client or httpx.Client(
            follow_redirects=True,
            timeout=fetch_config.timeout,
            headers={"User-Agent": fetch_config.user_agent},
        )
        self.logger = logger or structlog.get_logger("job_importer.fetcher")

    def close(self) -> None:
        self._client.close()

    def fetch(self, url: str) -> list[dict[str, Any]]:
        log = feed_logger(url)
        log.info("feed_fetch_started")
        try:
            response = self._client.get(
                url,
                timeout=self.fetch_config.timeout,
                headers={"User-Agent": self.fetch_config.user_agent},
            )
            if response.status_code >= 400:
                raise FetchError("http", url, f"HTTP {response.status_code}", status_code=response.status_code)
            document = parse_document(response.content)
            if document.get("bozo"):
                log.warning("feed_malformed", error=str(document.get("bozo_exception")), version=document.get("version"))
            items = extract_items(document)
        except httpx.TimeoutException as exc:
            self._record(url, None)
            log.error("feed_fetch_failed", kind="timeout", error=str(exc))
            raise FetchError("timeout", url, str(exc) or "request timed out") from exc
        except httpx.HTTPError as exc:
            self._record(url, None)
            log.error("feed_fetch_failed", kind="network", error=str(exc))
            raise FetchError("network", url, str(exc) or exc.__class__.__name__) from exc
        except (FetchError, ParseError) as exc:
            self._record(url, None)
            log.error("feed_fetch_failed", kind=getattr(exc, "kind", "parse"), error=str(exc))
            raise
        self._record(url, len(items))
        log.info("feed_fetched", items=len(items), status_code=response.status_code)
        return items

    # ------------------------------------------------------------------
    def _record(self, url: str, item_count: int | None) -> None:
        """Update feed health; ``item_count`` of ``None`` records a failure."""

        now = utcnow()
        try:
            health = self.health_store.find_by_url(url) or FeedHealth(
                url=url,
                name=feed_display_name(url),
                category=category_from_url(url),
            )
            if item_count is None:
                health.record_failure(now)
            else:
                health.record_success(item_count, now)
            self.health_store.upsert(health)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("feed_health_update_failed", url=url, error=str(exc))


__all__ = ["FeedFetcher", "feed_display_name"]
