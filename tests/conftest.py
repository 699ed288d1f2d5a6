"""Shared fixtures: temporary configuration, SQLite stores and sample feeds."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from job_importer.config import ConfigLocator, ConfigRepository, GlobalConfig, QueueConfig, StorageConfig
from job_importer.config.loader import ENV_OVERRIDES
from job_importer.engine.queue import SQLiteTaskQueue
from job_importer.engine.store import Stores, build_stores
from job_importer.engine.thread_pool import ThreadPoolManager
from job_importer.infra import SQLiteManager
from job_importer.models import JobRecord

JOBICY_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:content="http://purl.org/rss/1.0/modules/content/"
     xmlns:job_listing="https://jobicy.com/job_listing">
  <channel>
    <title>Jobicy</title>
    <item>
      <title>Senior Data Engineer</title>
      <link>https://jobicy.com/jobs/1001-senior-data-engineer</link>
      <guid isPermaLink="false">https://jobicy.com/?p=1001</guid>
      <pubDate>Mon, 14 Oct 2024 08:00:00 +0000</pubDate>
      <description>Build pipelines.</description>
      <job_listing:company>Acme Analytics</job_listing:company>
      <job_listing:location>Europe</job_listing:location>
      <job_listing:job_type>full-time</job_listing:job_type>
      <job_listing:salary>$120k</job_listing:salary>
    </item>
    <item>
      <title>Product Designer</title>
      <link>https://jobicy.com/jobs/1002-product-designer</link>
      <guid isPermaLink="false">https://jobicy.com/?p=1002</guid>
      <pubDate>Tue, 15 Oct 2024 09:30:00 +0000</pubDate>
      <description>Design products.</description>
      <job_listing:company>Pixel Works</job_listing:company>
    </item>
  </channel>
</rss>
"""

HIGHERED_ATOM = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>HigherEdJobs</title>
  <entry>
    <id>urn:higheredjobs:42</id>
    <title type="html">Assistant Professor of Biology</title>
    <link rel="self" href="https://www.higheredjobs.com/api/42"/>
    <link rel="alternate" href="https://www.higheredjobs.com/details.cfm?JobCode=42"/>
    <author><name>State University</name></author>
    <published>2024-10-14T08:00:00Z</published>
    <summary type="html">&lt;p&gt;Location: Boston, MA&lt;/p&gt;&lt;p&gt;Teach biology.&lt;/p&gt;</summary>
  </entry>
</feed>
"""


class StaticFetcher:
    """Serve canned raw items (or raise) per feed url."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[str] = []

    def fetch(self, url: str) -> list[dict[str, Any]]:
        self.calls.append(url)
        result = self.responses.get(url, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    def close(self) -> None:
        return


@pytest.fixture
def jobicy_rss() -> str:
    return JOBICY_RSS


@pytest.fixture
def highered_atom() -> str:
    return HIGHERED_ATOM


@pytest.fixture
def make_record() -> Callable[..., JobRecord]:
    def _builder(**overrides: Any) -> JobRecord:
        base: dict[str, Any] = {
            "title": "Backend Engineer",
            "company": "Acme",
            "location": "Remote",
            "description": "Write services.",
            "url": "https://example.com/jobs/1",
            "source": "https://example.com/feed",
            "source_id": "job-1",
        }
        base.update(overrides)
        return JobRecord(**base)

    return _builder


@pytest.fixture
def sqlite_manager() -> Iterable[SQLiteManager]:
    manager = SQLiteManager()
    yield manager
    manager.close_all()


@pytest.fixture
def sqlite_stores(tmp_path: Path, sqlite_manager: SQLiteManager) -> Iterable[Stores]:
    stores = build_stores(StorageConfig(), tmp_path / "importer.db", sqlite_manager)
    yield stores
    stores.close()


@pytest.fixture
def fast_queue_config() -> QueueConfig:
    return QueueConfig(
        name="test-queue",
        concurrency=4,
        batch_size=2,
        max_retries=3,
        retry_delay=0.0,
        max_backoff=0.0,
        poll_interval=0.01,
    )


@pytest.fixture
def task_queue(tmp_path: Path, sqlite_manager: SQLiteManager, fast_queue_config: QueueConfig) -> Iterable[SQLiteTaskQueue]:
    pool = ThreadPoolManager(default_workers=2)
    queue = SQLiteTaskQueue(fast_queue_config, tmp_path / "queue.db", manager=sqlite_manager, pool=pool)
    yield queue
    queue.close()
    pool.shutdown()


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("JOB_IMPORTER_HOME", str(tmp_path))
    for variable in ENV_OVERRIDES:
        monkeypatch.delenv(variable, raising=False)
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository


@pytest.fixture
def importer_config(temp_config_repository: ConfigRepository, fast_queue_config: QueueConfig) -> GlobalConfig:
    config = GlobalConfig(
        feeds=["https://jobicy.com/?feed=job_feed&job_categories=data-science"],
        queue=fast_queue_config,
        thread_pool_workers=2,
    )
    temp_config_repository.save_global_config(config)
    return config


@pytest.fixture
def static_fetcher() -> StaticFetcher:
    return StaticFetcher()
