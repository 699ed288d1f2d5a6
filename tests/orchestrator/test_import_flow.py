from __future__ import annotations

from typing import Iterable

import httpx
import pytest

from job_importer.config import ConfigRepository, GlobalConfig
from job_importer.engine.fetcher import FeedFetcher
from job_importer.engine.processor import ProcessResult, RecordProcessor
from job_importer.errors import FetchError, PersistenceError
from job_importer.events import CollectingSink, ProgressBroadcaster
from job_importer.infra import SQLiteManager
from job_importer.models import ImportType, JobRecord, RunStatus, TriggeredBy
from job_importer.orchestrator import ImportOrchestrator
from job_importer.worker import QueueWorker

FEED_URL = "https://jobicy.com/?feed=job_feed&job_categories=data-science"
OTHER_FEED = "https://jobicy.com/?feed=job_feed&job_categories=business"


class FlakyProcessor(RecordProcessor):
    def __init__(self, store, failures: int) -> None:
        super().__init__(store)
        self.failures = failures
        self.calls = 0

    def process(self, record: JobRecord) -> ProcessResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise PersistenceError("database unavailable")
        return super().process(record)


def _item(number: int) -> dict[str, str]:
    return {
        "title": f"Engineer {number}",
        "summary": "Build things.",
        "link": f"https://jobicy.com/jobs/{number}",
        "id": f"https://jobicy.com/?p={number}",
        "job_listing_company": "Acme",
        "job_listing_location": "Europe",
    }


def _linkless(number: int) -> dict[str, str]:
    return {"title": f"Broken {number}", "summary": "No link or guid."}


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def orchestrator(
    importer_config: GlobalConfig,
    temp_config_repository: ConfigRepository,
    sqlite_manager: SQLiteManager,
    sink: CollectingSink,
    static_fetcher,
) -> Iterable[ImportOrchestrator]:
    orchestrator = ImportOrchestrator.from_repository(
        temp_config_repository, broadcaster=ProgressBroadcaster([sink]), manager=sqlite_manager
    )
    orchestrator.fetcher.close()
    orchestrator.fetcher = static_fetcher
    yield orchestrator
    orchestrator.close()


def _drain(worker: QueueWorker) -> None:
    assert worker.queue.join(timeout=10)
    worker.stop(drain=True, timeout=10)


def test_valid_and_invalid_records_complete_the_run(orchestrator: ImportOrchestrator, sink: CollectingSink) -> None:
    orchestrator.fetcher.responses[FEED_URL] = [_item(1), _item(2), _linkless(3), _item(4), _linkless(5)]
    worker = orchestrator.build_worker()
    worker.start()

    [run] = orchestrator.trigger_import(TriggeredBy.MANUAL, ImportType.FULL)
    _drain(worker)

    final = orchestrator.get_run(run.id)
    assert final.status is RunStatus.COMPLETED
    assert final.total_fetched == 5
    assert final.queued_count == 5
    assert final.new_count == 3
    assert final.updated_count == 0
    assert final.failed_count == 2
    assert final.total_imported == 3
    assert [entry.reason for entry in final.errors] == ["Url is required", "Url is required"]
    assert final.duration is not None and final.end_time is not None
    assert orchestrator.stores.jobs.count() == 3
    assert len(sink.of_kind("complete")) == 1
    assert len(sink.of_kind("job_processed")) == 3
    assert len(sink.of_kind("record_error")) == 2


def test_reimport_counts_updates(orchestrator: ImportOrchestrator) -> None:
    orchestrator.fetcher.responses[FEED_URL] = [_item(1), _item(2)]
    worker = orchestrator.build_worker()
    worker.start()

    orchestrator.trigger_import()
    assert worker.queue.join(timeout=10)
    [second] = orchestrator.trigger_import(TriggeredBy.SCHEDULED)
    _drain(worker)

    final = orchestrator.get_run(second.id)
    assert final.status is RunStatus.COMPLETED
    assert final.triggered_by is TriggeredBy.SCHEDULED
    assert (final.new_count, final.updated_count) == (0, 2)
    assert orchestrator.stores.jobs.count() == 2


def test_fetch_failure_fails_the_run(orchestrator: ImportOrchestrator, sink: CollectingSink) -> None:
    orchestrator.fetcher.responses[FEED_URL] = FetchError("timeout", FEED_URL, "read timed out")

    [run] = orchestrator.trigger_import()

    assert run.status is RunStatus.FAILED
    assert run.queued_count == 0
    assert "timeout" in run.errors[-1].reason
    assert run.errors[-1].trace
    assert orchestrator.queue.outstanding(run.id) == 0
    [event] = sink.of_kind("failed")
    assert event.run_id == run.id


def test_empty_feed_completes_immediately(orchestrator: ImportOrchestrator, sink: CollectingSink) -> None:
    orchestrator.fetcher.responses[FEED_URL] = []

    [run] = orchestrator.trigger_import()

    assert run.status is RunStatus.COMPLETED
    assert run.total_fetched == 0
    assert run.processed == 0
    assert len(sink.of_kind("complete")) == 1


def test_transient_failures_are_counted_once(orchestrator: ImportOrchestrator) -> None:
    orchestrator.fetcher.responses[FEED_URL] = [_item(1)]
    processor = FlakyProcessor(orchestrator.stores.jobs, failures=2)
    worker = QueueWorker(orchestrator.queue, processor, orchestrator.stats)
    worker.start()

    [run] = orchestrator.trigger_import()
    _drain(worker)

    final = orchestrator.get_run(run.id)
    assert processor.calls == 3
    assert final.status is RunStatus.COMPLETED
    assert (final.new_count, final.failed_count) == (1, 0)
    assert final.errors == []


def test_exhausted_retries_record_one_failure(orchestrator: ImportOrchestrator) -> None:
    orchestrator.fetcher.responses[FEED_URL] = [_item(1), _item(2)]
    processor = FlakyProcessor(orchestrator.stores.jobs, failures=10)
    worker = QueueWorker(orchestrator.queue, processor, orchestrator.stats)
    worker.start()

    [run] = orchestrator.trigger_import()
    _drain(worker)

    final = orchestrator.get_run(run.id)
    assert final.status is RunStatus.COMPLETED
    assert final.failed_count == 2
    assert final.processed == final.queued_count
    assert all(entry.reason == "database unavailable" for entry in final.errors)


def test_run_completes_when_worker_starts_later(orchestrator: ImportOrchestrator) -> None:
    orchestrator.fetcher.responses[FEED_URL] = [_item(1), _item(2), _item(3)]

    [run] = orchestrator.trigger_import()
    assert run.status is RunStatus.IN_PROGRESS
    assert run.enqueue_sealed is True
    assert orchestrator.queue.outstanding(run.id) == 3

    worker = orchestrator.build_worker()
    worker.start()
    _drain(worker)

    assert orchestrator.get_run(run.id).status is RunStatus.COMPLETED
    assert orchestrator.get_stats().total_new_jobs == 3


def test_redelivered_outcomes_publish_events_once(orchestrator: ImportOrchestrator, sink: CollectingSink) -> None:
    orchestrator.fetcher.responses[FEED_URL] = [_item(1), _item(2)]
    [run] = orchestrator.trigger_import()
    worker = orchestrator.build_worker()

    processed = orchestrator.queue._claim()
    worker.handle(processed)
    worker.handle(processed)
    failed = orchestrator.queue._claim()
    worker.on_failed(failed, PersistenceError("database unavailable"))
    worker.on_failed(failed, PersistenceError("database unavailable"))

    final = orchestrator.get_run(run.id)
    assert (final.new_count, final.updated_count, final.failed_count) == (1, 0, 1)
    assert len(sink.of_kind("job_processed")) == 1
    assert len(sink.of_kind("record_error")) == 1


def test_each_feed_gets_its_own_run(orchestrator: ImportOrchestrator) -> None:
    orchestrator.fetcher.responses[OTHER_FEED] = []

    runs = orchestrator.trigger_import(feeds=[FEED_URL, OTHER_FEED])

    assert sorted(run.feed_url for run in runs) == sorted([FEED_URL, OTHER_FEED])
    assert len({run.id for run in runs}) == 2
    page = orchestrator.import_history()
    assert page.total == 2


def test_crashed_feed_is_skipped(orchestrator: ImportOrchestrator) -> None:
    orchestrator.id_factory = lambda: "same-id"

    runs = orchestrator.trigger_import(feeds=[FEED_URL, OTHER_FEED])

    assert len(runs) == 1
    assert orchestrator.import_history().total == 1


def test_configured_feeds_are_used(orchestrator: ImportOrchestrator) -> None:
    assert orchestrator.get_feed_urls() == [FEED_URL]
    orchestrator.trigger_import()
    assert orchestrator.fetcher.calls == [FEED_URL]


def test_fetch_timeout_updates_feed_health(orchestrator: ImportOrchestrator) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    orchestrator.fetcher = FeedFetcher(
        orchestrator.global_config.fetch,
        orchestrator.stores.feeds,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )

    [run] = orchestrator.trigger_import()

    assert run.status is RunStatus.FAILED
    assert len(run.errors) == 1
    assert "timeout" in run.errors[0].reason
    assert run.total_fetched == 0
    [health] = orchestrator.feed_health()
    assert health.failure_count == 1
    assert health.url == FEED_URL


def test_concurrent_same_identity_tasks_count_exactly(orchestrator: ImportOrchestrator) -> None:
    items = []
    for number in range(24):
        item = _item(number)
        item["title"] = "Engineer" if number % 2 else "  ENGINEER "
        items.append(item)
    orchestrator.fetcher.responses[FEED_URL] = items
    worker = orchestrator.build_worker()
    worker.start()

    [run] = orchestrator.trigger_import()
    _drain(worker)

    final = orchestrator.get_run(run.id)
    assert final.status is RunStatus.COMPLETED
    assert orchestrator.stores.jobs.count() == 1
    assert final.new_count == 1
    assert final.updated_count == 23
    assert final.total_imported == 24
