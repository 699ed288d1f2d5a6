"""Import orchestrator wiring fetching, normalization, queueing and statistics."""

from __future__ import annotations

import time
import traceback
import uuid
from concurrent.futures import Future
from datetime import datetime
from typing import Callable, Iterable

from .config import ConfigRepository, GlobalConfig
from .engine.fetcher import FeedFetcher
from .engine.normalizer import Normalizer
from .engine.processor import RecordProcessor
from .engine.queue import BaseTaskQueue, SQLiteTaskQueue
from .engine.store import JobFilters, JobPage, RunFilters, RunPage, Stores, build_stores
from .engine.thread_pool import ThreadPoolManager
from .events import LoggingSink, ProgressBroadcaster
from .infra import SQLiteManager
from .logging_conf import configure_logging, feed_logger
from .models import FeedHealth, ImportRun, ImportType, JobRecord, QueueTask, StoredJob, TriggeredBy, utcnow
from .stats import AggregateStats, StatsAggregator
from .worker import QueueWorker


def _new_run_id() -> str:
    return uuid.uuid4().hex


class ImportOrchestrator:
    """Create a run per feed, fetch it and hand its records to the queue."""

    def __init__(
        self,
        config_repository: ConfigRepository,
        thread_pool: ThreadPoolManager,
        stores: Stores,
        queue: BaseTaskQueue,
        fetcher: FeedFetcher | None = None,
        normalizer: Normalizer | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        id_factory: Callable[[], str] = _new_run_id,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config_repository = config_repository
        self.global_config: GlobalConfig = config_repository.load_global_config()
        self.thread_pool = thread_pool
        self.stores = stores
        self.queue = queue
        self.fetcher = fetcher or FeedFetcher(self.global_config.fetch, stores.feeds)
        self.normalizer = normalizer or Normalizer()
        self.broadcaster = broadcaster or ProgressBroadcaster([LoggingSink()])
        self.stats = StatsAggregator(stores.runs, self.broadcaster, clock=clock)
        self.id_factory = id_factory
        self.clock = clock
        self.logger = configure_logging().bind(component="orchestrator")

    @classmethod
    def from_repository(
        cls,
        config_repository: ConfigRepository,
        broadcaster: ProgressBroadcaster | None = None,
        manager: SQLiteManager | None = None,
    ) -> "ImportOrchestrator":
        """Build every collaborator from the stored configuration."""

        config = config_repository.load_global_config()
        manager = manager or SQLiteManager()
        thread_pool = ThreadPoolManager(default_workers=config.thread_pool_workers)
        stores = build_stores(
            config.storage, config_repository.resolve_path(config.storage.sqlite_path), manager
        )
        queue = SQLiteTaskQueue(
            config.queue,
            config_repository.resolve_path(config.queue.sqlite_path),
            manager=manager,
            pool=thread_pool,
        )
        return cls(config_repository, thread_pool, stores, queue, broadcaster=broadcaster)

    def build_worker(self) -> QueueWorker:
        processor = RecordProcessor(self.stores.jobs)
        return QueueWorker(self.queue, processor, self.stats, self.broadcaster)

    # ------------------------------------------------------------------
    def get_feed_urls(self) -> list[str]:
        return list(self.global_config.feeds)

    def trigger_import(
        self,
        triggered_by: TriggeredBy | str = TriggeredBy.MANUAL,
        import_type: ImportType | str = ImportType.FULL,
        feeds: Iterable[str] | None = None,
    ) -> list[ImportRun]:
        """Import every configured feed concurrently; one run per feed."""

        trigger = TriggeredBy(triggered_by)
        kind = ImportType(import_type)
        feed_urls = list(feeds) if feeds is not None else self.get_feed_urls()
        self.logger.info("import_triggered", feeds=len(feed_urls), triggered_by=trigger.value)
        executor = self.thread_pool.get()
        futures: list[tuple[str, Future]] = [
            (url, executor.submit(self.import_from_feed, url, trigger, kind)) for url in feed_urls
        ]
        runs: list[ImportRun] = []
        for url, future in futures:
            try:
                runs.append(future.result())
            except Exception as exc:  # noqa: BLE001
                self.logger.error("feed_import_crashed", feed=url, error=str(exc))
        self.logger.info("import_dispatched", runs=len(runs), feeds=len(feed_urls))
        return runs

    def import_from_feed(
        self,
        feed_url: str,
        triggered_by: TriggeredBy | str = TriggeredBy.MANUAL,
        import_type: ImportType | str = ImportType.FULL,
    ) -> ImportRun:
        now = self.clock()
        run = ImportRun(
            id=self.id_factory(),
            feed_url=feed_url,
            triggered_by=TriggeredBy(triggered_by),
            import_type=ImportType(import_type),
            start_time=now,
            created_at=now,
        )
        self.stores.runs.create(run)
        log = feed_logger(feed_url).bind(run_id=run.id)
        log.info("import_started", triggered_by=run.triggered_by.value, import_type=run.import_type.value)

        try:
            items = self.fetcher.fetch(feed_url)
            self.stores.runs.update_fields(run.id, total_fetched=len(items))
            records = [self.normalizer.normalize(item, feed_url) for item in items]
            queued = self._enqueue(run.id, records)
            self.stores.runs.update_fields(run.id, queued_count=queued, enqueue_sealed=True)
            log.info("records_queued", fetched=len(items), queued=queued)
        except Exception as exc:  # noqa: BLE001
            log.error("import_aborted", error=str(exc))
            self.stats.fail_run(run.id, str(exc) or type(exc).__name__, traceback.format_exc())
            return self.stores.runs.get(run.id) or run

        self.stats.reconcile(run.id, self.queue.outstanding(run.id))
        return self.stores.runs.get(run.id) or run

    def _enqueue(self, run_id: str, records: list[JobRecord]) -> int:
        batch_size = self.global_config.queue.batch_size
        stamp = int(time.time() * 1000)
        accepted = 0
        for start in range(0, len(records), batch_size):
            batch = [
                QueueTask(
                    task_id=QueueTask.build_id(run_id, record.source_id, f"{stamp}-{index}"),
                    import_run_id=run_id,
                    record=record,
                )
                for index, record in enumerate(records[start : start + batch_size], start=start)
            ]
            accepted += self.queue.add_bulk(batch)
        return accepted

    # ------------------------------------------------------------------
    def import_history(self, filters: RunFilters | None = None) -> RunPage:
        return self.stores.runs.list_runs(filters or RunFilters())

    def get_run(self, run_id: str) -> ImportRun | None:
        return self.stores.runs.get(run_id)

    def list_jobs(self, filters: JobFilters | None = None) -> JobPage:
        return self.stores.jobs.list_jobs(filters or JobFilters())

    def get_job(self, job_id: str) -> StoredJob | None:
        return self.stores.jobs.get(job_id)

    def get_stats(self) -> AggregateStats:
        return self.stats.get_aggregate_stats()

    def feed_health(self) -> list[FeedHealth]:
        return self.stores.feeds.list_all()

    def reconcile(self) -> list[ImportRun]:
        return self.stats.reconcile_all(self.queue)

    def close(self) -> None:
        self.queue.close()
        self.fetcher.close()
        self.stores.close()
        self.thread_pool.shutdown()


__all__ = ["ImportOrchestrator"]
