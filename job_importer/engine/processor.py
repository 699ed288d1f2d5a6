"""Validate, deduplicate and persist queued job records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import structlog

from ..errors import JobImporterError, PersistenceError, ValidationError
from ..models import JobRecord, Outcome, utcnow
from .dedup import IdentityKey
from .store import BaseJobStore

REQUIRED_FIELDS = ("title", "company", "location", "url", "source")


@dataclass(slots=True)
class ProcessResult:
    is_new: bool
    record: dict[str, Any]

    @property
    def outcome(self) -> Outcome:
        return Outcome.NEW if self.is_new else Outcome.UPDATED


def validate_record(record: JobRecord) -> None:
    """Raise :class:`ValidationError` for the first blank required field."""

    for name in REQUIRED_FIELDS:
        value = getattr(record, name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(name)


class RecordProcessor:
    """Idempotent upsert keyed on the record identity."""

    def __init__(
        self,
        store: BaseJobStore,
        logger: structlog.BoundLogger | None = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.store = store
        self.logger = logger or structlog.get_logger("job_importer.processor")
        self.clock = clock

    def process(self, record: JobRecord) -> ProcessResult:
        validate_record(record)
        key = IdentityKey.for_record(record)
        try:
            result = self.store.upsert(key, record, self.clock())
        except JobImporterError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"Failed to store job '{record.title}': {exc}") from exc
        self.logger.debug(
            "job_upserted",
            title=record.title,
            company=record.company,
            is_new=result.was_inserted,
        )
        return ProcessResult(is_new=result.was_inserted, record=result.record)

    def find_duplicates(self) -> list[list[Any]]:
        return self.store.find_duplicates()

    def remove_duplicates(self) -> int:
        """Keep the oldest record of every duplicate group, delete the rest."""

        removed = 0
        for ids in self.find_duplicates():
            removed += self.store.delete_ids(list(ids[1:]))
        if removed:
            self.logger.info("duplicates_removed", count=removed)
        return removed


__all__ = ["REQUIRED_FIELDS", "ProcessResult", "RecordProcessor", "validate_record"]
