"""Error taxonomy shared by fetch, normalize, queue and persistence layers."""

from __future__ import annotations


class JobImporterError(Exception):
    """Base class for every error raised by the importer core."""


class PermanentTaskError(JobImporterError):
    """Marker for task failures that must not be retried by the queue."""


class FetchError(JobImporterError):
    """Feed could not be retrieved (timeout, HTTP status or network)."""

    KINDS = ("timeout", "http", "network")

    def __init__(self, kind: str, url: str, message: str, status_code: int | None = None) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown fetch error kind: {kind}")
        self.kind = kind
        self.url = url
        self.status_code = status_code
        super().__init__(f"{kind} error fetching {url}: {message}")


class ParseError(JobImporterError):
    """Feed payload is malformed or has an unsupported layout."""


class ValidationError(PermanentTaskError):
    """A record is missing one of its required fields."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field.capitalize()} is required")


class PersistenceError(JobImporterError):
    """Record or run store failed; transient, retried by the queue."""


class QueueError(JobImporterError):
    """Enqueue/dequeue infrastructure failure."""


__all__ = [
    "FetchError",
    "JobImporterError",
    "ParseError",
    "PermanentTaskError",
    "PersistenceError",
    "QueueError",
    "ValidationError",
]
