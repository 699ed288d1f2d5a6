"""Identity key derivation used to deduplicate job records."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from ..models import JobRecord


def _normalise_part(value: str | None) -> str:
    return (value or "").strip().lower()


@dataclass(frozen=True, slots=True)
class IdentityKey:
    """Case-insensitive, trimmed (title, company, location) triple."""

    title: str
    company: str
    location: str

    @classmethod
    def of(cls, title: str | None, company: str | None, location: str | None) -> "IdentityKey":
        return cls(_normalise_part(title), _normalise_part(company), _normalise_part(location))

    @classmethod
    def for_record(cls, record: JobRecord) -> "IdentityKey":
        return cls.of(record.title, record.company, record.location)

    def as_filter(self) -> dict[str, str]:
        return {"key_title": self.title, "key_company": self.company, "key_location": self.location}

    def fingerprint(self) -> str:
        raw = "\x1f".join((self.title, self.company, self.location))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


__all__ = ["IdentityKey"]
