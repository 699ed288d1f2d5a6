"""Job feed importer: fetch, normalize, deduplicate and persist job postings."""

__version__ = "1.0.0"
