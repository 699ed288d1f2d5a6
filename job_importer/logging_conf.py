"""Logging setup: structlog events rendered as JSON lines by stdlib handlers.

``importer.log`` receives everything at INFO and above, ``error.log`` only
errors, and every feed additionally writes to ``feeds/<slug>.log``. All files
rotate by size and live under :func:`log_dir`, which follows
``JOB_IMPORTER_HOME`` like the rest of the on-disk state.
"""

from __future__ import annotations

import logging
import logging.config
import re
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path
from urllib.parse import urlparse

import structlog

from .config import ConfigLocator

ROOT_LOGGER = "job_importer"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

_configured_level: str | None = None


def log_dir() -> Path:
    return ConfigLocator().logs_dir


def feed_slug(feed_url: str) -> str:
    """Return a filesystem-friendly name for a feed url."""

    parsed = urlparse(feed_url)
    raw = f"{parsed.hostname or 'feed'}-{parsed.query}" if parsed.query else parsed.hostname or feed_url
    return re.sub(r"[^0-9A-Za-z_.-]+", "_", raw).strip("_")[:120] or "feed"


def _rotating(path: Path, level: str) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "filename": str(path),
        "maxBytes": MAX_LOG_BYTES,
        "backupCount": LOG_BACKUPS,
        "encoding": "utf-8",
        "formatter": "json",
    }


def _logging_dict(directory: Path, level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"json": {"()": "pythonjsonlogger.jsonlogger.JsonFormatter", "fmt": JSON_FORMAT}},
        "handlers": {
            "console": {"class": "logging.StreamHandler", "level": level, "formatter": "json"},
            "importer_file": _rotating(directory / "importer.log", "INFO"),
            "error_file": _rotating(directory / "error.log", "ERROR"),
        },
        "loggers": {
            ROOT_LOGGER: {
                "handlers": ["console", "importer_file", "error_file"],
                "level": level,
                "propagate": False,
            },
        },
    }


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Install handlers once; a later verbose call only lowers the level to DEBUG."""

    global _configured_level
    level = "DEBUG" if verbose else "INFO"
    if _configured_level is None:
        directory = log_dir()
        (directory / "feeds").mkdir(parents=True, exist_ok=True)
        logging.config.dictConfig(_logging_dict(directory, level))
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _configured_level = level
    elif verbose and _configured_level != "DEBUG":
        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(logging.DEBUG)
        for handler in root.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(logging.DEBUG)
        _configured_level = "DEBUG"
    return structlog.get_logger(ROOT_LOGGER)


def feed_logger(feed_url: str, verbose: bool = False) -> structlog.BoundLogger:
    """Logger bound to ``feed_url`` whose records also land in the feed's own file."""

    configure_logging(verbose)
    slug = feed_slug(feed_url)
    path = log_dir() / "feeds" / f"{slug}.log"
    name = f"{ROOT_LOGGER}.feed.{slug}"
    py_logger = logging.getLogger(name)
    current = [handler for handler in py_logger.handlers if isinstance(handler, logging.FileHandler)]
    if not any(handler.baseFilename == str(path) for handler in current):
        # A feed writes to one file; drop handlers left over from another log dir.
        for handler in current:
            py_logger.removeHandler(handler)
            handler.close()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
        shared = logging.getLogger(ROOT_LOGGER).handlers
        if shared:
            handler.setFormatter(shared[0].formatter)
        handler.setLevel(logging.INFO)
        py_logger.addHandler(handler)
    return structlog.get_logger(name).bind(feed=feed_url)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        return list(deque(stream, maxlen=line_count))


def available_feed_logs() -> list[Path]:
    return sorted((log_dir() / "feeds").glob("*.log"))


__all__ = [
    "available_feed_logs",
    "configure_logging",
    "feed_logger",
    "feed_slug",
    "log_dir",
    "tail_log",
]
