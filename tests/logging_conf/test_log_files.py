from __future__ import annotations

import logging
from pathlib import Path

import pytest

from job_importer.logging_conf import available_feed_logs, feed_logger, feed_slug, log_dir, tail_log

FEED_URL = "https://jobicy.com/?feed=job_feed&job_categories=data-science"


@pytest.mark.parametrize(
    ("url", "slug"),
    [
        (FEED_URL, "jobicy.com-feed_job_feed_job_categories_data-science"),
        ("https://www.higheredjobs.com/rss/articleFeed.cfm", "www.higheredjobs.com"),
        ("not a url", "not_a_url"),
    ],
)
def test_feed_slug(url: str, slug: str) -> None:
    assert feed_slug(url) == slug


def test_log_dir_follows_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JOB_IMPORTER_HOME", str(tmp_path))
    assert log_dir() == (tmp_path / "logs").resolve()
    assert log_dir().is_dir()


def test_tail_log_keeps_last_lines(tmp_path: Path) -> None:
    path = tmp_path / "importer.log"
    assert tail_log(path) == []
    path.write_text("".join(f"line {number}\n" for number in range(10)), encoding="utf-8")
    assert tail_log(path, 3) == ["line 7\n", "line 8\n", "line 9\n"]


def test_feed_logger_writes_one_file_per_feed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    logger_name = f"job_importer.feed.{feed_slug(FEED_URL)}"
    monkeypatch.setenv("JOB_IMPORTER_HOME", str(tmp_path / "first"))
    feed_logger(FEED_URL)
    monkeypatch.setenv("JOB_IMPORTER_HOME", str(tmp_path / "second"))
    feed_logger(FEED_URL)
    feed_logger(FEED_URL)

    handlers = logging.getLogger(logger_name).handlers
    expected = (tmp_path / "second" / "logs" / "feeds" / f"{feed_slug(FEED_URL)}.log").resolve()
    assert [Path(handler.baseFilename).resolve() for handler in handlers] == [expected]
    assert [path.name for path in available_feed_logs()] == [expected.name]

    for handler in list(handlers):
        logging.getLogger(logger_name).removeHandler(handler)
        handler.close()
