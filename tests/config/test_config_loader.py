from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from job_importer.config import ConfigLocator, ConfigRepository, GlobalConfig, QueueConfig, StorageBackend
from job_importer.config.loader import apply_env_overrides
from job_importer.config.models import DEFAULT_FEEDS


def test_config_locator_uses_env_and_creates_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JOB_IMPORTER_HOME", str(tmp_path))
    locator = ConfigLocator()
    assert locator.project_root == tmp_path.resolve()
    assert locator.data_dir == tmp_path.resolve() / "data"
    assert locator.logs_dir.exists()
    assert locator.global_config_path().name == "global_config.yaml"


def test_missing_config_is_created_with_defaults(temp_config_repository: ConfigRepository) -> None:
    config = temp_config_repository.load_global_config()
    assert config.feeds == DEFAULT_FEEDS
    assert config.queue.concurrency == 5
    assert config.storage.backend is StorageBackend.SQLITE
    assert temp_config_repository.locator.global_config_path().exists()


def test_config_repository_roundtrip(temp_config_repository: ConfigRepository) -> None:
    config = GlobalConfig(feeds=["https://example.com/feed"], thread_pool_workers=8)
    temp_config_repository.save_global_config(config)
    reloaded = temp_config_repository.reload()
    assert reloaded == config
    assert temp_config_repository.resolve_path(Path("data/x.db")) == (
        temp_config_repository.locator.project_root / "data" / "x.db"
    ).resolve()


def test_environment_overrides_file_values(
    temp_config_repository: ConfigRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    temp_config_repository.save_global_config(GlobalConfig(feeds=["https://example.com/feed"]))
    monkeypatch.setenv("QUEUE_CONCURRENCY", "9")
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("ENABLE_CRON", "TRUE")
    monkeypatch.setenv("CRON_SCHEDULE", "*/5 * * * *")
    monkeypatch.setenv("STORAGE_BACKEND", "mongodb")

    config = temp_config_repository.reload()

    assert config.queue.concurrency == 9
    assert config.queue.max_retries == 5
    assert config.schedule.enabled is True
    assert config.schedule.cron == "*/5 * * * *"
    assert config.storage.backend is StorageBackend.MONGODB
    assert config.feeds == ["https://example.com/feed"]


def test_apply_env_overrides_ignores_blank_values() -> None:
    merged = apply_env_overrides({"queue": {"batch_size": 10}}, {"BATCH_SIZE": "", "RETRY_DELAY": "1.5"})
    assert merged == {"queue": {"batch_size": 10, "retry_delay": 1.5}}


def test_feeds_are_trimmed_and_deduplicated() -> None:
    config = GlobalConfig(feeds=[" https://a.example/feed ", "https://a.example/feed", "", "https://b.example/rss"])
    assert config.feeds == ["https://a.example/feed", "https://b.example/rss"]
    with pytest.raises(ValidationError):
        GlobalConfig(feeds=["ftp://nope"])


@pytest.mark.parametrize(
    "overrides",
    [
        {"concurrency": 0},
        {"batch_size": 0},
        {"max_retries": 0},
        {"retry_delay": 10.0, "max_backoff": 5.0},
    ],
)
def test_queue_config_bounds(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        QueueConfig(**overrides)
