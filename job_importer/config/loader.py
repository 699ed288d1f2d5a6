"""Configuration loading helpers for the job importer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import yaml

from .models import GlobalConfig

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
GLOBAL_CONFIG_FILENAME = "global_config.yaml"

# Environment variable -> (dotted config path, converter)
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "QUEUE_CONCURRENCY": ("queue.concurrency", int),
    "BATCH_SIZE": ("queue.batch_size", int),
    "MAX_RETRIES": ("queue.max_retries", int),
    "RETRY_DELAY": ("queue.retry_delay", float),
    "FETCH_TIMEOUT": ("fetch.timeout", float),
    "MONGODB_URI": ("storage.mongodb_uri", str),
    "STORAGE_BACKEND": ("storage.backend", str),
    "CRON_SCHEDULE": ("schedule.cron", str),
    "ENABLE_CRON": ("schedule.enabled", lambda raw: raw.strip().lower() == "true"),
}


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


def apply_env_overrides(payload: dict, environ: dict[str, str] | None = None) -> dict:
    """Overlay recognised environment variables onto a raw config mapping."""

    env = os.environ if environ is None else environ
    merged = json.loads(json.dumps(payload, default=str))
    for variable, (dotted, convert) in ENV_OVERRIDES.items():
        raw = env.get(variable)
        if raw is None or raw == "":
            continue
        section, key = dotted.split(".", 1)
        merged.setdefault(section, {})[key] = convert(raw)
    return merged


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get("JOB_IMPORTER_HOME")
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def global_config_path(self) -> Path:
        return self.data_dir / GLOBAL_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._global_cache: GlobalConfig | None = None

    def load_global_config(self) -> GlobalConfig:
        if self._global_cache is not None:
            return self._global_cache
        path = self.locator.global_config_path()
        if path.exists():
            payload = _read_file(path)
        else:
            self.save_global_config(GlobalConfig())
            payload = GlobalConfig().model_dump(mode="json")
        global_cfg = GlobalConfig.model_validate(apply_env_overrides(payload))
        self._global_cache = global_cfg
        return global_cfg

    def save_global_config(self, config: GlobalConfig) -> None:
        path = self.locator.global_config_path()
        payload = config.model_dump(mode="json")
        _write_file(path, payload)
        self._global_cache = config

    def reload(self) -> GlobalConfig:
        self._global_cache = None
        return self.load_global_config()

    def resolve_path(self, path: Path) -> Path:
        """Anchor a relative data path at the project root."""

        return self.load_global_config().resolve(self.locator.project_root, path)


__all__ = ["CONFIG_EXTENSIONS", "ConfigLocator", "ConfigRepository", "apply_env_overrides"]
