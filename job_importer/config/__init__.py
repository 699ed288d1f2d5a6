"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository, apply_env_overrides
from .models import (
    DEFAULT_FEEDS,
    FetchConfig,
    GlobalConfig,
    QueueConfig,
    ScheduleConfig,
    StorageBackend,
    StorageConfig,
)

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
    "DEFAULT_FEEDS",
    "FetchConfig",
    "GlobalConfig",
    "QueueConfig",
    "ScheduleConfig",
    "StorageBackend",
    "StorageConfig",
    "apply_env_overrides",
]
