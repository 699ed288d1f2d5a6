"""Engine components: fetch → parse → normalize → queue → upsert."""

from .dedup import IdentityKey
from .fetcher import FeedFetcher, feed_display_name
from .normalizer import Normalizer, normalize
from .parser import parse_document, parse_feed
from .processor import ProcessResult, RecordProcessor
from .queue import BaseTaskQueue, QueueStats, SQLiteTaskQueue, TaskStatus, backoff_delay
from .thread_pool import ThreadPoolManager

__all__ = [
    "BaseTaskQueue",
    "FeedFetcher",
    "IdentityKey",
    "Normalizer",
    "ProcessResult",
    "QueueStats",
    "RecordProcessor",
    "SQLiteTaskQueue",
    "TaskStatus",
    "ThreadPoolManager",
    "backoff_delay",
    "feed_display_name",
    "normalize",
    "parse_document",
    "parse_feed",
]
