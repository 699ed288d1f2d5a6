"""Thread pools shared by feed fetching and queue workers."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Lock

DEFAULT_POOL = "importer"


class ThreadPoolManager:
    """Named executors created on first use.

    ``get()`` without a name returns the shared pool used for fetching feeds;
    queues ask for a dedicated pool so their long-running worker loops never
    starve fetches. Once :meth:`shutdown` ran no new pool is handed out.
    """

    def __init__(self, default_workers: int = 4) -> None:
        self.default_workers = default_workers
        self._pools: dict[str, ThreadPoolExecutor] = {}
        self._lock = Lock()
        self._closed = False

    def get(self, name: str | None = None, max_workers: int | None = None) -> ThreadPoolExecutor:
        key = name or DEFAULT_POOL
        with self._lock:
            if self._closed:
                raise RuntimeError("ThreadPoolManager has been shut down")
            pool = self._pools.get(key)
            if pool is None:
                prefix = DEFAULT_POOL if name is None else f"{DEFAULT_POOL}-{name}"
                pool = ThreadPoolExecutor(max_workers=max_workers or self.default_workers, thread_name_prefix=prefix)
                self._pools[key] = pool
            return pool

    def release(self, name: str, wait: bool = True) -> None:
        with self._lock:
            pool = self._pools.pop(name, None)
        if pool is not None:
            pool.shutdown(wait=wait)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._pools)

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            self._closed = True
            pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            pool.shutdown(wait=wait)

    def __enter__(self) -> "ThreadPoolManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)


__all__ = ["ThreadPoolManager"]
