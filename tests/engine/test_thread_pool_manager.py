from __future__ import annotations

import pytest

from job_importer.engine import ThreadPoolManager


def test_thread_pool_manager_isolates_executors() -> None:
    manager = ThreadPoolManager(default_workers=2)
    default_a = manager.get()
    default_b = manager.get()
    assert default_a is default_b

    pool_alpha = manager.get("alpha", max_workers=1)
    pool_alpha_again = manager.get("alpha")
    assert pool_alpha is pool_alpha_again

    pool_beta = manager.get("beta")
    assert pool_beta is not pool_alpha

    manager.shutdown()


def test_release_drops_named_executor() -> None:
    manager = ThreadPoolManager(default_workers=1)
    first = manager.get("queue-jobs", max_workers=2)
    assert first.submit(lambda: 21 * 2).result(timeout=5) == 42

    manager.release("queue-jobs")
    manager.release("queue-jobs")
    second = manager.get("queue-jobs", max_workers=2)
    assert second is not first

    manager.shutdown(wait=True)


def test_shutdown_refuses_new_pools() -> None:
    with ThreadPoolManager(default_workers=1) as manager:
        manager.get()
        manager.get("queue-jobs")
        assert manager.names() == ["importer", "queue-jobs"]

    assert manager.names() == []
    with pytest.raises(RuntimeError):
        manager.get("queue-jobs")
    manager.release("queue-jobs")
    manager.shutdown()
