from __future__ import annotations

import io

from rich.console import Console

from job_importer.events import ProgressBroadcaster
from job_importer.models import ImportRun
from job_importer.ui import RunProgressDisplay


def _display(**kwargs) -> RunProgressDisplay:
    console = Console(file=io.StringIO(), force_terminal=False)
    return RunProgressDisplay(console=console, **kwargs)


def test_display_is_silent_outside_a_terminal() -> None:
    display = _display(labels={"run-1": "Jobicy - smm"})
    assert display.enabled is False
    with display as entered:
        assert entered is display
    assert display.console.file.getvalue() == ""


def test_counts_follow_events() -> None:
    display = _display(enabled=False)
    broadcaster = ProgressBroadcaster([display])
    with display:
        broadcaster.job_processed("run-1", "Engineer", is_new=True)
        broadcaster.job_processed("run-1", "Engineer", is_new=False)
        broadcaster.job_processed("run-1", "Designer", is_new=True)
        broadcaster.record_error("run-1", "Broken", "Url is required")
        broadcaster.progress(ImportRun(id="run-1", feed_url="https://x", queued_count=4, new_count=2, updated_count=1, failed_count=1))
        broadcaster.complete(ImportRun(id="run-1", feed_url="https://x", total_imported=3, failed_count=1, duration=80))
        broadcaster.failed("run-2", "timeout")

    assert display.counts("run-1") == {"new": 2, "updated": 1, "failed": 1}
    assert display.counts("run-2") == {"new": 0, "updated": 0, "failed": 0}
    assert display.counts("unknown") == {}


def test_set_label_registers_run() -> None:
    display = _display(enabled=False)
    display.set_label("run-9", "HigherEdJobs")
    assert display.labels["run-9"] == "HigherEdJobs"
    assert display.counts("run-9") == {"new": 0, "updated": 0, "failed": 0}
