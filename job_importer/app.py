"""Typer CLI entrypoint for the job importer."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

import typer
from pydantic import ValidationError as PydanticValidationError
from typer import BadParameter
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, ScheduleConfig
from .engine.fetcher import feed_display_name
from .engine.queue import TaskStatus
from .engine.store import JobFilters, RunFilters
from .logging_conf import available_feed_logs, configure_logging, feed_slug, log_dir, tail_log
from .models import ImportRun, ImportType, RunStatus, StoredJob, TriggeredBy
from .orchestrator import ImportOrchestrator
from .scheduler import APSchedulerAdapter
from .ui import RunProgressDisplay

app = typer.Typer(help="Job feed importer command line tool", no_args_is_help=True, rich_markup_mode=None)
import_app = typer.Typer(name="import", help="Trigger and inspect imports", no_args_is_help=True, rich_markup_mode=None)
queue_app = typer.Typer(name="queue", help="Inspect and maintain the work queue", no_args_is_help=True, rich_markup_mode=None)
jobs_app = typer.Typer(name="jobs", help="Browse imported jobs", no_args_is_help=True, rich_markup_mode=None)
feeds_app = typer.Typer(name="feeds", help="Configured feeds and their health", no_args_is_help=True, rich_markup_mode=None)
log_app = typer.Typer(name="log", help="Browse log files", no_args_is_help=True, rich_markup_mode=None)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    orchestrator: ImportOrchestrator
    scheduler: APSchedulerAdapter


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    orchestrator = ImportOrchestrator.from_repository(repository)
    return AppState(repository=repository, orchestrator=orchestrator, scheduler=APSchedulerAdapter())


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _parse_datetime_option(value: Optional[str], option_name: str) -> Optional[datetime]:
    if value is None:
        return None
    text = value.strip()
    if not text:
        raise BadParameter(f"{option_name} must not be empty.")
    normalized = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        candidate = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise BadParameter(f"{option_name} must be an ISO 8601 timestamp, e.g. 2024-10-14T08:00+02:00.") from exc
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=timezone.utc)
    return candidate.astimezone(timezone.utc)


def _format_duration(duration: Optional[int]) -> str:
    if duration is None:
        return "-"
    if duration < 1000:
        return f"{duration} ms"
    return f"{duration / 1000:.1f} s"


def _status_style(status: RunStatus) -> str:
    return {RunStatus.COMPLETED: "green", RunStatus.FAILED: "red"}.get(status, "yellow")


def _render_runs_table(runs: Iterable[ImportRun], title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Feed", overflow="fold")
    table.add_column("Status")
    table.add_column("Fetched", justify="right")
    table.add_column("New", justify="right", style="green")
    table.add_column("Updated", justify="right", style="cyan")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Duration", justify="right")
    table.add_column("Started", style="dim")
    for run in runs:
        table.add_row(
            run.id[:12],
            feed_display_name(run.feed_url),
            f"[{_status_style(run.status)}]{run.status.value}[/]",
            str(run.total_fetched),
            str(run.new_count),
            str(run.updated_count),
            str(run.failed_count),
            _format_duration(run.duration),
            run.start_time.strftime("%Y-%m-%d %H:%M:%S"),
        )
    return table


app.add_typer(import_app, name="import")
app.add_typer(jobs_app, name="jobs")
app.add_typer(queue_app, name="queue")
app.add_typer(feeds_app, name="feeds")
app.add_typer(log_app, name="log")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging.", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


# ----------------------------------------------------------------------
# import


@import_app.command("run", help="Import every configured feed now.")
def import_run(
    ctx: typer.Context,
    triggered_by: TriggeredBy = typer.Option(TriggeredBy.MANUAL, "--triggered-by", help="Recorded trigger source."),
    import_type: ImportType = typer.Option(ImportType.FULL, "--import-type", help="Recorded import type."),
    feed: Optional[list[str]] = typer.Option(None, "--feed", help="Only import these feed urls."),
    wait: bool = typer.Option(False, "--wait", help="Process the queue in-process until the runs finish.", is_flag=True),
    timeout: float = typer.Option(600.0, "--timeout", help="Seconds to wait with --wait."),
) -> None:
    state = _get_state(ctx)
    orchestrator = state.orchestrator
    if not wait:
        runs = orchestrator.trigger_import(triggered_by, import_type, feeds=feed or None)
        console.print(_render_runs_table(runs, f"Queued imports · {len(runs)} feeds"))
        console.print("Start `job-importer worker` to process queued records.", style="dim")
        return

    worker = orchestrator.build_worker()
    runs: list[ImportRun] = []
    drained = False
    with RunProgressDisplay() as display:
        orchestrator.broadcaster.add_sink(display)
        worker.start()
        try:
            runs = orchestrator.trigger_import(triggered_by, import_type, feeds=feed or None)
            for run in runs:
                display.set_label(run.id, feed_display_name(run.feed_url))
            drained = orchestrator.queue.join(timeout)
        finally:
            worker.stop(drain=False)
            orchestrator.broadcaster.remove_sink(display)
    orchestrator.reconcile()
    refreshed = [orchestrator.get_run(run.id) or run for run in runs]
    console.print(_render_runs_table(refreshed, f"Import results · {len(refreshed)} feeds"))
    if not drained:
        console.print(f"Queue not drained after {timeout:.0f}s; remaining records stay queued.", style="yellow")
        raise typer.Exit(code=1)


@import_app.command("history", help="List past import runs, newest first.")
def import_history(
    ctx: typer.Context,
    status: Optional[RunStatus] = typer.Option(None, "--status", help="Filter by run status."),
    feed: Optional[str] = typer.Option(None, "--feed", help="Case-insensitive feed url substring."),
    start: Optional[str] = typer.Option(None, "--from", help="Created at or after (ISO 8601)."),
    end: Optional[str] = typer.Option(None, "--to", help="Created at or before (ISO 8601)."),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(20, "--limit", min=1, max=500),
) -> None:
    state = _get_state(ctx)
    filters = RunFilters(
        status=status,
        feed=feed,
        start_date=_parse_datetime_option(start, "--from"),
        end_date=_parse_datetime_option(end, "--to"),
        page=page,
        limit=limit,
    )
    result = state.orchestrator.import_history(filters)
    if not result.runs:
        console.print("No import runs found.", style="dim")
        return
    console.print(_render_runs_table(result.runs, f"Import history · page {result.page}/{result.pages} · {result.total} runs"))


@import_app.command("show", help="Show one import run with its errors.")
def import_show(ctx: typer.Context, run_id: str = typer.Argument(..., help="Import run id.")) -> None:
    state = _get_state(ctx)
    run = state.orchestrator.get_run(run_id)
    if run is None:
        console.print(f"Import run `{run_id}` not found.", style="red")
        raise typer.Exit(code=1)
    console.print(_render_runs_table([run], f"Import run {run.id}"))
    summary = Table(box=box.SIMPLE_HEAD, show_header=False)
    summary.add_column("Field", style="cyan")
    summary.add_column("Value")
    summary.add_row("Feed", run.feed_url)
    summary.add_row("Triggered by", run.triggered_by.value)
    summary.add_row("Import type", run.import_type.value)
    summary.add_row("Queued", str(run.queued_count))
    summary.add_row("Total imported", str(run.total_imported))
    summary.add_row("Ended", run.end_time.strftime("%Y-%m-%d %H:%M:%S") if run.end_time else "-")
    console.print(summary)
    if run.errors:
        errors = Table(title=f"Errors · {len(run.errors)}", box=box.SIMPLE_HEAD)
        errors.add_column("Time", style="dim")
        errors.add_column("Record", style="cyan", overflow="fold")
        errors.add_column("Reason", style="red", overflow="fold")
        for entry in run.errors:
            errors.add_row(entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"), entry.record_id or "-", entry.reason)
        console.print(errors)


@import_app.command("stats", help="Aggregate statistics across import runs.")
def import_stats(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    stats = state.orchestrator.get_stats()
    table = Table(title="Import statistics", box=box.SIMPLE_HEAD)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total imports", str(stats.total_imports))
    table.add_row("Completed", str(stats.completed_imports))
    table.add_row("Failed", str(stats.failed_imports))
    table.add_row("In progress", str(stats.in_progress_imports))
    table.add_row("Jobs imported", str(stats.total_jobs_imported))
    table.add_row("New jobs", str(stats.total_new_jobs))
    table.add_row("Updated jobs", str(stats.total_updated_jobs))
    table.add_row("Failed jobs", str(stats.total_failed_jobs))
    table.add_row("Average duration", _format_duration(int(stats.average_duration)))
    console.print(table)


# ----------------------------------------------------------------------
# jobs


def _render_jobs_table(jobs: Iterable[StoredJob], title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Title", overflow="fold")
    table.add_column("Company")
    table.add_column("Location")
    table.add_column("Type")
    table.add_column("Category", style="dim")
    table.add_column("Posted", style="dim")
    for job in jobs:
        record = job.record
        table.add_row(
            job.id,
            record.title,
            record.company,
            record.location,
            record.job_type or "-",
            record.category or "-",
            record.posted_date.strftime("%Y-%m-%d") if record.posted_date else "-",
        )
    return table


@jobs_app.command("list", help="Browse imported jobs, newest first.")
def jobs_list(
    ctx: typer.Context,
    category: Optional[str] = typer.Option(None, "--category", help="Exact category slug."),
    job_type: Optional[str] = typer.Option(None, "--job-type", help="Exact job type, e.g. full-time."),
    search: Optional[str] = typer.Option(None, "--search", help="Case-insensitive match on title, company or location."),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(20, "--limit", min=1, max=500),
) -> None:
    state = _get_state(ctx)
    filters = JobFilters(category=category, job_type=job_type, search=search, page=page, limit=limit)
    result = state.orchestrator.list_jobs(filters)
    if not result.jobs:
        console.print("No jobs found.", style="dim")
        return
    console.print(_render_jobs_table(result.jobs, f"Jobs · page {result.page}/{result.pages} · {result.total} jobs"))


@jobs_app.command("show", help="Show one imported job.")
def jobs_show(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id as listed by `jobs list`.")) -> None:
    state = _get_state(ctx)
    job = state.orchestrator.get_job(job_id)
    if job is None:
        console.print(f"Job `{job_id}` not found.", style="red")
        raise typer.Exit(code=1)
    record = job.record
    summary = Table(title=record.title, box=box.SIMPLE_HEAD, show_header=False)
    summary.add_column("Field", style="cyan")
    summary.add_column("Value", overflow="fold")
    summary.add_row("Company", record.company)
    summary.add_row("Location", record.location)
    summary.add_row("Type", record.job_type or "-")
    summary.add_row("Category", record.category or "-")
    summary.add_row("Salary", record.salary or "-")
    summary.add_row("Url", record.url)
    summary.add_row("Company url", record.company_url or "-")
    summary.add_row("Source", record.source)
    summary.add_row("Posted", record.posted_date.strftime("%Y-%m-%d %H:%M") if record.posted_date else "-")
    summary.add_row("Expires", record.expiry_date.strftime("%Y-%m-%d %H:%M") if record.expiry_date else "-")
    summary.add_row("Last synced", job.last_synced_at.strftime("%Y-%m-%d %H:%M:%S") if job.last_synced_at else "-")
    console.print(summary)
    if record.description:
        console.print(record.description, markup=False, highlight=False)


# ----------------------------------------------------------------------
# queue


@queue_app.command("stats", help="Task counts by state.")
def queue_stats(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    stats = state.orchestrator.queue.stats()
    table = Table(title="Queue", box=box.SIMPLE_HEAD)
    for name in ("pending", "active", "completed", "failed", "delayed", "total"):
        table.add_column(name.capitalize(), justify="right")
    values = stats.to_dict()
    table.add_row(*(str(values[name]) for name in ("pending", "active", "completed", "failed", "delayed", "total")))
    console.print(table)


@queue_app.command(
    "retry",
    help=(
        "Requeue dead-lettered tasks. Retried records are upserted again, but a run that has "
        "already finished keeps the counts it was closed with."
    ),
)
def queue_retry(
    ctx: typer.Context,
    run_id: Optional[str] = typer.Argument(None, help="Only retry tasks of this run."),
) -> None:
    state = _get_state(ctx)
    count = state.orchestrator.queue.retry_failed(run_id)
    console.print(f"Requeued {count} failed task(s).", style="green" if count else "dim")
    if count:
        console.print("Finished runs keep their recorded counts.", style="dim")



@queue_app.command("clean", help="Delete finished tasks older than a threshold.")
def queue_clean(
    ctx: typer.Context,
    older_than: float = typer.Option(86400.0, "--older-than", help="Age in seconds."),
    status: TaskStatus = typer.Option(TaskStatus.COMPLETED, "--status", help="completed or failed."),
) -> None:
    state = _get_state(ctx)
    try:
        count = state.orchestrator.queue.clean(older_than, status)
    except ValueError as exc:
        raise BadParameter(str(exc)) from exc
    console.print(f"Removed {count} {status.value} task(s).", style="green" if count else "dim")


# ----------------------------------------------------------------------
# feeds


@feeds_app.command("list", help="Configured feeds with their fetch health.")
def feeds_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    health = {record.url: record for record in state.orchestrator.feed_health()}
    table = Table(title=f"Feeds · {len(state.orchestrator.get_feed_urls())}", box=box.SIMPLE_HEAD)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Url", overflow="fold")
    table.add_column("Fetches", justify="right")
    table.add_column("Failures", justify="right", style="red")
    table.add_column("Avg jobs", justify="right")
    table.add_column("Last success", style="dim")
    for url in state.orchestrator.get_feed_urls():
        record = health.get(url)
        table.add_row(
            record.name if record else feed_display_name(url),
            url,
            str(record.fetch_count) if record else "0",
            str(record.failure_count) if record else "0",
            str(record.average_jobs_per_fetch) if record else "-",
            record.last_successful_fetch.strftime("%Y-%m-%d %H:%M") if record and record.last_successful_fetch else "-",
        )
    console.print(table)


# ----------------------------------------------------------------------
# long running processes


def _block_until_interrupted() -> None:
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopping…", style="yellow")


@app.command("worker", help="Process queued records until interrupted.")
def worker(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    queue_worker = state.orchestrator.build_worker()
    queue_worker.start()
    console.print(
        f"Worker running with concurrency {state.orchestrator.global_config.queue.concurrency}. Press Ctrl+C to stop.",
        style="green",
    )
    _block_until_interrupted()
    queue_worker.stop(drain=False, timeout=30)


@app.command("schedule", help="Run the worker and scheduled imports until interrupted.")
def schedule(
    ctx: typer.Context,
    cron: Optional[str] = typer.Option(None, "--cron", help="Override the configured cron expression."),
) -> None:
    state = _get_state(ctx)
    orchestrator = state.orchestrator
    try:
        schedule_config = ScheduleConfig(enabled=True, cron=cron or orchestrator.global_config.schedule.cron)
    except PydanticValidationError as exc:
        raise BadParameter(str(exc)) from exc
    queue_worker = orchestrator.build_worker()
    queue_worker.start()
    state.scheduler.schedule_imports(schedule_config, orchestrator.trigger_import)
    state.scheduler.start()
    console.print(f"Scheduled imports on `{schedule_config.cron}`. Press Ctrl+C to stop.", style="green")
    _block_until_interrupted()
    state.scheduler.shutdown()
    queue_worker.stop(drain=False, timeout=30)


# ----------------------------------------------------------------------
# logs


@log_app.command("list", help="List per-feed log files.")
def log_list() -> None:
    logs = list(available_feed_logs())
    if not logs:
        console.print("No feed logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="Show the tail of the importer log or a feed log.")
def log_show(
    feed: Optional[str] = typer.Option(None, "--feed", help="Feed url or log name; empty for the importer log."),
    errors: bool = typer.Option(False, "--errors", help="Show the error log.", is_flag=True),
    tail: int = typer.Option(100, "--tail", min=1, help="Number of lines."),
) -> None:
    base_dir = log_dir()
    if feed:
        name = feed if "://" not in feed else feed_slug(feed)
        path = base_dir / "feeds" / f"{name.removesuffix('.log')}.log"
    else:
        path = base_dir / ("error.log" if errors else "importer.log")
    lines = tail_log(path, tail)
    if not lines:
        console.print("No log entries yet.", style="dim")
        return
    console.print(f"{path.name} · last {len(lines)} lines", style="cyan")
    console.print("".join(lines), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
