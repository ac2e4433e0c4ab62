"""
Command line interface for a waypoint queue stored in SQLite.

Enqueue, cancel and requeue jobs, inspect them, and run the reaper. Handlers are user code, so
workers are started from Python rather than from here.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
import json
import sys
from typing import NoReturn

import click
from rich.console import Console

from waypoint import __version__
from waypoint.config import WaypointConfig
from waypoint.constants import DEFAULT_STATS_WINDOW_HOURS
from waypoint.database import SQLiteDatabase
from waypoint.event_registry import SQLiteEventRegistry
from waypoint.exception import InvalidTransitionError, MissingJobError, WaypointError
from waypoint.job_store import SQLiteJobStore
from waypoint.reaper import Reaper
from waypoint.report import job_table, render_counts, render_failed
from waypoint.utils.logging_config import configure_logging
from waypoint.utils.timestamps import utc_now


@dataclass
class CliState:
    config: WaypointConfig
    console: Console


@contextmanager
def open_store(config: WaypointConfig) -> Iterator[SQLiteJobStore]:
    """Open the job store and its event feed, creating tables on first use."""

    database = SQLiteDatabase(config.db_path)
    try:
        event_registry = SQLiteEventRegistry(database)
        event_registry.init()

        job_store = SQLiteJobStore(database, event_registry=event_registry)
        job_store.init()

        yield job_store
    finally:
        database.close()


def _fail(message: str) -> NoReturn:
    click.echo(f"✗ {message}", err=True)
    raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="waypoint")
@click.option("--db", "db_path", envvar="WAYPOINT_DB_PATH", help="SQLite database file")
@click.option("--log-level", envvar="WAYPOINT_LOG_LEVEL", help="DEBUG, INFO, WARNING or ERROR")
@click.pass_context
def main(ctx: click.Context, db_path: str | None, log_level: str | None) -> None:
    """
    waypoint - durable job queue.
    """

    configure_logging(log_level)

    try:
        config = WaypointConfig.from_env()
    except ValueError as err:
        raise click.UsageError(str(err)) from err

    if db_path:
        config = replace(config, db_path=db_path)

    ctx.obj = CliState(config=config, console=Console())


@main.command("enqueue")
@click.argument("job_type")
@click.option("--payload", default="{}", help="JSON object passed to the handler")
@click.option("--priority", default=0, type=int, help="Higher priorities are claimed first")
@click.option("--correlation-id", default=None, help="Groups related jobs")
@click.option("--max-attempts", default=None, type=click.IntRange(min=1), help="Attempts before failing")
@click.option("--delay", "delay_seconds", default=0.0, type=click.FloatRange(min=0), help="Seconds before claimable")
@click.pass_obj
def enqueue(
    state: CliState,
    job_type: str,
    payload: str,
    priority: int,
    correlation_id: str | None,
    max_attempts: int | None,
    delay_seconds: float,
) -> None:
    """Add a pending job and print its ID."""

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as err:
        raise click.BadParameter(f"not valid JSON: {err}", param_hint="--payload") from err

    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")

    with open_store(state.config) as job_store:
        try:
            job_id = job_store.enqueue(
                job_type,
                parsed,
                priority=priority,
                correlation_id=correlation_id,
                max_attempts=max_attempts if max_attempts is not None else state.config.max_attempts,
                delay_seconds=delay_seconds,
            )
        except ValueError as err:
            raise click.UsageError(str(err)) from err

    click.echo(job_id)


@main.command("cancel")
@click.argument("job_id")
@click.pass_obj
def cancel(state: CliState, job_id: str) -> None:
    """Cancel a job that has not been claimed yet."""

    with open_store(state.config) as job_store:
        try:
            cancelled = job_store.cancel(job_id)
            status = job_store.get(job_id).status
        except MissingJobError as err:
            _fail(str(err))

    if not cancelled:
        _fail(f"{job_id} is {status.value}; only pending jobs can be cancelled")

    click.echo(f"✓ {job_id} cancelled")


@main.command("requeue")
@click.argument("job_id")
@click.pass_obj
def requeue(state: CliState, job_id: str) -> None:
    """Retry a failed job as a new job, printing the new ID."""

    with open_store(state.config) as job_store:
        try:
            new_job_id = job_store.requeue_failed(job_id)
        except (MissingJobError, InvalidTransitionError) as err:
            _fail(str(err))

    click.echo(new_job_id)


@main.command("show")
@click.argument("job_id")
@click.option("--errors", "show_errors", is_flag=True, help="Also list every recorded failure")
@click.pass_obj
def show(state: CliState, job_id: str, show_errors: bool) -> None:
    """Show one job."""

    with open_store(state.config) as job_store:
        try:
            job = job_store.get(job_id)
            errors = job_store.get_errors(job_id) if show_errors else []
        except MissingJobError as err:
            _fail(str(err))

    state.console.print(job_table(job))
    for record in errors:
        click.echo(f"attempt {record.attempt} at {record.created_at.isoformat()}: {record.error_text}")


@main.command("stats")
@click.option("--hours", default=DEFAULT_STATS_WINDOW_HOURS, type=click.FloatRange(min=0, min_open=True))
@click.pass_obj
def stats(state: CliState, hours: float) -> None:
    """Count jobs created in the window, by type and status."""

    with open_store(state.config) as job_store:
        counts = job_store.counts(since=utc_now() - timedelta(hours=hours))

    render_counts(counts, console=state.console, title=f"Jobs created in the last {hours:g}h")


@main.command("failed")
@click.option("--hours", default=DEFAULT_STATS_WINDOW_HOURS, type=click.FloatRange(min=0, min_open=True))
@click.option("--limit", default=50, type=click.IntRange(min=1))
@click.pass_obj
def failed(state: CliState, hours: float, limit: int) -> None:
    """List jobs that failed permanently in the window, newest first."""

    with open_store(state.config) as job_store:
        jobs = job_store.failed_since(utc_now() - timedelta(hours=hours), limit=limit)

    render_failed(jobs, console=state.console, title=f"Jobs failed in the last {hours:g}h")


@main.command("reap")
@click.pass_obj
def reap(state: CliState) -> None:
    """Recover jobs stuck in processing past the threshold."""

    with open_store(state.config) as job_store:
        reaper = Reaper(
            job_store,
            policy=state.config.retry_policy(),
            stuck_threshold_seconds=state.config.stuck_threshold_seconds,
        )
        reaped = reaper.reap()

    for job in reaped:
        click.echo(f"{job.job_id} -> {job.status.value}")
    click.echo(f"✓ reaped {len(reaped)} job(s)")


def run() -> None:
    """Console-script entry point; reports storage problems without a traceback."""

    try:
        main()
    except WaypointError as err:
        click.echo(f"✗ {err}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
