"""Human-readable views of queue state, rendered with rich."""

from collections.abc import Mapping

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from waypoint.base_types import Job, JobStatus

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}


def format_status(status: JobStatus) -> str:
    """Wrap a status in rich markup for its colour."""
    return f"[{STATUS_STYLES[status]}]{status.value}[/]"


def counts_table(counts: Mapping[tuple[str, JobStatus], int], title: str = "Jobs") -> Table:
    """One row per job type, one column per status, plus a total."""

    table = Table(title=title)
    table.add_column("job type")
    for status in JobStatus:
        table.add_column(format_status(status), justify="right")
    table.add_column("total", justify="right")

    for job_type in sorted({job_type for job_type, _ in counts}):
        row = [counts.get((job_type, status), 0) for status in JobStatus]
        table.add_row(escape(job_type), *(str(count) for count in row), str(sum(row)))

    return table


def failed_table(jobs: list[Job], title: str = "Failed jobs") -> Table:
    """Permanently failed jobs with their last error, for manual intervention."""

    table = Table(title=title)
    table.add_column("job id", overflow="fold")
    table.add_column("job type")
    table.add_column("attempts", justify="right")
    table.add_column("failed at")
    table.add_column("last error", overflow="fold")

    for job in jobs:
        table.add_row(
            escape(job.job_id),
            escape(job.job_type),
            f"{job.attempts}/{job.max_attempts}",
            job.completed_at.isoformat(timespec="seconds") if job.completed_at is not None else "",
            escape(job.last_error or ""),
        )

    return table


def job_table(job: Job) -> Table:
    """Every field of one job, as key/value rows."""

    table = Table(title=escape(job.job_id), show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value", overflow="fold")

    for key, value in job.save().items():
        if key == "status":
            table.add_row(key, format_status(job.status))
        else:
            table.add_row(key, "" if value is None else escape(str(value)))

    return table


def render_counts(
    counts: Mapping[tuple[str, JobStatus], int], console: Console | None = None, title: str = "Jobs"
) -> None:
    (console or Console()).print(counts_table(counts, title=title))


def render_failed(jobs: list[Job], console: Console | None = None, title: str = "Failed jobs") -> None:
    console = console or Console()
    if not jobs:
        console.print("No failed jobs.")
        return

    console.print(failed_table(jobs, title=title))
