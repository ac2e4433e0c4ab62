"""Behaviour shared by every job store: validation, failure bookkeeping, and the events it produces."""

from datetime import datetime

from waypoint.base_types import EnqueueRequest, Job
from waypoint.events import JobFailedPermanentlyEvent, JobRetryScheduledEvent, WaypointEvent
from waypoint.retry import RetryDecision
from waypoint.utils.logging_config import get_logger

log = get_logger(__name__)


def validate_request(request: EnqueueRequest) -> None:
    """Reject requests no handler could ever run.

    @raises ValueError: On an empty job type, a non-positive attempt limit, or a negative delay
    """

    if not request.job_type or not request.job_type.strip():
        raise ValueError("job_type is required")
    if request.max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {request.max_attempts}")
    if request.delay_seconds < 0:
        raise ValueError(f"delay_seconds must be non-negative, got {request.delay_seconds}")


def describe_error(error: BaseException) -> str:
    """The text stored as last_error. Falls back to the exception's type for message-less errors."""

    message = str(error)
    return message if message else type(error).__name__


def duration_between(start: datetime | None, end: datetime | None) -> float:
    if start is None or end is None:
        return 0.0

    return max((end - start).total_seconds(), 0.0)


def failure_event(job: Job, decision: RetryDecision, error_text: str) -> WaypointEvent:
    """The event describing what a recorded failure did to a job, logging it on the way."""

    if decision.permanent:
        log.warning(f"Job {job.job_id} failed permanently after {job.attempts} attempt(s): {error_text}")
        return JobFailedPermanentlyEvent(
            job_id=job.job_id,
            job_type=job.job_type,
            attempts=job.attempts,
            error=error_text,
        )

    log.info(f"Job {job.job_id} attempt {job.attempts} failed; retrying in {decision.delay_seconds}s: {error_text}")
    return JobRetryScheduledEvent(
        job_id=job.job_id,
        job_type=job.job_type,
        attempt=job.attempts,
        delay_seconds=decision.delay_seconds or 0.0,
        error=error_text,
    )


def warn_stale_outcome(job_id: str, attempt: int, outcome: str) -> None:
    log.warning(
        f"Discarding {outcome} for job {job_id} attempt {attempt}: "
        "the job is no longer processing that attempt (reaped or finished elsewhere)"
    )
