"""Core type definitions used throughout Waypoint."""

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from waypoint.constants import DEFAULT_MAX_ATTEMPTS
from waypoint.utils.logging_config import get_logger
from waypoint.utils.timestamps import to_timestamp

if TYPE_CHECKING:
    from waypoint.events import WaypointEvent
    from waypoint.retry import RetryPolicy

log = get_logger(__name__)

# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++ Jobs ++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


class JobStatus(str, Enum):
    """Track the status a job can be in"""

    # Waiting to be claimed, possibly not before next_run_at
    PENDING = "pending"

    # Claimed by exactly one worker
    PROCESSING = "processing"

    # Handler succeeded
    COMPLETED = "completed"

    # Attempts exhausted, or the handler failed permanently
    FAILED = "failed"

    # Cancelled before it was ever claimed
    CANCELLED = "cancelled"


TERMINAL_JOB_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class Job:
    """A durable record of schedulable work with retry and status metadata."""

    job_id: str
    # Key into the handler registry; opaque to the queue itself
    job_type: str
    payload: Mapping[str, Any]
    status: JobStatus
    next_run_at: datetime
    created_at: datetime

    # Higher priorities are claimed first
    priority: int = 0
    # Incremented exactly once per claim
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    last_error: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Optional grouping and lineage for related jobs
    correlation_id: str | None = None
    parent_job_id: str | None = None

    # The worker that made the most recent claim
    claimed_by: str | None = None
    # What a successful handler returned
    result: Mapping[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

    def save(self) -> dict[str, Any]:
        """Serialize the job to a JSON-compatible dictionary.

        @return: The serialized job
        """

        data = asdict(self)
        data["status"] = self.status.value
        for key in ("next_run_at", "created_at", "started_at", "completed_at"):
            moment = getattr(self, key)
            data[key] = to_timestamp(moment) if moment is not None else None

        return data


@dataclass
class JobErrorRecord:
    """One failure recorded against a job."""

    job_id: str
    # The attempt that failed
    attempt: int
    error: BaseException
    error_text: str
    created_at: datetime


@dataclass
class EnqueueRequest:
    """Everything needed to create one job."""

    job_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    priority: int = 0
    correlation_id: str | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    parent_job_id: str | None = None
    # Delay before the job first becomes claimable
    delay_seconds: float = 0.0


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++ Event Registry ++++++++++++++++++++++++++++
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


class EventRegistry(ABC):
    """Keeps track of events emitted as jobs move through the queue."""

    @abstractmethod
    def register(self, event: "WaypointEvent") -> None:
        """Register an event in the event registry."""

        raise NotImplementedError

    @abstractmethod
    def get_events(
        self, event_type: str | None = None, since: datetime | None = None
    ) -> list["WaypointEvent"]:
        """Retrieve registered events, oldest first.

        @param event_type: Optional filter by event class name
        @param since: Optional lower bound on when the event was registered
        @return: The matching events
        """

        raise NotImplementedError


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++ Job Store +++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


class JobStore(ABC):
    """The single source of truth for scheduling state.

    Every mutation is atomic with respect to every other caller, across threads and
    (for durable stores) processes. Outcome writes are fenced by the attempt number the
    caller claimed: they only apply while the job is still processing that attempt.
    """

    event_registry: EventRegistry | None = None

    def emit(self, event: "WaypointEvent") -> None:
        """Hand an event to the event registry, if one is attached. Called after commit.

        The state change has already happened by now, so a registry failure is logged
        rather than raised to the caller.
        """

        if self.event_registry is None:
            return

        try:
            self.event_registry.register(event)
        except Exception as err:
            log.warning(f"Could not register {type(event).__name__} for job {event.job_id}: {err}")

    @abstractmethod
    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        priority: int = 0,
        correlation_id: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        parent_job_id: str | None = None,
        delay_seconds: float = 0.0,
    ) -> str:
        """Insert a pending job that becomes claimable after delay_seconds.

        @return: The new job's ID
        """

        raise NotImplementedError

    @abstractmethod
    def enqueue_batch(self, requests: list[EnqueueRequest]) -> list[str]:
        """Insert several pending jobs in one transaction.

        @return: The new job IDs, in request order
        """

        raise NotImplementedError

    @abstractmethod
    def claim_next(self, worker_id: str) -> Job | None:
        """Atomically claim the eligible pending job with the highest priority,
        then the earliest next_run_at. Marks it processing and increments its attempts.

        @param worker_id: Who is claiming
        @return: The claimed job, or None if nothing is eligible
        @raises StoreUnavailableError: If the store cannot be reached
        """

        raise NotImplementedError

    @abstractmethod
    def complete(self, job_id: str, attempt: int, result: Mapping[str, Any] | None = None) -> Job | None:
        """Mark a processing job completed.

        @param attempt: The attempt number returned by the claim
        @return: The updated job, or None if the claim went stale (reaped or finished elsewhere)
        """

        raise NotImplementedError

    @abstractmethod
    def fail(
        self,
        job_id: str,
        attempt: int,
        error: BaseException,
        policy: "RetryPolicy",
        retryable: bool = True,
    ) -> Job | None:
        """Record a failure of a processing job, then reschedule or fail it as the policy decides.

        @param attempt: The attempt number returned by the claim
        @param retryable: False to fail the job regardless of remaining attempts
        @return: The updated job, or None if the claim went stale
        """

        raise NotImplementedError

    @abstractmethod
    def reap_stuck(
        self, stuck_threshold_seconds: float, policy: "RetryPolicy", now: datetime | None = None
    ) -> list[Job]:
        """Treat every job processing for longer than the threshold as a failed attempt.

        @param now: The time to measure from; defaults to the current time
        @return: The reaped jobs, as updated
        """

        raise NotImplementedError

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        """Cancel a job if, and only if, it is still pending.

        @return: True if the job was cancelled
        @raises MissingJobError: If no such job exists
        """

        raise NotImplementedError

    @abstractmethod
    def requeue_failed(self, job_id: str) -> str:
        """Retry a failed job by enqueueing a fresh copy whose parent is the failed job.

        @return: The new job's ID
        @raises InvalidTransitionError: If the job has not failed
        """

        raise NotImplementedError

    @abstractmethod
    def get(self, job_id: str) -> Job:
        """Get a job by ID.

        @raises MissingJobError: If no such job exists
        """

        raise NotImplementedError

    @abstractmethod
    def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: str | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """List jobs oldest first, optionally filtered."""

        raise NotImplementedError

    @abstractmethod
    def get_errors(self, job_id: str) -> list[JobErrorRecord]:
        """Every failure recorded against a job, oldest first."""

        raise NotImplementedError

    @abstractmethod
    def counts(self, since: datetime | None = None) -> dict[tuple[str, JobStatus], int]:
        """Count jobs by (job type, status).

        @param since: Only count jobs created at or after this time
        """

        raise NotImplementedError

    @abstractmethod
    def failed_since(self, since: datetime, limit: int | None = None) -> list[Job]:
        """Permanently failed jobs that failed at or after `since`, newest first."""

        raise NotImplementedError


# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++
# ++++++++++++++++++++++ Checkpoints +++++++++++++++++++++++++++++++
# ++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++++


@dataclass
class Checkpoint:
    """A durable record of one pipeline step's output for one owner."""

    # The entity being processed, which outlives any single job
    owner_id: str
    step_name: str
    data: Any
    written_at: datetime


class CheckpointStore(ABC):
    """Durable step outputs keyed by (owner ID, step name). Writes for an existing
    key overwrite it; nothing is deleted unless a handler asks."""

    @abstractmethod
    def get(self, owner_id: str, step_name: str) -> Checkpoint | None:
        """Look up a checkpoint.

        @return: The checkpoint, or None if the step has not been checkpointed
        """

        raise NotImplementedError

    @abstractmethod
    def put(self, owner_id: str, step_name: str, data: Any) -> Checkpoint:
        """Persist a step's output. The data must be JSON-serialisable."""

        raise NotImplementedError

    @abstractmethod
    def steps(self, owner_id: str) -> Iterator[Checkpoint]:
        """All checkpoints for an owner, in the order they were written."""

        raise NotImplementedError

    @abstractmethod
    def clear(self, owner_id: str) -> int:
        """Delete an owner's checkpoints once its work is done.

        @return: How many checkpoints were deleted
        """

        raise NotImplementedError
