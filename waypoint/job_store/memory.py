"""In-process job store, for tests and single-process deployments."""

from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timedelta
import copy
import json
from threading import Lock
from typing import Any

from waypoint.base_types import (
    EnqueueRequest,
    EventRegistry,
    Job,
    JobErrorRecord,
    JobStatus,
    JobStore,
)
from waypoint.constants import DEFAULT_MAX_ATTEMPTS, STUCK_JOB_MESSAGE
from waypoint.events import (
    JobCancelledEvent,
    JobClaimedEvent,
    JobCompletedEvent,
    JobEnqueuedEvent,
    JobReapedEvent,
    WaypointEvent,
)
from waypoint.exception import InvalidTransitionError, JobTimedOutError, MissingJobError
from waypoint.job_store.common import (
    describe_error,
    duration_between,
    failure_event,
    validate_request,
    warn_stale_outcome,
)
from waypoint.retry import RetryDecision, RetryPolicy
from waypoint.utils.id_generator import generate_job_id
from waypoint.utils.logging_config import get_logger
from waypoint.utils.timestamps import as_utc, utc_now

log = get_logger(__name__)


def _snapshot(job: Job) -> Job:
    """Callers get copies, so nothing outside the lock can mutate stored state."""

    return copy.deepcopy(job)


def _json_copy(data: Mapping[str, Any]) -> dict[str, Any]:
    """Store what a durable store would read back. Raises TypeError for data JSON cannot encode."""

    return json.loads(json.dumps(dict(data)))


class MemoryJobStore(JobStore):
    """Thread-safe job store. Every operation holds one lock for its whole read-modify-write."""

    def __init__(self, event_registry: EventRegistry | None = None) -> None:
        self.event_registry = event_registry
        self._jobs: dict[str, Job] = {}
        self._errors: dict[str, list[JobErrorRecord]] = {}
        self._lock = Lock()

    def _require_job(self, job_id: str) -> Job:
        if job_id not in self._jobs:
            raise MissingJobError(f"Job with ID {job_id} not found in store.")

        return self._jobs[job_id]

    def _insert(self, request: EnqueueRequest, now: datetime) -> Job:
        validate_request(request)

        if request.parent_job_id is not None and request.parent_job_id not in self._jobs:
            raise MissingJobError(f"Parent job {request.parent_job_id} not found in store.")

        job = Job(
            job_id=generate_job_id(request.job_type),
            job_type=request.job_type,
            payload=_json_copy(request.payload),
            status=JobStatus.PENDING,
            next_run_at=now + timedelta(seconds=request.delay_seconds),
            created_at=now,
            priority=request.priority,
            max_attempts=request.max_attempts,
            correlation_id=request.correlation_id,
            parent_job_id=request.parent_job_id,
        )

        return job

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
        request = EnqueueRequest(
            job_type=job_type,
            payload=payload if payload is not None else {},
            priority=priority,
            correlation_id=correlation_id,
            max_attempts=max_attempts,
            parent_job_id=parent_job_id,
            delay_seconds=delay_seconds,
        )

        return self.enqueue_batch([request])[0]

    def enqueue_batch(self, requests: list[EnqueueRequest]) -> list[str]:
        now = utc_now()

        with self._lock:
            # Validate everything before storing anything, so a bad request stores none
            jobs = [self._insert(request, now) for request in requests]
            for job in jobs:
                self._jobs[job.job_id] = job

        for job in jobs:
            log.debug(f"Enqueued job {job.job_id} with priority {job.priority}")
            self.emit(
                JobEnqueuedEvent(
                    job_id=job.job_id,
                    job_type=job.job_type,
                    priority=job.priority,
                    correlation_id=job.correlation_id,
                )
            )

        return [job.job_id for job in jobs]

    def claim_next(self, worker_id: str) -> Job | None:
        log.debug(f"Worker {worker_id} attempting to claim a job")

        now = utc_now()
        with self._lock:
            eligible = [
                job for job in self._jobs.values() if job.status == JobStatus.PENDING and job.next_run_at <= now
            ]
            if not eligible:
                return None

            job = min(eligible, key=lambda job: (-job.priority, job.next_run_at, job.created_at))
            job.status = JobStatus.PROCESSING
            job.started_at = now
            job.attempts += 1
            job.claimed_by = worker_id
            claimed = _snapshot(job)

        log.info(f"Worker {worker_id} claimed job {claimed.job_id} (attempt {claimed.attempts}/{claimed.max_attempts})")
        self.emit(
            JobClaimedEvent(
                job_id=claimed.job_id,
                job_type=claimed.job_type,
                attempt=claimed.attempts,
                worker_id=worker_id,
            )
        )

        return claimed

    def _holds_attempt(self, job_id: str, attempt: int) -> Job | None:
        """The job, if it is still processing the given attempt."""

        job = self._require_job(job_id)
        if job.status != JobStatus.PROCESSING or job.attempts != attempt:
            return None

        return job

    def complete(self, job_id: str, attempt: int, result: Mapping[str, Any] | None = None) -> Job | None:
        log.debug(f"Completing job {job_id} attempt {attempt}")

        stored_result = _json_copy(result) if result is not None else None

        with self._lock:
            job = self._holds_attempt(job_id, attempt)
            if job is not None:
                job.status = JobStatus.COMPLETED
                job.completed_at = utc_now()
                job.result = stored_result
                completed = _snapshot(job)

        if job is None:
            warn_stale_outcome(job_id, attempt, "completion")
            return None

        log.info(f"Job {job_id} completed on attempt {attempt}")
        self.emit(
            JobCompletedEvent(
                job_id=completed.job_id,
                job_type=completed.job_type,
                attempt=completed.attempts,
                duration_seconds=duration_between(completed.started_at, completed.completed_at),
            )
        )

        return completed

    def _apply_failure(
        self, job: Job, error: BaseException, policy: RetryPolicy, now: datetime, retryable: bool
    ) -> tuple[RetryDecision, str]:
        """Record a failure of the job's current attempt and move it on. Caller holds the lock."""

        error_text = describe_error(error)
        decision = policy.decide(job.attempts, job.max_attempts, now, retryable=retryable)

        job.last_error = error_text
        if decision.permanent:
            job.status = JobStatus.FAILED
            job.completed_at = now
        else:
            job.status = JobStatus.PENDING
            job.next_run_at = decision.next_run_at  # type: ignore[assignment]

        self._errors.setdefault(job.job_id, []).append(
            JobErrorRecord(
                job_id=job.job_id,
                attempt=job.attempts,
                error=error,
                error_text=error_text,
                created_at=now,
            )
        )

        return decision, error_text

    def fail(
        self,
        job_id: str,
        attempt: int,
        error: BaseException,
        policy: RetryPolicy,
        retryable: bool = True,
    ) -> Job | None:
        log.debug(f"Recording failure of job {job_id} attempt {attempt}: {error!r}")

        now = utc_now()
        with self._lock:
            job = self._holds_attempt(job_id, attempt)
            if job is not None:
                decision, error_text = self._apply_failure(job, error, policy, now, retryable)
                failed = _snapshot(job)

        if job is None:
            warn_stale_outcome(job_id, attempt, "failure")
            return None

        self.emit(failure_event(failed, decision, error_text))

        return failed

    def reap_stuck(
        self, stuck_threshold_seconds: float, policy: RetryPolicy, now: datetime | None = None
    ) -> list[Job]:
        now = as_utc(now) if now is not None else utc_now()
        cutoff = now - timedelta(seconds=stuck_threshold_seconds)

        events: list[WaypointEvent] = []
        reaped: list[Job] = []

        with self._lock:
            stuck = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status == JobStatus.PROCESSING and job.started_at is not None and job.started_at < cutoff
                ),
                key=lambda job: job.started_at,  # type: ignore[arg-type,return-value]
            )

            for job in stuck:
                decision, error_text = self._apply_failure(
                    job, JobTimedOutError(STUCK_JOB_MESSAGE), policy, now, retryable=True
                )
                snapshot = _snapshot(job)
                reaped.append(snapshot)
                events.append(
                    JobReapedEvent(
                        job_id=job.job_id,
                        job_type=job.job_type,
                        attempt=job.attempts,
                        stuck_seconds=duration_between(job.started_at, now),
                    )
                )
                events.append(failure_event(snapshot, decision, error_text))

        if reaped:
            log.warning(f"Reaped {len(reaped)} stuck job(s)")

        for event in events:
            self.emit(event)

        return reaped

    def cancel(self, job_id: str) -> bool:
        log.debug(f"Cancelling job {job_id}")

        with self._lock:
            job = self._require_job(job_id)
            if job.status != JobStatus.PENDING:
                log.debug(f"Job {job_id} is {job.status.value}; not cancelling")
                return False

            job.status = JobStatus.CANCELLED
            job.completed_at = utc_now()

        self.emit(JobCancelledEvent(job_id=job.job_id, job_type=job.job_type))

        return True

    def requeue_failed(self, job_id: str) -> str:
        log.debug(f"Requeueing failed job {job_id}")

        with self._lock:
            failed = self._require_job(job_id)
            if failed.status != JobStatus.FAILED:
                raise InvalidTransitionError(
                    f"Only failed jobs can be requeued; job {job_id} is {failed.status.value}"
                )

            job = self._insert(
                EnqueueRequest(
                    job_type=failed.job_type,
                    payload=failed.payload,
                    priority=failed.priority,
                    correlation_id=failed.correlation_id,
                    max_attempts=failed.max_attempts,
                    parent_job_id=failed.job_id,
                ),
                utc_now(),
            )
            self._jobs[job.job_id] = job

        log.info(f"Requeued failed job {job_id} as {job.job_id}")
        self.emit(
            JobEnqueuedEvent(
                job_id=job.job_id,
                job_type=job.job_type,
                priority=job.priority,
                correlation_id=job.correlation_id,
            )
        )

        return job.job_id

    def get(self, job_id: str) -> Job:
        with self._lock:
            return _snapshot(self._require_job(job_id))

    def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: str | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        with self._lock:
            matches = [
                _snapshot(job)
                for job in self._jobs.values()
                if (status is None or job.status == status)
                and (job_type is None or job.job_type == job_type)
                and (correlation_id is None or job.correlation_id == correlation_id)
            ]

        matches.sort(key=lambda job: (job.created_at, job.job_id))
        return matches[:limit] if limit is not None else matches

    def get_errors(self, job_id: str) -> list[JobErrorRecord]:
        with self._lock:
            self._require_job(job_id)
            return [replace(record) for record in self._errors.get(job_id, [])]

    def counts(self, since: datetime | None = None) -> dict[tuple[str, JobStatus], int]:
        counts: dict[tuple[str, JobStatus], int] = {}
        since = as_utc(since) if since is not None else None

        with self._lock:
            for job in self._jobs.values():
                if since is not None and job.created_at < since:
                    continue

                key = (job.job_type, job.status)
                counts[key] = counts.get(key, 0) + 1

        return counts

    def failed_since(self, since: datetime, limit: int | None = None) -> list[Job]:
        since = as_utc(since)

        with self._lock:
            failed = [
                _snapshot(job)
                for job in self._jobs.values()
                if job.status == JobStatus.FAILED and job.completed_at is not None and job.completed_at >= since
            ]

        failed.sort(key=lambda job: job.completed_at, reverse=True)  # type: ignore[arg-type,return-value]
        return failed[:limit] if limit is not None else failed
