"""SQLite-backed job store.

Every mutation runs inside one `begin immediate` transaction, so writers serialise on the
database lock. That is what makes a claim atomic across threads and processes: the select of
the next eligible job and the update that takes it happen under the same write lock.
"""

from collections.abc import Mapping
from datetime import datetime, timedelta
import json
import sqlite3
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
from waypoint.database import SQLiteDatabase
from waypoint.events import (
    JobCancelledEvent,
    JobClaimedEvent,
    JobCompletedEvent,
    JobEnqueuedEvent,
    JobReapedEvent,
    WaypointEvent,
)
from waypoint.exception import (
    InvalidTransitionError,
    JobTimedOutError,
    MissingJobError,
    exception_from_text_blob,
    safe_exception_blob,
)
from waypoint.job_store.common import (
    describe_error,
    duration_between,
    failure_event,
    validate_request,
    warn_stale_outcome,
)
from waypoint.job_store.sqlite.tables import JOB_COLUMNS, JOB_STORE_SCHEMA
from waypoint.retry import RetryDecision, RetryPolicy
from waypoint.utils.id_generator import generate_job_id
from waypoint.utils.logging_config import get_logger
from waypoint.utils.timestamps import as_utc, from_timestamp, to_timestamp, utc_now

log = get_logger(__name__)


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        payload,
        priority,
        status,
        attempts,
        max_attempts,
        last_error,
        next_run_at,
        created_at,
        started_at,
        completed_at,
        correlation_id,
        parent_job_id,
        claimed_by,
        result,
    ) = row

    return Job(
        job_id=job_id,
        job_type=job_type,
        payload=json.loads(payload),
        status=JobStatus(status),
        next_run_at=from_timestamp(next_run_at),  # type: ignore[arg-type]
        created_at=from_timestamp(created_at),  # type: ignore[arg-type]
        priority=priority,
        attempts=attempts,
        max_attempts=max_attempts,
        last_error=last_error,
        started_at=from_timestamp(started_at),
        completed_at=from_timestamp(completed_at),
        correlation_id=correlation_id,
        parent_job_id=parent_job_id,
        claimed_by=claimed_by,
        result=json.loads(result) if result is not None else None,
    )


class SQLiteJobStore(JobStore):
    def __init__(self, database: SQLiteDatabase, event_registry: EventRegistry | None = None) -> None:
        self.database = database
        self.event_registry = event_registry

    def init(self) -> None:
        """Create the job tables and indexes, if they do not already exist."""

        log.debug(f"Initialising job store in {self.database.db_path}")
        self.database.execute_script(JOB_STORE_SCHEMA)

    def _select_job(self, conn: sqlite3.Connection, job_id: str) -> Job | None:
        row = conn.execute(f"select {JOB_COLUMNS} from jobs where job_id = ?", (job_id,)).fetchone()  # noqa: S608
        return _row_to_job(row) if row is not None else None

    def _require_job(self, conn: sqlite3.Connection, job_id: str) -> Job:
        job = self._select_job(conn, job_id)
        if job is None:
            raise MissingJobError(f"Job with ID {job_id} not found in store.")

        return job

    def _insert(self, conn: sqlite3.Connection, request: EnqueueRequest, now: datetime) -> Job:
        """Insert one pending job inside the caller's transaction."""

        validate_request(request)

        job_id = generate_job_id(request.job_type)
        next_run_at = now + timedelta(seconds=request.delay_seconds)
        payload = json.dumps(dict(request.payload))

        try:
            rows = conn.execute(
                f"""
                insert into jobs (
                    job_id, job_type, payload, priority, status, attempts, max_attempts,
                    next_run_at, created_at, correlation_id, parent_job_id
                )
                values (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                returning {JOB_COLUMNS}
                """,  # noqa: S608
                (
                    job_id,
                    request.job_type,
                    payload,
                    request.priority,
                    JobStatus.PENDING.value,
                    request.max_attempts,
                    to_timestamp(next_run_at),
                    to_timestamp(now),
                    request.correlation_id,
                    request.parent_job_id,
                ),
            ).fetchall()
        except sqlite3.IntegrityError as err:
            # Only the parent reference can fail; job IDs carry a random suffix
            raise MissingJobError(f"Parent job {request.parent_job_id} not found in store.") from err

        return _row_to_job(rows[0])

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
        if not requests:
            return []

        now = utc_now()
        with self.database.transaction() as conn:
            jobs = [self._insert(conn, request, now) for request in requests]

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

        now = to_timestamp(utc_now())
        with self.database.transaction() as conn:
            rows = conn.execute(
                f"""
                update jobs
                set status = ?, started_at = ?, attempts = attempts + 1, claimed_by = ?
                where job_id = (
                    select job_id
                    from jobs
                    where status = ? and next_run_at <= ?
                    order by priority desc, next_run_at asc, created_at asc
                    limit 1
                )
                returning {JOB_COLUMNS}
                """,  # noqa: S608
                (JobStatus.PROCESSING.value, now, worker_id, JobStatus.PENDING.value, now),
            ).fetchall()

        if not rows:
            return None

        job = _row_to_job(rows[0])
        log.info(f"Worker {worker_id} claimed job {job.job_id} (attempt {job.attempts}/{job.max_attempts})")
        self.emit(JobClaimedEvent(job_id=job.job_id, job_type=job.job_type, attempt=job.attempts, worker_id=worker_id))

        return job

    def complete(self, job_id: str, attempt: int, result: Mapping[str, Any] | None = None) -> Job | None:
        log.debug(f"Completing job {job_id} attempt {attempt}")

        serialised_result = json.dumps(dict(result)) if result is not None else None
        with self.database.transaction() as conn:
            rows = conn.execute(
                f"""
                update jobs
                set status = ?, completed_at = ?, result = ?
                where job_id = ? and status = ? and attempts = ?
                returning {JOB_COLUMNS}
                """,  # noqa: S608
                (
                    JobStatus.COMPLETED.value,
                    to_timestamp(utc_now()),
                    serialised_result,
                    job_id,
                    JobStatus.PROCESSING.value,
                    attempt,
                ),
            ).fetchall()

            if not rows:
                self._require_job(conn, job_id)

        if not rows:
            warn_stale_outcome(job_id, attempt, "completion")
            return None

        job = _row_to_job(rows[0])
        log.info(f"Job {job_id} completed on attempt {attempt}")
        self.emit(
            JobCompletedEvent(
                job_id=job.job_id,
                job_type=job.job_type,
                attempt=job.attempts,
                duration_seconds=duration_between(job.started_at, job.completed_at),
            )
        )

        return job

    def _apply_failure(
        self,
        conn: sqlite3.Connection,
        job: Job,
        error: BaseException,
        policy: RetryPolicy,
        now: datetime,
        retryable: bool,
    ) -> tuple[Job, RetryDecision, str]:
        """Record a failure of the job's current attempt and move it on, inside the caller's transaction."""

        error_text = describe_error(error)
        decision = policy.decide(job.attempts, job.max_attempts, now, retryable=retryable)

        if decision.permanent:
            rows = conn.execute(
                f"""
                update jobs set status = ?, last_error = ?, completed_at = ?
                where job_id = ?
                returning {JOB_COLUMNS}
                """,  # noqa: S608
                (JobStatus.FAILED.value, error_text, to_timestamp(now), job.job_id),
            ).fetchall()
        else:
            rows = conn.execute(
                f"""
                update jobs set status = ?, last_error = ?, next_run_at = ?
                where job_id = ?
                returning {JOB_COLUMNS}
                """,  # noqa: S608
                (
                    JobStatus.PENDING.value,
                    error_text,
                    to_timestamp(decision.next_run_at),  # type: ignore[arg-type]
                    job.job_id,
                ),
            ).fetchall()

        conn.execute(
            "insert into job_errors (job_id, attempt, error_text, error_blob, created_at) values (?, ?, ?, ?, ?)",
            (job.job_id, job.attempts, error_text, safe_exception_blob(error), to_timestamp(now)),
        )

        return _row_to_job(rows[0]), decision, error_text

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
        with self.database.transaction() as conn:
            row = conn.execute(
                f"select {JOB_COLUMNS} from jobs where job_id = ? and status = ? and attempts = ?",  # noqa: S608
                (job_id, JobStatus.PROCESSING.value, attempt),
            ).fetchone()

            if row is None:
                self._require_job(conn, job_id)
                outcome = None
            else:
                outcome = self._apply_failure(conn, _row_to_job(row), error, policy, now, retryable)

        if outcome is None:
            warn_stale_outcome(job_id, attempt, "failure")
            return None

        job, decision, error_text = outcome
        self.emit(failure_event(job, decision, error_text))

        return job

    def reap_stuck(
        self, stuck_threshold_seconds: float, policy: RetryPolicy, now: datetime | None = None
    ) -> list[Job]:
        now = as_utc(now) if now is not None else utc_now()
        cutoff = now - timedelta(seconds=stuck_threshold_seconds)
        log.debug(f"Reaping jobs processing since before {to_timestamp(cutoff)}")

        events: list[WaypointEvent] = []
        reaped: list[Job] = []

        with self.database.transaction() as conn:
            rows = conn.execute(
                f"select {JOB_COLUMNS} from jobs where status = ? and started_at < ? order by started_at",  # noqa: S608
                (JobStatus.PROCESSING.value, to_timestamp(cutoff)),
            ).fetchall()

            for row in rows:
                stuck = _row_to_job(row)
                job, decision, error_text = self._apply_failure(
                    conn, stuck, JobTimedOutError(STUCK_JOB_MESSAGE), policy, now, retryable=True
                )
                reaped.append(job)
                events.append(
                    JobReapedEvent(
                        job_id=job.job_id,
                        job_type=job.job_type,
                        attempt=job.attempts,
                        stuck_seconds=duration_between(stuck.started_at, now),
                    )
                )
                events.append(failure_event(job, decision, error_text))

        if reaped:
            log.warning(f"Reaped {len(reaped)} stuck job(s)")

        for event in events:
            self.emit(event)

        return reaped

    def cancel(self, job_id: str) -> bool:
        log.debug(f"Cancelling job {job_id}")

        with self.database.transaction() as conn:
            rows = conn.execute(
                "update jobs set status = ?, completed_at = ? where job_id = ? and status = ? returning job_type",
                (JobStatus.CANCELLED.value, to_timestamp(utc_now()), job_id, JobStatus.PENDING.value),
            ).fetchall()

            if not rows:
                job = self._require_job(conn, job_id)
                log.debug(f"Job {job_id} is {job.status.value}; not cancelling")
                return False

        ((job_type,),) = rows
        self.emit(JobCancelledEvent(job_id=job_id, job_type=job_type))

        return True

    def requeue_failed(self, job_id: str) -> str:
        log.debug(f"Requeueing failed job {job_id}")

        now = utc_now()
        with self.database.transaction() as conn:
            failed = self._require_job(conn, job_id)
            if failed.status != JobStatus.FAILED:
                raise InvalidTransitionError(
                    f"Only failed jobs can be requeued; job {job_id} is {failed.status.value}"
                )

            job = self._insert(
                conn,
                EnqueueRequest(
                    job_type=failed.job_type,
                    payload=failed.payload,
                    priority=failed.priority,
                    correlation_id=failed.correlation_id,
                    max_attempts=failed.max_attempts,
                    parent_job_id=failed.job_id,
                ),
                now,
            )

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
        with self.database.reading() as conn:
            return self._require_job(conn, job_id)

    def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: str | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        log.debug(f"Listing jobs with status={status}, job_type={job_type}, correlation_id={correlation_id}")

        clauses = []
        params: list[Any] = []
        for column, value in (
            ("status", status.value if status is not None else None),
            ("job_type", job_type),
            ("correlation_id", correlation_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        where = f"where {' and '.join(clauses)}" if clauses else ""
        # A negative limit means no limit in SQLite
        params.append(limit if limit is not None else -1)

        with self.database.reading() as conn:
            rows = conn.execute(
                f"select {JOB_COLUMNS} from jobs {where} order by created_at, job_id limit ?",  # noqa: S608
                params,
            ).fetchall()

        return [_row_to_job(row) for row in rows]

    def get_errors(self, job_id: str) -> list[JobErrorRecord]:
        with self.database.reading() as conn:
            self._require_job(conn, job_id)
            rows = conn.execute(
                """
                select job_id, attempt, error_text, error_blob, created_at
                from job_errors
                where job_id = ?
                order by error_id
                """,
                (job_id,),
            ).fetchall()

        return [
            JobErrorRecord(
                job_id=error_job_id,
                attempt=attempt,
                error=exception_from_text_blob(error_blob),
                error_text=error_text,
                created_at=from_timestamp(created_at),  # type: ignore[arg-type]
            )
            for error_job_id, attempt, error_text, error_blob, created_at in rows
        ]

    def counts(self, since: datetime | None = None) -> dict[tuple[str, JobStatus], int]:
        query = "select job_type, status, count(*) from jobs"
        params: tuple = ()
        if since is not None:
            query += " where created_at >= ?"
            params = (to_timestamp(since),)
        query += " group by job_type, status"

        with self.database.reading() as conn:
            rows = conn.execute(query, params).fetchall()

        return {(job_type, JobStatus(status)): count for job_type, status, count in rows}

    def failed_since(self, since: datetime, limit: int | None = None) -> list[Job]:
        with self.database.reading() as conn:
            rows = conn.execute(
                f"""
                select {JOB_COLUMNS} from jobs
                where status = ? and completed_at >= ?
                order by completed_at desc
                limit ?
                """,  # noqa: S608
                (JobStatus.FAILED.value, to_timestamp(since), limit if limit is not None else -1),
            ).fetchall()

        return [_row_to_job(row) for row in rows]
