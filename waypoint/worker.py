"""The worker loop.

A worker claims jobs one at a time and dispatches each to the handler registered for its type,
until the queue is empty or its wall-clock budget is spent. The budget only stops new claims;
a handler already running is allowed to finish. Any number of workers may run at once, in
threads or processes, because all coordination happens through the job store's atomic claim.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
import time
import traceback
from typing import Any

from waypoint.base_types import CheckpointStore, Job, JobStatus, JobStore
from waypoint.constants import DEFAULT_TIME_BUDGET_SECONDS
from waypoint.exception import PermanentJobError, StoreUnavailableError
from waypoint.handlers import HandlerRegistry, JobContext
from waypoint.reaper import Reaper
from waypoint.retry import RetryPolicy
from waypoint.utils.id_generator import generate_worker_id
from waypoint.utils.logging_config import get_logger

log = get_logger(__name__)


@dataclass
class JobOutcome:
    """What happened to one claimed job."""

    job_id: str
    job_type: str
    attempt: int
    # None when the outcome could not be recorded: the claim went stale, or the store was down
    status: JobStatus | None
    duration_seconds: float
    error: str | None = None


@dataclass
class WorkerReport:
    """A summary of one worker run."""

    worker_id: str
    outcomes: list[JobOutcome] = field(default_factory=list)
    reaped: int = 0
    duration_seconds: float = 0.0
    # Set when the loop ended because the job store could not be reached
    store_unavailable: bool = False

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    def count(self, status: JobStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


def _string_keys(value: Any) -> Any:
    # json.dumps applies `default` to values only, never to keys
    if isinstance(value, Mapping):
        return {key if isinstance(key, str) else str(key): _string_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_string_keys(item) for item in value]

    return value


def normalise_result(result: Any) -> Mapping[str, Any] | None:
    """Turn a handler's return value into something the store can persist.

    Mappings are kept, anything else is wrapped as {"result": str(value)}. Keys and values JSON
    cannot encode are stringified.
    """

    if result is None:
        return None

    mapping = _string_keys(result) if isinstance(result, Mapping) else {"result": str(result)}
    return json.loads(json.dumps(mapping, default=str))


class Worker:
    def __init__(
        self,
        job_store: JobStore,
        handlers: HandlerRegistry,
        *,
        policy: RetryPolicy | None = None,
        reaper: Reaper | None = None,
        checkpoint_store: CheckpointStore | None = None,
        worker_id: str | None = None,
        time_budget_seconds: float = DEFAULT_TIME_BUDGET_SECONDS,
    ) -> None:
        """
        @param job_store: The store to claim jobs from
        @param handlers: Handlers for every job type this worker should run
        @param policy: The retry policy; defaults to 30s doubling, capped at an hour
        @param reaper: Run once per loop; defaults to a reaper on the same store and policy
        @param checkpoint_store: Made available to handlers through their context
        @param worker_id: Identifies this worker's claims; generated if omitted
        @param time_budget_seconds: Stop claiming new jobs after this long
        """

        if time_budget_seconds <= 0:
            raise ValueError(f"time_budget_seconds must be positive, got {time_budget_seconds}")

        self.job_store = job_store
        self.handlers = handlers
        self.policy = policy if policy is not None else RetryPolicy()
        self.reaper = reaper if reaper is not None else Reaper(job_store, self.policy)
        self.checkpoint_store = checkpoint_store
        self.worker_id = worker_id if worker_id is not None else generate_worker_id()
        self.time_budget_seconds = time_budget_seconds

    def run(self, idle_sleep_seconds: float | None = None, max_jobs: int | None = None) -> WorkerReport:
        """Claim and process jobs until the budget is spent.

        @param idle_sleep_seconds: None to return as soon as the queue is empty; otherwise how
            long to sleep between polls of an empty queue, for long-lived workers
        @param max_jobs: Optionally stop after this many jobs
        @return: A report of every job processed
        """

        start = time.monotonic()
        deadline = start + self.time_budget_seconds
        report = WorkerReport(worker_id=self.worker_id)

        log.debug(f"Worker {self.worker_id} starting with a {self.time_budget_seconds}s budget")

        while time.monotonic() < deadline:
            if max_jobs is not None and report.processed >= max_jobs:
                break

            try:
                job = self.job_store.claim_next(self.worker_id)
            except StoreUnavailableError as err:
                log.warning(f"Worker {self.worker_id} could not claim a job; ending this run: {err}")
                report.store_unavailable = True
                break

            if job is None:
                if idle_sleep_seconds is None:
                    log.debug(f"Worker {self.worker_id} found no eligible jobs")
                    break

                time.sleep(max(min(idle_sleep_seconds, deadline - time.monotonic()), 0))
                continue

            report.outcomes.append(self.process(job))

        try:
            report.reaped = len(self.reaper.reap())
        except StoreUnavailableError as err:
            log.warning(f"Worker {self.worker_id} could not run the reaper: {err}")
            report.store_unavailable = True

        report.duration_seconds = time.monotonic() - start
        log.info(
            f"Worker {self.worker_id} processed {report.processed} job(s) "
            f"and reaped {report.reaped} in {report.duration_seconds:.2f}s"
        )

        return report

    def _context(self, job: Job) -> JobContext:
        return JobContext(
            job_id=job.job_id,
            job_type=job.job_type,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            worker_id=self.worker_id,
            correlation_id=job.correlation_id,
            checkpoints=self.checkpoint_store,
        )

    def process(self, job: Job) -> JobOutcome:
        """Run one claimed job's handler and record the outcome.

        @param job: A job this worker has just claimed
        @return: The outcome
        """

        start = time.perf_counter()

        try:
            handler = self.handlers.get(job.job_type)
            self.handlers.validate(job.job_type, job.payload)
            result = handler(job.payload, self._context(job))
        except PermanentJobError as err:
            return self._record_failure(job, err, retryable=False, duration=time.perf_counter() - start)
        except Exception as err:
            return self._record_failure(job, err, retryable=True, duration=time.perf_counter() - start)

        duration = time.perf_counter() - start

        try:
            normalised = normalise_result(result)
        except (TypeError, ValueError, RecursionError) as err:
            # A circular result, say. Running the handler again would return the same thing
            return self._record_failure(job, err, retryable=False, duration=duration)

        try:
            updated = self.job_store.complete(job.job_id, job.attempts, normalised)
        except StoreUnavailableError as err:
            # The claim stands; the reaper will retry the job once it counts as stuck
            log.warning(f"Could not record completion of job {job.job_id}: {err}")
            updated = None

        return JobOutcome(
            job_id=job.job_id,
            job_type=job.job_type,
            attempt=job.attempts,
            status=updated.status if updated is not None else None,
            duration_seconds=duration,
        )

    def _record_failure(self, job: Job, error: Exception, retryable: bool, duration: float) -> JobOutcome:
        error_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        log.debug(f"Job {job.job_id} attempt {job.attempts} raised:\n{error_trace}")

        try:
            updated = self.job_store.fail(job.job_id, job.attempts, error, self.policy, retryable=retryable)
        except StoreUnavailableError as err:
            log.warning(f"Could not record failure of job {job.job_id}: {err}")
            updated = None

        return JobOutcome(
            job_id=job.job_id,
            job_type=job.job_type,
            attempt=job.attempts,
            status=updated.status if updated is not None else None,
            duration_seconds=duration,
            error=updated.last_error if updated is not None else str(error),
        )
