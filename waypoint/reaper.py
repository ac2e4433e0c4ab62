"""Recover jobs whose worker vanished.

A worker killed mid-job (by a platform timeout, a crash, a deploy) never records an outcome, so
its job stays in processing forever. The reaper treats any job processing for longer than the
stuck threshold as a failed attempt and hands it to the retry policy. The store selects and
updates stuck jobs in one write transaction, so concurrent reapers never count an attempt twice.
"""

from datetime import datetime
import threading

from waypoint.base_types import Job, JobStore
from waypoint.constants import STUCK_THRESHOLD_SECONDS
from waypoint.exception import StoreUnavailableError
from waypoint.retry import RetryPolicy
from waypoint.utils.logging_config import get_logger

log = get_logger(__name__)


class Reaper:
    def __init__(
        self,
        job_store: JobStore,
        policy: RetryPolicy | None = None,
        stuck_threshold_seconds: float = STUCK_THRESHOLD_SECONDS,
    ) -> None:
        if stuck_threshold_seconds <= 0:
            raise ValueError(f"stuck_threshold_seconds must be positive, got {stuck_threshold_seconds}")

        self.job_store = job_store
        self.policy = policy if policy is not None else RetryPolicy()
        self.stuck_threshold_seconds = stuck_threshold_seconds

    def reap(self, now: datetime | None = None) -> list[Job]:
        """Fail the current attempt of every stuck job.

        @param now: The time to measure from; defaults to the current time
        @return: The reaped jobs, now pending a retry or failed
        """

        reaped = self.job_store.reap_stuck(self.stuck_threshold_seconds, self.policy, now=now)
        if reaped:
            log.info(f"Reaper recovered {len(reaped)} job(s): {', '.join(job.job_id for job in reaped)}")

        return reaped

    def run_periodically(self, interval_seconds: float, stop: threading.Event) -> int:
        """Reap on a fixed schedule until `stop` is set, for deployments without a worker loop.

        @return: How many jobs were reaped in total
        """

        total = 0
        while not stop.is_set():
            try:
                total += len(self.reap())
            except StoreUnavailableError as err:
                log.warning(f"Reaper could not reach the job store: {err}")
            stop.wait(interval_seconds)

        return total
