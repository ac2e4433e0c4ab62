"""Exponential backoff for failed jobs.

A failed attempt n is retried after min(base * 2^(n-1), cap) seconds; with the defaults that
is 30s, 60s, 120s, 240s, 480s, ... up to an hour. Once a job has used all of its attempts it
fails permanently instead.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from waypoint.base_types import JobStatus
from waypoint.constants import BASE_DELAY_SECONDS, CAP_DELAY_SECONDS


@dataclass(frozen=True)
class RetryDecision:
    """What happens to a job after a failed attempt."""

    # PENDING to retry, FAILED to stop
    status: JobStatus
    # When the retry becomes claimable; None once the job has failed
    next_run_at: datetime | None
    delay_seconds: float | None

    @property
    def permanent(self) -> bool:
        return self.status == JobStatus.FAILED


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float = BASE_DELAY_SECONDS
    cap_delay_seconds: float = CAP_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError(f"base_delay_seconds must be non-negative, got {self.base_delay_seconds}")
        if self.cap_delay_seconds < self.base_delay_seconds:
            raise ValueError(
                f"cap_delay_seconds ({self.cap_delay_seconds}) must be at least "
                f"base_delay_seconds ({self.base_delay_seconds})"
            )

    def next_delay(self, attempt: int) -> float:
        """How long to wait before retrying after the given attempt failed.

        @param attempt: The attempt that failed, counting from one
        @return: The delay in seconds
        """

        exponent = max(attempt, 1) - 1

        # Past this point the cap always wins; don't build huge floats
        if exponent > 64:
            return self.cap_delay_seconds

        return min(self.base_delay_seconds * (2**exponent), self.cap_delay_seconds)

    @staticmethod
    def exhausted(attempts: int, max_attempts: int) -> bool:
        return attempts >= max_attempts

    def decide(self, attempts: int, max_attempts: int, now: datetime, retryable: bool = True) -> RetryDecision:
        """Decide the fate of a job whose latest attempt failed.

        @param attempts: Attempts used so far, including the one that failed
        @param max_attempts: The job's attempt limit
        @param now: When the failure was recorded
        @param retryable: False when the failure is permanent whatever the attempt count
        @return: The decision
        """

        if not retryable or self.exhausted(attempts, max_attempts):
            return RetryDecision(status=JobStatus.FAILED, next_run_at=None, delay_seconds=None)

        delay = self.next_delay(attempts)
        return RetryDecision(
            status=JobStatus.PENDING,
            next_run_at=now + timedelta(seconds=delay),
            delay_seconds=delay,
        )
