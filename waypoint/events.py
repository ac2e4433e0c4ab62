"""Events

The queue should be observable. Stores emit an event for each interesting transition after it
commits; the event registry keeps them so that alerting can pick up, say, permanent failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


class WaypointEvent(ABC):
    """Base class for all Waypoint events"""

    @abstractmethod
    def save(self) -> Mapping[str, Any]:
        """Serialize the event to a dictionary.

        @return: The serialized event data
        """
        raise NotImplementedError

    @classmethod
    @abstractmethod
    def load(cls, data: Mapping[str, Any]) -> WaypointEvent:
        """Deserialize the event from a dictionary.

        @param data: The serialized event data
        @return: The deserialized event
        """
        raise NotImplementedError


@dataclass
class JobEnqueuedEvent(WaypointEvent):
    """Indicates that a job was added to the queue"""

    job_id: str
    job_type: str
    priority: int
    correlation_id: str | None = None

    def save(self) -> Mapping[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "priority": self.priority,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> JobEnqueuedEvent:
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            priority=data["priority"],
            correlation_id=data.get("correlation_id"),
        )


@dataclass
class JobClaimedEvent(WaypointEvent):
    """Indicates that a worker claimed a job"""

    job_id: str
    job_type: str
    attempt: int
    worker_id: str

    def save(self) -> Mapping[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "attempt": self.attempt,
            "worker_id": self.worker_id,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> JobClaimedEvent:
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            attempt=data["attempt"],
            worker_id=data["worker_id"],
        )


@dataclass
class JobCompletedEvent(WaypointEvent):
    """Indicates that a job has completed successfully"""

    job_id: str
    job_type: str
    attempt: int
    duration_seconds: float

    def save(self) -> Mapping[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "attempt": self.attempt,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> JobCompletedEvent:
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            attempt=data["attempt"],
            duration_seconds=data["duration_seconds"],
        )


@dataclass
class JobRetryScheduledEvent(WaypointEvent):
    """Indicates that a failed attempt will be retried after a backoff"""

    job_id: str
    job_type: str
    attempt: int
    delay_seconds: float
    error: str

    def save(self) -> Mapping[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "attempt": self.attempt,
            "delay_seconds": self.delay_seconds,
            "error": self.error,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> JobRetryScheduledEvent:
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            attempt=data["attempt"],
            delay_seconds=data["delay_seconds"],
            error=data["error"],
        )


@dataclass
class JobFailedPermanentlyEvent(WaypointEvent):
    """Indicates that a job will not be retried again. Alerting should watch for these."""

    job_id: str
    job_type: str
    attempts: int
    error: str

    def save(self) -> Mapping[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> JobFailedPermanentlyEvent:
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            attempts=data["attempts"],
            error=data["error"],
        )


@dataclass
class JobCancelledEvent(WaypointEvent):
    """Indicates that a pending job was cancelled"""

    job_id: str
    job_type: str

    def save(self) -> Mapping[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> JobCancelledEvent:
        return cls(job_id=data["job_id"], job_type=data["job_type"])


@dataclass
class JobReapedEvent(WaypointEvent):
    """Indicates that a job stuck in processing was recovered by the reaper"""

    job_id: str
    job_type: str
    attempt: int
    stuck_seconds: float

    def save(self) -> Mapping[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "attempt": self.attempt,
            "stuck_seconds": self.stuck_seconds,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> JobReapedEvent:
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            attempt=data["attempt"],
            stuck_seconds=data["stuck_seconds"],
        )


@dataclass
class StepCompletedEvent(WaypointEvent):
    """Indicates that a pipeline step ran and its output was checkpointed"""

    owner_id: str
    step_name: str
    duration_seconds: float

    def save(self) -> Mapping[str, Any]:
        return {
            "owner_id": self.owner_id,
            "step_name": self.step_name,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> StepCompletedEvent:
        return cls(
            owner_id=data["owner_id"],
            step_name=data["step_name"],
            duration_seconds=data["duration_seconds"],
        )


@dataclass
class StepSkippedEvent(WaypointEvent):
    """Indicates that a pipeline step was skipped because a checkpoint already held its output"""

    owner_id: str
    step_name: str

    def save(self) -> Mapping[str, Any]:
        return {
            "owner_id": self.owner_id,
            "step_name": self.step_name,
        }

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> StepSkippedEvent:
        return cls(owner_id=data["owner_id"], step_name=data["step_name"])
