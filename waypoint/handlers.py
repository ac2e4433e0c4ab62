"""Handlers: the user code that does a job's work.

A handler is called as `handler(payload, context)` and returns a JSON-serialisable mapping (or
None). Raising signals failure: PermanentJobError and its subclasses fail the job at once, any
other exception is retried with backoff. Handlers may run more than once for the same job, so
they should be idempotent or guard their side-effects with checkpoints.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from typeguard import TypeCheckError, check_type

from waypoint.base_types import CheckpointStore
from waypoint.exception import InvalidPayloadError, UnknownJobTypeError

type Handler = Callable[[Mapping[str, Any], "JobContext"], Mapping[str, Any] | None]


@dataclass
class JobContext:
    """What a handler knows about the attempt it is running."""

    job_id: str
    job_type: str
    # Which attempt this is, counting from one
    attempt: int
    max_attempts: int
    worker_id: str
    correlation_id: str | None = None
    # Present when the worker was given a checkpoint store
    checkpoints: CheckpointStore | None = None

    @property
    def final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class HandlerEntry:
    handler: Handler
    # Checked against the payload before dispatch, e.g. a TypedDict
    payload_type: type | None = None


class HandlerRegistry:
    """Maps job types to handlers. The queue itself never interprets a job type."""

    def __init__(self) -> None:
        self._entries: dict[str, HandlerEntry] = {}

    def register(self, job_type: str, handler: Handler, payload_type: type | None = None) -> None:
        """Register the handler for a job type.

        @param job_type: The job type the handler serves
        @param handler: Called as handler(payload, context)
        @param payload_type: Optional type the payload must satisfy, checked with typeguard
        @raises ValueError: If the job type already has a handler
        """

        if not job_type:
            raise ValueError("job_type is required")
        if job_type in self._entries:
            raise ValueError(f"A handler is already registered for job type {job_type}")

        self._entries[job_type] = HandlerEntry(handler=handler, payload_type=payload_type)

    def handler(self, job_type: str, payload_type: type | None = None) -> Callable[[Handler], Handler]:
        """Register the decorated function as the handler for a job type.

        Usage:
            @handlers.handler("send_email")
            def send_email(payload, context): ...
        """

        def decorator(func: Handler) -> Handler:
            self.register(job_type, func, payload_type=payload_type)
            return func

        return decorator

    def get(self, job_type: str) -> Handler:
        """Look up the handler for a job type.

        @raises UnknownJobTypeError: If none is registered; a permanent failure
        """

        entry = self._entries.get(job_type)
        if entry is None:
            raise UnknownJobTypeError(f"No handler registered for job type {job_type}")

        return entry.handler

    def validate(self, job_type: str, payload: Mapping[str, Any]) -> None:
        """Check a payload against the type its handler declared, if any.

        @raises UnknownJobTypeError: If no handler is registered
        @raises InvalidPayloadError: If the payload does not match; a permanent failure
        """

        entry = self._entries.get(job_type)
        if entry is None:
            raise UnknownJobTypeError(f"No handler registered for job type {job_type}")

        if entry.payload_type is None:
            return

        try:
            check_type(payload, entry.payload_type)
        except TypeCheckError as err:
            raise InvalidPayloadError(f"Payload for job type {job_type} failed validation: {err}") from err

    def job_types(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._entries

    def __len__(self) -> int:
        return len(self._entries)
