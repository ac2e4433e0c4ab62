"""Checkpointed pipelines.

A pipeline is an ordered list of named steps run for one owner (the entity being processed). Each
step's output is checkpointed before the next step starts; a step whose checkpoint already exists
is skipped and its stored output is used instead. When a step raises, the exception propagates
unchanged and earlier checkpoints stay put, so the job's next attempt resumes at the first step
that has not completed.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
import time
from typing import Any

from waypoint.base_types import CheckpointStore, EventRegistry
from waypoint.events import StepCompletedEvent, StepSkippedEvent, WaypointEvent
from waypoint.utils.logging_config import get_logger

log = get_logger(__name__)

type StepFn = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class Step:
    name: str
    # Called with everything accumulated so far; returns JSON-serialisable output
    run: StepFn


@dataclass
class PipelineResult:
    owner_id: str
    # The initial data plus each step's output under the step's name
    data: dict[str, Any]
    # Step names in the order they ran on this invocation
    executed: list[str] = field(default_factory=list)
    # Step names satisfied from checkpoints
    skipped: list[str] = field(default_factory=list)


class CheckpointedPipeline:
    def __init__(
        self,
        steps: Iterable[Step | tuple[str, StepFn]],
        checkpoint_store: CheckpointStore,
        event_registry: EventRegistry | None = None,
        clear_on_success: bool = False,
    ) -> None:
        """
        @param steps: The steps, in order; (name, fn) tuples are accepted
        @param checkpoint_store: Where step outputs are persisted
        @param event_registry: Optional registry for step events
        @param clear_on_success: Delete the owner's checkpoints once every step has run
        @raises ValueError: If there are no steps, or two steps share a name
        """

        self.steps = [step if isinstance(step, Step) else Step(*step) for step in steps]
        if not self.steps:
            raise ValueError("A pipeline needs at least one step")

        seen: set[str] = set()
        for step in self.steps:
            if not step.name:
                raise ValueError("Step names must be non-empty")
            if step.name in seen:
                raise ValueError(f"Duplicate step name {step.name}")
            seen.add(step.name)

        self.checkpoint_store = checkpoint_store
        self.event_registry = event_registry
        self.clear_on_success = clear_on_success

    def _emit(self, event: WaypointEvent) -> None:
        if self.event_registry is None:
            return

        try:
            self.event_registry.register(event)
        except Exception as err:
            # the step's output is already checkpointed
            log.warning(f"Could not register {type(event).__name__} for {event.owner_id}: {err}")

    def run(self, owner_id: str, initial: Mapping[str, Any] | None = None) -> PipelineResult:
        """Run every step not yet checkpointed for this owner.

        @param owner_id: The entity being processed; checkpoints are keyed by it
        @param initial: Data available to the first step
        @return: The accumulated data and which steps ran or were skipped
        """

        if not owner_id:
            raise ValueError("owner_id is required")

        result = PipelineResult(owner_id=owner_id, data={**(initial or {})})

        for step in self.steps:
            checkpoint = self.checkpoint_store.get(owner_id, step.name)

            if checkpoint is not None:
                log.debug(f"Skipping step {step.name} for {owner_id}; checkpoint exists")
                result.data[step.name] = checkpoint.data
                result.skipped.append(step.name)
                self._emit(StepSkippedEvent(owner_id=owner_id, step_name=step.name))
                continue

            log.debug(f"Running step {step.name} for {owner_id}")
            start = time.perf_counter()
            # A copy, so a failing step cannot leave partial changes behind
            output = step.run(dict(result.data))
            duration = time.perf_counter() - start

            stored = self.checkpoint_store.put(owner_id, step.name, output)
            result.data[step.name] = stored.data
            result.executed.append(step.name)
            self._emit(StepCompletedEvent(owner_id=owner_id, step_name=step.name, duration_seconds=duration))

        if self.clear_on_success:
            cleared = self.checkpoint_store.clear(owner_id)
            log.debug(f"Cleared {cleared} checkpoint(s) for {owner_id}")

        return result
