"""Keep pipeline checkpoints in memory."""

from collections.abc import Iterator
import copy
import json
from threading import Lock
from typing import Any

from waypoint.base_types import Checkpoint, CheckpointStore
from waypoint.utils.timestamps import utc_now


class MemoryCheckpointStore(CheckpointStore):
    """Thread-safe checkpoint store. Holds the same JSON-shaped data the SQLite store would."""

    def __init__(self) -> None:
        # Dicts keep insertion order, so per-owner dicts remember write order
        self._checkpoints: dict[str, dict[str, Checkpoint]] = {}
        self._lock = Lock()

    def get(self, owner_id: str, step_name: str) -> Checkpoint | None:
        with self._lock:
            checkpoint = self._checkpoints.get(owner_id, {}).get(step_name)
            return copy.deepcopy(checkpoint)

    def put(self, owner_id: str, step_name: str, data: Any) -> Checkpoint:
        # Round-trip through JSON: rejects unserialisable data, and detaches it from the caller
        stored = json.loads(json.dumps(data))
        checkpoint = Checkpoint(owner_id=owner_id, step_name=step_name, data=stored, written_at=utc_now())

        with self._lock:
            steps = self._checkpoints.setdefault(owner_id, {})
            # An overwrite counts as the latest write
            steps.pop(step_name, None)
            steps[step_name] = checkpoint

        return copy.deepcopy(checkpoint)

    def steps(self, owner_id: str) -> Iterator[Checkpoint]:
        with self._lock:
            checkpoints = copy.deepcopy(list(self._checkpoints.get(owner_id, {}).values()))

        yield from checkpoints

    def clear(self, owner_id: str) -> int:
        with self._lock:
            return len(self._checkpoints.pop(owner_id, {}))
