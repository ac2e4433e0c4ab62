from waypoint.checkpoint_store.memory import MemoryCheckpointStore
from waypoint.checkpoint_store.sqlite import SQLiteCheckpointStore

__all__ = ["MemoryCheckpointStore", "SQLiteCheckpointStore"]
