from waypoint.job_store.memory import MemoryJobStore
from waypoint.job_store.sqlite import SQLiteJobStore

__all__ = ["MemoryJobStore", "SQLiteJobStore"]
