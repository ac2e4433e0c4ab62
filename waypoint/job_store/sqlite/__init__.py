from waypoint.job_store.sqlite.store import SQLiteJobStore

__all__ = ["SQLiteJobStore"]
