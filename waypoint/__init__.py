from waypoint.base_types import Checkpoint, CheckpointStore, EnqueueRequest, Job, JobStatus, JobStore
from waypoint.checkpoint_store import MemoryCheckpointStore, SQLiteCheckpointStore
from waypoint.database import SQLiteDatabase
from waypoint.event_registry import MemoryEventRegistry, SQLiteEventRegistry
from waypoint.handlers import HandlerRegistry, JobContext
from waypoint.job_store import MemoryJobStore, SQLiteJobStore
from waypoint.pipeline import CheckpointedPipeline, PipelineResult, Step
from waypoint.reaper import Reaper
from waypoint.retry import RetryDecision, RetryPolicy
from waypoint.worker import JobOutcome, Worker, WorkerReport

__version__ = "0.1.0"

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "CheckpointedPipeline",
    "EnqueueRequest",
    "HandlerRegistry",
    "Job",
    "JobContext",
    "JobOutcome",
    "JobStatus",
    "JobStore",
    "MemoryCheckpointStore",
    "MemoryEventRegistry",
    "MemoryJobStore",
    "PipelineResult",
    "Reaper",
    "RetryDecision",
    "RetryPolicy",
    "SQLiteCheckpointStore",
    "SQLiteDatabase",
    "SQLiteEventRegistry",
    "SQLiteJobStore",
    "Step",
    "Worker",
    "WorkerReport",
]
