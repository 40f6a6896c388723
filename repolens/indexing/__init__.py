"""Indexing jobs: state machine, stores, pipeline and manager."""

from .exceptions import (
    IndexingError,
    InvalidTransitionError,
    JobAlreadyRunningError,
    JobCancelledError,
    NoActiveJobError,
    UnknownRepositoryError,
)
from .manager import IndexingJobManager, JobHandle
from .pipeline import IndexingPipeline
from .schemas import CancelIndexingResponse, IndexingStatus, StartIndexingResponse
from .state import CancellationToken, IndexingJob, JobStatus, phase_progress
from .store import InMemoryJobStore, JobStore, SqlJobStore

__all__ = [
    "IndexingError",
    "InvalidTransitionError",
    "JobAlreadyRunningError",
    "JobCancelledError",
    "NoActiveJobError",
    "UnknownRepositoryError",
    "IndexingJobManager",
    "JobHandle",
    "IndexingPipeline",
    "CancelIndexingResponse",
    "IndexingStatus",
    "StartIndexingResponse",
    "CancellationToken",
    "IndexingJob",
    "JobStatus",
    "phase_progress",
    "InMemoryJobStore",
    "JobStore",
    "SqlJobStore",
]
