"""Exceptions for indexing jobs."""

from typing import Optional

from repolens.exceptions import RepolensError


class IndexingError(RepolensError):
    """Base exception for indexing operations."""

    code = "INDEXING_ERROR"


class JobAlreadyRunningError(IndexingError):
    """A non-terminal job already exists for the repository."""

    code = "ALREADY_RUNNING"

    def __init__(self, repository_id: str, job_id: Optional[str] = None):
        super().__init__(f"Indexing already running for repository {repository_id}")
        self.repository_id = repository_id
        self.job_id = job_id


class NoActiveJobError(IndexingError):
    """Cancel was requested but nothing is running."""

    code = "NO_ACTIVE_JOB"

    def __init__(self, repository_id: str):
        super().__init__(f"No active indexing job for repository {repository_id}")
        self.repository_id = repository_id


class UnknownRepositoryError(IndexingError):
    """The repository catalog has no entry for the id."""

    code = "REPOSITORY_NOT_FOUND"


class InvalidTransitionError(IndexingError):
    """A status change the job state machine does not allow."""

    code = "INVALID_TRANSITION"


class JobCancelledError(IndexingError):
    """Raised inside a worker when its cancellation token fires.

    Control flow only; it ends the run as ``cancelled`` and is never
    reported as a failure.
    """

    code = "CANCELLED"
