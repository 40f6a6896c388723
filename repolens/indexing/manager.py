"""Indexing job manager: start, poll, cancel and recover indexing runs."""

import asyncio
import time
from contextlib import contextmanager
from datetime import timedelta
from threading import Lock
from typing import Callable, Dict, Iterator, Optional

from repolens.exceptions import AuthenticationError, StorageError
from repolens.indexing.exceptions import (
    JobCancelledError,
    NoActiveJobError,
    UnknownRepositoryError,
)
from repolens.indexing.pipeline import IndexingPipeline
from repolens.indexing.schemas import IndexingStatus
from repolens.indexing.state import CancellationToken, IndexingJob, JobStatus, utcnow
from repolens.indexing.store import InMemoryJobStore, JobStore
from repolens.models import RepositoryRef
from repolens.observability.logging import LogContext, get_logger
from repolens.observability.metrics import (
    ACTIVE_JOBS,
    JOB_DURATION,
    JOBS_FINISHED,
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

STALE_JOB_ERROR = "Job timed out - please retry"

RepositoryResolver = Callable[[str], Optional[RepositoryRef]]


class JobHandle:
    """The manager's live grip on one running job.

    All writes to the job happen under ``_lock`` and are refused once the
    token is cancelled, so a cancelled job is never overwritten by its worker.
    """

    def __init__(self, job: IndexingJob, store: JobStore):
        self.job = job
        self.token = CancellationToken()
        self.task: Optional[asyncio.Task] = None
        self._store = store
        self._lock = Lock()

    @contextmanager
    def exclusive(self) -> Iterator[IndexingJob]:
        """Hold the job lock; raises ``JobCancelledError`` when cancelled."""
        with self._lock:
            self.token.raise_if_cancelled()
            yield self.job

    def save(self) -> None:
        """Persist the job. Only call inside ``exclusive``."""
        self._store.save(self.job)

    def advance(self, status: JobStatus) -> None:
        with self.exclusive() as job:
            job.transition(status)
            self.save()
        logger.info("Job phase changed", status=status.value, progress=self.job.progress_percent)

    def cancel(self) -> IndexingJob:
        with self._lock:
            self.token.cancel()
            if not self.job.is_terminal:
                self.job.transition(JobStatus.CANCELLED)
                self._store.save(self.job)
            return self.job.snapshot()

    def fail(self, message: str) -> None:
        with self._lock:
            # Stops the worker at its next boundary
            self.token.cancel()
            if not self.job.is_terminal:
                self.job.transition(JobStatus.FAILED, error=message)
                self._store.save(self.job)


def describe_error(error: Exception) -> str:
    """Human readable failure cause for the job's ``error`` field."""
    if isinstance(error, AuthenticationError):
        return f"Authentication failed: {error}"
    if isinstance(error, StorageError):
        return f"Storage failure: {error}"
    return str(error) or error.__class__.__name__


class IndexingJobManager:
    """Runs each indexing job as its own asyncio task.

    The job store enforces one non-terminal job per repository; the manager
    keeps a ``JobHandle`` per running job so it can cancel or fail it.
    """

    def __init__(
        self,
        pipeline: IndexingPipeline,
        repositories: RepositoryResolver,
        job_store: Optional[JobStore] = None,
        stale_job_minutes: int = 30,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize job manager.

        Args:
            pipeline: Phases executed for each job
            repositories: Looks up a repository's identity by id
            job_store: Job persistence; in-memory by default
            stale_job_minutes: Age after which ``recover_stale_jobs`` fails a job
            metrics: Metrics collector; the process-wide one by default
        """
        self.pipeline = pipeline
        self.repositories = repositories
        self.job_store = job_store or InMemoryJobStore()
        self.stale_job_minutes = stale_job_minutes
        self.metrics = metrics or get_metrics_collector()
        self._handles: Dict[str, JobHandle] = {}

    async def start_indexing(self, repository_id: str, ref: Optional[str] = None) -> IndexingJob:
        """Claim the repository's job slot and start a worker.

        Raises:
            UnknownRepositoryError: No repository with this id
            JobAlreadyRunningError: A non-terminal job already exists
        """
        repository = self.repositories(repository_id)
        if repository is None:
            raise UnknownRepositoryError(f"Unknown repository: {repository_id}")

        job = self.job_store.claim(repository_id)
        handle = JobHandle(job, self.job_store)
        self._handles[repository_id] = handle
        self.metrics.set_gauge(ACTIVE_JOBS, len(self._handles))
        handle.task = asyncio.create_task(
            self._run(handle, repository, ref), name=f"indexing-{job.id}"
        )

        logger.info("Indexing job started", job_id=job.id, repository_id=repository_id)
        return job.snapshot()

    async def _run(self, handle: JobHandle, repository: RepositoryRef, ref: Optional[str]) -> None:
        job = handle.job
        started = time.perf_counter()

        with LogContext(job_id=job.id, repository_id=repository.id):
            try:
                await self.pipeline.run(handle, repository, ref)
            except JobCancelledError:
                logger.info("Indexing job stopped", status=job.status.value)
            except asyncio.CancelledError:
                handle.fail("Indexing interrupted by shutdown")
                raise
            except Exception as e:
                if handle.token.is_cancelled:
                    logger.info("Indexing job stopped", status=job.status.value)
                else:
                    logger.error("Indexing job failed", error=str(e), exc_info=True)
                    handle.fail(describe_error(e))
            finally:
                self.metrics.increment_counter(JOBS_FINISHED, labels={"status": job.status.value})
                self.metrics.record_timer(JOB_DURATION, time.perf_counter() - started)
                if self._handles.get(repository.id) is handle:
                    del self._handles[repository.id]
                self.metrics.set_gauge(ACTIVE_JOBS, len(self._handles))

    def get_status(self, repository_id: str) -> IndexingStatus:
        """Lock-free snapshot of the repository's latest job."""
        is_indexed = self.job_store.is_indexed(repository_id)
        job = self.job_store.get_latest(repository_id)

        if job is None:
            return IndexingStatus(status=JobStatus.NOT_STARTED.value, is_indexed=is_indexed)

        return IndexingStatus(
            status=job.status.display_value,
            is_indexed=is_indexed,
            job_id=job.id,
            progress=job.progress_percent,
            files_total=job.files_total,
            files_processed=job.files_processed,
            chunks_created=job.chunks_created,
            current_phase=job.current_phase,
            error=job.error if job.status is JobStatus.FAILED else None,
        )

    async def cancel_indexing(self, repository_id: str) -> IndexingJob:
        """Cancel the repository's running job.

        Raises:
            NoActiveJobError: Nothing is running for the repository
        """
        handle = self._handles.get(repository_id)
        if handle is not None and not handle.job.is_terminal:
            job = handle.cancel()
            logger.info("Indexing job cancelled", job_id=job.id, repository_id=repository_id)
            return job

        # A job left non-terminal by another process or a crash
        orphan = self.job_store.get_latest(repository_id)
        if orphan is not None and not orphan.is_terminal:
            orphan.transition(JobStatus.CANCELLED)
            self.job_store.save(orphan)
            logger.info("Orphaned indexing job cancelled", job_id=orphan.id, repository_id=repository_id)
            return orphan

        raise NoActiveJobError(repository_id)

    async def wait_for(self, repository_id: str, timeout: Optional[float] = None) -> IndexingStatus:
        """Wait until the repository's current worker exits, then report status."""
        handle = self._handles.get(repository_id)
        if handle is not None and handle.task is not None:
            await asyncio.wait_for(asyncio.shield(handle.task), timeout)
        return self.get_status(repository_id)

    def recover_stale_jobs(self, max_age_minutes: Optional[int] = None) -> int:
        """Fail non-terminal jobs that have run longer than the threshold.

        Returns:
            Number of jobs failed
        """
        max_age = timedelta(minutes=max_age_minutes or self.stale_job_minutes)
        now = utcnow()
        recovered = 0

        for job in self.job_store.list_active():
            if now - (job.started_at or job.created_at) < max_age:
                continue

            handle = self._handles.get(job.repository_id)
            if handle is not None and handle.job.id == job.id:
                handle.fail(STALE_JOB_ERROR)
            else:
                job.transition(JobStatus.FAILED, error=STALE_JOB_ERROR)
                self.job_store.save(job)
            recovered += 1
            logger.warning("Stale indexing job failed", job_id=job.id, repository_id=job.repository_id)

        return recovered

    async def shutdown(self) -> None:
        """Stop every running worker."""
        tasks = [handle.task for handle in self._handles.values() if handle.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
