"""Job stores keyed by repository id.

A store owns the "one non-terminal job per repository" rule through an
atomic ``claim``. Reads hand out copies, so pollers never observe a job
while the manager is mid-update.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Set

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from repolens.indexing.exceptions import JobAlreadyRunningError
from repolens.indexing.state import IndexingJob, JobStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Persistence for indexing jobs."""

    @abstractmethod
    def claim(self, repository_id: str) -> IndexingJob:
        """Create a pending job unless a non-terminal one exists.

        Raises:
            JobAlreadyRunningError: The repository's job slot is taken
        """

    @abstractmethod
    def save(self, job: IndexingJob) -> None:
        """Store the job's current fields."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[IndexingJob]:
        """Job by id."""

    @abstractmethod
    def get_latest(self, repository_id: str) -> Optional[IndexingJob]:
        """Most recently created job of the repository."""

    @abstractmethod
    def list_active(self) -> List[IndexingJob]:
        """Every non-terminal job."""

    @abstractmethod
    def is_indexed(self, repository_id: str) -> bool:
        """True once any job of the repository completed."""


class InMemoryJobStore(JobStore):
    """Process-local store, the default for single-process deployments."""

    def __init__(self):
        self._jobs: Dict[str, IndexingJob] = {}
        self._latest: Dict[str, str] = {}
        self._indexed: Set[str] = set()
        self._lock = Lock()

    def claim(self, repository_id: str) -> IndexingJob:
        with self._lock:
            current = self._jobs.get(self._latest.get(repository_id, ""))
            if current is not None and not current.is_terminal:
                raise JobAlreadyRunningError(repository_id, current.id)

            job = IndexingJob(repository_id=repository_id)
            self._jobs[job.id] = job.snapshot()
            self._latest[repository_id] = job.id
            return job

    def save(self, job: IndexingJob) -> None:
        with self._lock:
            self._jobs[job.id] = job.snapshot()
            if job.status is JobStatus.COMPLETED:
                self._indexed.add(job.repository_id)

    def get(self, job_id: str) -> Optional[IndexingJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def get_latest(self, repository_id: str) -> Optional[IndexingJob]:
        with self._lock:
            job = self._jobs.get(self._latest.get(repository_id, ""))
            return job.snapshot() if job else None

    def list_active(self) -> List[IndexingJob]:
        with self._lock:
            return [job.snapshot() for job in self._jobs.values() if not job.is_terminal]

    def is_indexed(self, repository_id: str) -> bool:
        with self._lock:
            return repository_id in self._indexed


Base = declarative_base()


class IndexingJobRecord(Base):
    """Row per indexing run."""

    __tablename__ = "indexing_jobs"

    id = Column(String(64), primary_key=True)
    repository_id = Column(String(255), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    current_phase = Column(String(64), nullable=False)
    progress_percent = Column(Integer, nullable=False, default=0)
    files_total = Column(Integer)
    files_processed = Column(Integer, nullable=False, default=0)
    chunks_created = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    created_at = Column(DateTime, nullable=False, index=True)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    def __repr__(self):
        return f"<IndexingJobRecord(id='{self.id}', repository='{self.repository_id}', status='{self.status}')>"


class IndexedRepositoryRecord(Base):
    """Repositories with at least one completed job."""

    __tablename__ = "indexed_repositories"

    repository_id = Column(String(255), primary_key=True)
    last_job_id = Column(String(64), nullable=False)
    indexed_at = Column(DateTime, nullable=False)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _to_aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class SqlJobStore(JobStore):
    """SQLAlchemy-backed store so job history survives restarts."""

    def __init__(self, database_url: str = "sqlite://", echo: bool = False):
        """Initialize SQL job store.

        Args:
            database_url: SQLAlchemy URL; ``sqlite://`` is an in-memory database
            echo: Whether to echo SQL statements (for debugging)
        """
        is_sqlite = database_url.startswith("sqlite")
        engine_kwargs = {"echo": echo}
        if is_sqlite:
            engine_kwargs.update(
                poolclass=StaticPool,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        self.engine = create_engine(database_url, **engine_kwargs)

        if is_sqlite:
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.close()

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        # Serializes claim's check-then-insert within this process
        self._lock = Lock()

        logger.info(f"Initialized SQL job store at {self.engine.url.render_as_string(hide_password=True)}")

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _to_job(record: IndexingJobRecord) -> IndexingJob:
        return IndexingJob(
            id=record.id,
            repository_id=record.repository_id,
            status=JobStatus(record.status),
            current_phase=record.current_phase,
            progress_percent=record.progress_percent,
            files_total=record.files_total,
            files_processed=record.files_processed,
            chunks_created=record.chunks_created,
            error=record.error,
            created_at=_to_aware_utc(record.created_at),
            started_at=_to_aware_utc(record.started_at),
            finished_at=_to_aware_utc(record.finished_at),
        )

    @staticmethod
    def _apply(record: IndexingJobRecord, job: IndexingJob) -> None:
        record.repository_id = job.repository_id
        record.status = job.status.value
        record.current_phase = job.current_phase
        record.progress_percent = job.progress_percent
        record.files_total = job.files_total
        record.files_processed = job.files_processed
        record.chunks_created = job.chunks_created
        record.error = job.error
        record.created_at = _to_naive_utc(job.created_at)
        record.started_at = _to_naive_utc(job.started_at)
        record.finished_at = _to_naive_utc(job.finished_at)

    @staticmethod
    def _active_query(session, repository_id: Optional[str] = None):
        terminal = [status.value for status in TERMINAL_STATUSES]
        query = session.query(IndexingJobRecord).filter(~IndexingJobRecord.status.in_(terminal))
        if repository_id is not None:
            query = query.filter(IndexingJobRecord.repository_id == repository_id)
        return query

    def claim(self, repository_id: str) -> IndexingJob:
        with self._lock, self.SessionLocal() as session:
            active = self._active_query(session, repository_id).first()
            if active is not None:
                raise JobAlreadyRunningError(repository_id, active.id)

            job = IndexingJob(repository_id=repository_id)
            record = IndexingJobRecord(id=job.id)
            self._apply(record, job)
            session.add(record)
            session.commit()
            return job

    def save(self, job: IndexingJob) -> None:
        with self.SessionLocal() as session:
            record = session.get(IndexingJobRecord, job.id)
            if record is None:
                record = IndexingJobRecord(id=job.id)
                session.add(record)
            self._apply(record, job)

            if job.status is JobStatus.COMPLETED:
                session.merge(IndexedRepositoryRecord(
                    repository_id=job.repository_id,
                    last_job_id=job.id,
                    indexed_at=_to_naive_utc(job.finished_at),
                ))
            session.commit()

    def get(self, job_id: str) -> Optional[IndexingJob]:
        with self.SessionLocal() as session:
            record = session.get(IndexingJobRecord, job_id)
            return self._to_job(record) if record else None

    def get_latest(self, repository_id: str) -> Optional[IndexingJob]:
        with self.SessionLocal() as session:
            record = (
                session.query(IndexingJobRecord)
                .filter(IndexingJobRecord.repository_id == repository_id)
                .order_by(IndexingJobRecord.created_at.desc())
                .first()
            )
            return self._to_job(record) if record else None

    def list_active(self) -> List[IndexingJob]:
        with self.SessionLocal() as session:
            return [self._to_job(record) for record in self._active_query(session).all()]

    def is_indexed(self, repository_id: str) -> bool:
        with self.SessionLocal() as session:
            return session.get(IndexedRepositoryRecord, repository_id) is not None
