"""Indexing job state machine and progress accounting."""

import asyncio
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from repolens.indexing.exceptions import InvalidTransitionError, JobCancelledError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Status of an indexing job."""
    NOT_STARTED = "not_started"
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    EMBEDDING = "embedding"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def display_value(self) -> str:
        """Status as shown to consumers; ``completed`` reads as ``indexed``."""
        return "indexed" if self is JobStatus.COMPLETED else self.value


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_ABORTABLE = {JobStatus.FAILED, JobStatus.CANCELLED}

ALLOWED_TRANSITIONS = {
    JobStatus.NOT_STARTED: {JobStatus.PENDING},
    JobStatus.PENDING: {JobStatus.FETCHING} | _ABORTABLE,
    JobStatus.FETCHING: {JobStatus.PARSING} | _ABORTABLE,
    JobStatus.PARSING: {JobStatus.EMBEDDING} | _ABORTABLE,
    JobStatus.EMBEDDING: {JobStatus.FINALIZING} | _ABORTABLE,
    JobStatus.FINALIZING: {JobStatus.COMPLETED} | _ABORTABLE,
}

PHASE_LABELS = {
    JobStatus.NOT_STARTED: "Not started",
    JobStatus.PENDING: "Initializing",
    JobStatus.FETCHING: "Fetching files",
    JobStatus.PARSING: "Parsing code",
    JobStatus.EMBEDDING: "Generating embeddings",
    JobStatus.FINALIZING: "Finalizing",
    JobStatus.COMPLETED: "Completed",
    JobStatus.FAILED: "Failed",
    JobStatus.CANCELLED: "Cancelled",
}

# (start percent, span) per working phase: fetch 10, parse 40, embed 40, finalize 10
PHASE_WEIGHTS = {
    JobStatus.FETCHING: (0, 10),
    JobStatus.PARSING: (10, 40),
    JobStatus.EMBEDDING: (50, 40),
    JobStatus.FINALIZING: (90, 10),
}


def phase_progress(status: JobStatus, ratio: float = 0.0) -> int:
    """Overall percentage for ``status`` with ``ratio`` of the phase done.

    Only ``completed`` maps to 100; every working phase tops out at 99.
    """
    if status is JobStatus.COMPLETED:
        return 100
    weights = PHASE_WEIGHTS.get(status)
    if weights is None:
        return 0
    start, span = weights
    ratio = min(1.0, max(0.0, ratio))
    return min(99, int(start + span * ratio))


@dataclass
class IndexingJob:
    """Progress record of one indexing run."""
    repository_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    current_phase: str = PHASE_LABELS[JobStatus.PENDING]
    progress_percent: int = 0
    files_total: Optional[int] = None
    files_processed: int = 0
    chunks_created: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: JobStatus, error: Optional[str] = None) -> None:
        """Move to ``status``.

        Raises:
            InvalidTransitionError: The state machine forbids the move
        """
        if status not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(
                f"Job {self.id} cannot move from {self.status.value} to {status.value}"
            )

        self.status = status
        self.current_phase = PHASE_LABELS[status]

        if status is JobStatus.FETCHING and self.started_at is None:
            self.started_at = utcnow()

        if status.is_terminal:
            self.finished_at = utcnow()
            if status is JobStatus.COMPLETED:
                self.progress_percent = 100
            if status is JobStatus.FAILED:
                self.error = error or "Indexing failed"
            return

        self.advance_progress(phase_progress(status))

    def advance_progress(self, percent: int) -> None:
        """Raise progress to ``percent``; never lowers it, never reaches 100."""
        if self.is_terminal:
            return
        self.progress_percent = max(self.progress_percent, min(99, int(percent)))

    def record_file(self, chunk_count: int) -> None:
        if self.files_total is not None and self.files_processed >= self.files_total:
            raise InvalidTransitionError(f"Job {self.id} processed more files than it listed")
        self.files_processed += 1
        self.chunks_created += chunk_count

    def snapshot(self) -> "IndexingJob":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "status": self.status.value,
            "current_phase": self.current_phase,
            "progress_percent": self.progress_percent,
            "files_total": self.files_total,
            "files_processed": self.files_processed,
            "chunks_created": self.chunks_created,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class CancellationToken:
    """Shared flag a worker checks at file and batch boundaries."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError("Indexing cancelled")

    async def sleep(self, delay: float, interval: float = 0.1) -> None:
        """Sleep for ``delay`` seconds, waking early when cancelled."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            self.raise_if_cancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(interval, remaining))
