"""The fetch, parse, embed and finalize phases of one indexing run."""

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from repolens.exceptions import AuthenticationError, TransientError
from repolens.fetching.base import RepositoryFetcher, RepositoryFile
from repolens.fetching.exceptions import FetchError
from repolens.indexing.state import JobStatus, phase_progress
from repolens.models import CodeChunk, RepositoryRef
from repolens.observability.logging import get_logger
from repolens.observability.metrics import (
    CHUNKS_CREATED,
    FILES_INDEXED,
    FILES_SKIPPED,
    RETRIES,
    MetricsCollector,
    get_metrics_collector,
)
from repolens.parsing.chunking import CodeChunker
from repolens.parsing.file_filter import FileFilter
from repolens.retry import RetryPolicy, retry_async
from repolens.vector.embedder import Embedder
from repolens.vector.store import VectorStore

logger = get_logger(__name__)

T = TypeVar("T")


class IndexingPipeline:
    """Runs the phases of a job against its ``JobHandle``.

    The handle owns the job record: every status change and progress write
    goes through it, and it raises ``JobCancelledError`` once the job was
    cancelled, which is how cancellation reaches file and batch boundaries.
    """

    def __init__(
        self,
        fetcher: RepositoryFetcher,
        chunker: CodeChunker,
        embedder: Embedder,
        vector_store: VectorStore,
        file_filter: Optional[FileFilter] = None,
        fetch_retry: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.fetcher = fetcher
        self.chunker = chunker
        self.embedder = embedder
        self.vector_store = vector_store
        self.file_filter = file_filter or FileFilter(max_file_bytes=chunker.max_file_bytes)
        self.fetch_retry = fetch_retry or RetryPolicy(max_attempts=5, base_delay=2.0)
        self.metrics = metrics or get_metrics_collector()

    async def run(self, handle, repository: RepositoryRef, ref: Optional[str] = None) -> None:
        """Drive the job from ``pending`` to ``completed``.

        Raises:
            JobCancelledError: The job was cancelled at a boundary
            RepolensError: Any failure that should end the job as ``failed``
        """
        handle.advance(JobStatus.FETCHING)
        revision, files = await self._list_files(handle, repository, ref)

        with handle.exclusive() as job:
            job.files_total = len(files)
            job.advance_progress(phase_progress(JobStatus.FETCHING, 1.0))
        handle.advance(JobStatus.PARSING)

        chunks = await self._parse(handle, repository, revision, files)

        handle.advance(JobStatus.EMBEDDING)
        vectors = await self._embed(handle, chunks)

        handle.advance(JobStatus.FINALIZING)
        embedded = [chunk.with_embedding(vector) for chunk, vector in zip(chunks, vectors)]

        # No awaits from here on: the swap and the completion are one step
        with handle.exclusive() as job:
            self.vector_store.replace_all(repository.id, embedded)
            job.transition(JobStatus.COMPLETED)
            handle.save()

        logger.info(
            "Indexing completed",
            files=len(files),
            chunks=len(embedded),
        )

    async def _with_retry(self, handle, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_async(
            operation,
            self.fetch_retry,
            description=description,
            retry_on=(TransientError,),
            sleep=handle.token.sleep,
            on_retry=lambda attempt, error, delay: self.metrics.increment_counter(
                RETRIES, labels={"operation": "fetch"}
            ),
        )

    async def _list_files(self, handle, repository: RepositoryRef, ref: Optional[str]):
        snapshot = await self._with_retry(
            handle,
            lambda: self.fetcher.list_files(repository, ref),
            f"Listing files of {repository.full_name}",
        )
        handle.token.raise_if_cancelled()

        files: List[RepositoryFile] = []
        for entry in snapshot.files:
            reason = self.file_filter.skip_reason(entry.path, entry.size)
            if reason is None:
                files.append(entry)
            else:
                self.metrics.increment_counter(FILES_SKIPPED)
                logger.debug("Skipping file", path=entry.path, reason=reason)

        logger.info(
            "File list obtained",
            listed=len(snapshot.files),
            selected=len(files),
            revision=snapshot.revision,
        )
        return snapshot.revision, files

    async def _parse(
        self,
        handle,
        repository: RepositoryRef,
        revision: Optional[str],
        files: List[RepositoryFile],
    ) -> List[CodeChunk]:
        chunks: List[CodeChunk] = []
        total = len(files)

        for index, entry in enumerate(files, start=1):
            handle.token.raise_if_cancelled()

            try:
                content = await self._with_retry(
                    handle,
                    lambda: self.fetcher.fetch_content(repository, entry.path, revision),
                    f"Fetching {entry.path}",
                )
            except (AuthenticationError, TransientError):
                raise
            except FetchError as e:
                # Vanished or unreadable blob
                logger.warning("Skipping unreadable file", path=entry.path, error=str(e))
                self.metrics.increment_counter(FILES_SKIPPED)
                file_chunks = []
            else:
                file_chunks = await asyncio.to_thread(self.chunker.chunk, entry.path, content, repository.id)
                self.metrics.increment_counter(FILES_INDEXED)
            chunks.extend(file_chunks)

            self.metrics.increment_counter(CHUNKS_CREATED, len(file_chunks))

            with handle.exclusive() as job:
                job.record_file(len(file_chunks))
                job.advance_progress(phase_progress(JobStatus.PARSING, index / total))
                handle.save()

        logger.info("Parsing finished", files=total, chunks=len(chunks))
        return chunks

    async def _embed(self, handle, chunks: List[CodeChunk]) -> List[List[float]]:
        batches = self.embedder.plan_batches([chunk.content for chunk in chunks])
        vectors: List[List[float]] = []
        window = self.embedder.max_concurrency

        for start in range(0, len(batches), window):
            handle.token.raise_if_cancelled()

            group = batches[start:start + window]
            results = await self.embedder.embed_batches(group, sleep=handle.token.sleep)
            for batch_vectors in results:
                vectors.extend(batch_vectors)

            done = min(len(batches), start + window)
            with handle.exclusive() as job:
                job.advance_progress(phase_progress(JobStatus.EMBEDDING, done / len(batches)))
                handle.save()
            logger.debug("Embedding batch finished", batch=done, batches=len(batches))

        return vectors
