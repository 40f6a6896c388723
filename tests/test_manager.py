"""Tests for the indexing job manager and pipeline."""

import asyncio
from datetime import timedelta

import pytest

from repolens.catalog import RepositoryCatalog
from repolens.fetching import (
    FetchAuthenticationError,
    FetchRateLimitError,
    RepositoryNotFoundError,
    TransientFetchError,
)
from repolens.indexing import (
    IndexingJobManager,
    IndexingPipeline,
    InMemoryJobStore,
    JobAlreadyRunningError,
    JobStatus,
    NoActiveJobError,
    UnknownRepositoryError,
)
from repolens.indexing.manager import STALE_JOB_ERROR
from repolens.indexing.state import utcnow
from repolens.llm.exceptions import EmbeddingAuthenticationError
from repolens.models import RepositoryRef
from repolens.observability.metrics import (
    ACTIVE_JOBS,
    EMBEDDING_BATCHES,
    FILES_SKIPPED,
    JOBS_FINISHED,
    RETRIES,
    MetricsCollector,
)
from repolens.parsing import CodeChunker
from repolens.retry import RetryPolicy
from repolens.vector import Embedder, VectorStore

from conftest import FakeEmbeddingProvider, FakeFetcher, StallingEmbeddingProvider

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0)

REPOSITORY_FILES = {
    "src/app.py": b"def main():\n    return 1\n\n\nclass App:\n    pass\n",
    "src/util.ts": b"export function helper() {\n  return 2;\n}\n",
    "README.md": b"# Widgets\n\nDocs here.\n",
    "node_modules/lib/index.js": b"module.exports = {}\n",
    "assets/logo.png": b"\x89PNG\x00\x00",
}


class RecordingJobStore(InMemoryJobStore):
    """Keeps the progress value of every save."""

    def __init__(self):
        super().__init__()
        self.progress_history = []

    def save(self, job):
        self.progress_history.append(job.progress_percent)
        super().save(job)


class Harness:
    """A manager wired to fakes, plus handles on its collaborators."""

    def __init__(self, fetcher, provider=None, job_store=None, max_concurrency=1):
        self.fetcher = fetcher
        self.provider = provider or FakeEmbeddingProvider()
        self.metrics = MetricsCollector()
        self.vector_store = VectorStore()
        self.job_store = job_store or InMemoryJobStore()

        embedder = Embedder(
            self.provider,
            max_batch_size=2,
            max_concurrency=max_concurrency,
            retry_policy=NO_WAIT,
            metrics=self.metrics,
        )
        pipeline = IndexingPipeline(
            fetcher=fetcher,
            chunker=CodeChunker(),
            embedder=embedder,
            vector_store=self.vector_store,
            fetch_retry=NO_WAIT,
            metrics=self.metrics,
        )
        catalog = RepositoryCatalog([RepositoryRef(id="repo-1", full_name="acme/widgets")])
        self.manager = IndexingJobManager(pipeline, catalog, job_store=self.job_store, metrics=self.metrics)

    async def index(self, repository_id="repo-1"):
        await self.manager.start_indexing(repository_id)
        return await self.manager.wait_for(repository_id, timeout=10)


@pytest.fixture
def fetcher():
    return FakeFetcher(dict(REPOSITORY_FILES))


@pytest.fixture
def harness(fetcher):
    return Harness(fetcher)


class TestIndexingRun:
    """Test cases for complete indexing runs."""

    @pytest.mark.asyncio
    async def test_full_run(self, harness):
        job = await harness.manager.start_indexing("repo-1")
        assert job.status is JobStatus.PENDING

        status = await harness.manager.wait_for("repo-1", timeout=10)

        assert status.status == "indexed"
        assert status.is_indexed is True
        assert status.job_id == job.id
        assert status.progress == 100
        assert status.files_total == 3
        assert status.files_processed == 3
        assert status.chunks_created == 4
        assert status.current_phase == "Completed"
        assert status.error is None
        assert harness.vector_store.count("repo-1") == 4
        assert harness.fetcher.fetched == ["src/app.py", "src/util.ts", "README.md"]
        assert harness.metrics.get_counter(JOBS_FINISHED, labels={"status": "completed"}) == 1

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, fetcher):
        harness = Harness(fetcher, job_store=RecordingJobStore())

        await harness.index()

        history = harness.job_store.progress_history
        assert history == sorted(history)
        assert history[-1] == 100
        assert all(p < 100 for p in history[:-1])

    @pytest.mark.asyncio
    async def test_empty_repository(self):
        harness = Harness(FakeFetcher({}))

        status = await harness.index()

        assert status.status == "indexed"
        assert status.files_total == 0
        assert status.chunks_created == 0
        assert harness.vector_store.count("repo-1") == 0

    @pytest.mark.asyncio
    async def test_reindex_replaces_chunks(self, harness):
        await harness.index()
        harness.fetcher.files = {"src/new.py": b"def fresh():\n    pass\n"}

        status = await harness.index()

        assert status.chunks_created == 1
        assert harness.vector_store.count("repo-1") == 1
        stats = harness.vector_store.get_stats("repo-1")
        assert stats["total_files"] == 1

    @pytest.mark.asyncio
    async def test_unknown_repository(self, harness):
        with pytest.raises(UnknownRepositoryError):
            await harness.manager.start_indexing("missing")

    def test_status_before_any_job(self, harness):
        status = harness.manager.get_status("repo-1")

        assert status.to_dict() == {"status": "not_started", "is_indexed": False}


class TestFailures:
    """Test cases for failing runs."""

    @pytest.mark.asyncio
    async def test_authentication_failure_is_not_retried(self):
        fetcher = FakeFetcher(dict(REPOSITORY_FILES), list_failures=[FetchAuthenticationError("bad credentials")])
        harness = Harness(fetcher)

        status = await harness.index()

        assert status.status == "failed"
        assert status.error == "Authentication failed: bad credentials"
        assert status.is_indexed is False
        assert harness.metrics.get_counter(RETRIES, labels={"operation": "fetch"}) == 0
        assert harness.metrics.get_counter(JOBS_FINISHED, labels={"status": "failed"}) == 1

    @pytest.mark.asyncio
    async def test_rate_limits_are_retried(self):
        fetcher = FakeFetcher(
            dict(REPOSITORY_FILES),
            list_failures=[FetchRateLimitError("slow down", retry_after=0)],
            content_failures=[FetchRateLimitError("slow down")],
        )
        harness = Harness(fetcher)

        status = await harness.index()

        assert status.status == "indexed"
        assert harness.metrics.get_counter(RETRIES, labels={"operation": "fetch"}) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_job(self):
        fetcher = FakeFetcher(dict(REPOSITORY_FILES), content_failures=[TransientFetchError("503")] * 3)
        harness = Harness(fetcher)

        status = await harness.index()

        assert status.status == "failed"
        assert "failed after 3 attempts" in status.error

    @pytest.mark.asyncio
    async def test_embedding_failure_keeps_partial_progress(self, fetcher):
        provider = FakeEmbeddingProvider(failures=[EmbeddingAuthenticationError("denied")])
        harness = Harness(fetcher, provider=provider)

        status = await harness.index()

        assert status.status == "failed"
        assert status.error == "Authentication failed: denied"
        assert status.files_processed == 3
        assert status.chunks_created == 4
        assert harness.vector_store.count("repo-1") == 0

    @pytest.mark.asyncio
    async def test_unparseable_file_does_not_abort_the_job(self):
        files = {"good.py": b"def ok():\n    return 1\n", "generated.py": b"-" * 10_000}
        harness = Harness(FakeFetcher(files))

        status = await harness.index()

        assert status.status == "indexed"
        assert status.files_processed == 2
        assert status.chunks_created == 2
        stats = harness.vector_store.get_stats("repo-1")
        assert stats["chunk_types"] == {"function": 1, "other": 1}

    @pytest.mark.asyncio
    async def test_missing_file_is_skipped(self, fetcher):
        fetcher.content_failures.append(RepositoryNotFoundError("File not found: src/app.py"))
        harness = Harness(fetcher)

        status = await harness.index()

        assert status.status == "indexed"
        assert status.files_total == 3
        assert status.files_processed == 3
        assert status.chunks_created == 2
        assert harness.fetcher.fetched == ["src/util.ts", "README.md"]
        assert harness.metrics.get_counter(FILES_SKIPPED) == 3

    @pytest.mark.asyncio
    async def test_embedding_failure_cancels_concurrent_batches(self, fetcher):
        provider = StallingEmbeddingProvider("def main", EmbeddingAuthenticationError("denied"))
        harness = Harness(fetcher, provider=provider, max_concurrency=2)

        status = await harness.index()

        assert status.status == "failed"
        assert provider.cancelled == 1
        assert harness.metrics.get_counter(EMBEDDING_BATCHES) == 0

    @pytest.mark.asyncio
    async def test_failed_reindex_keeps_previous_index(self, harness):
        await harness.index()
        harness.fetcher.list_failures.append(FetchAuthenticationError("revoked"))

        status = await harness.index()

        assert status.status == "failed"
        assert status.is_indexed is True
        assert harness.vector_store.count("repo-1") == 4


class TestConcurrencyAndCancellation:
    """Test cases for the single-active-job rule and cancellation."""

    @pytest.fixture
    def gated(self, fetcher):
        fetcher.gate = asyncio.Event()
        return Harness(fetcher)

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, gated):
        await gated.manager.start_indexing("repo-1")
        await gated.fetcher.reached_gate.wait()

        with pytest.raises(JobAlreadyRunningError) as exc_info:
            await gated.manager.start_indexing("repo-1")

        assert exc_info.value.code == "ALREADY_RUNNING"
        gated.fetcher.gate.set()
        await gated.manager.wait_for("repo-1", timeout=10)

    @pytest.mark.asyncio
    async def test_status_while_parsing(self, gated):
        await gated.manager.start_indexing("repo-1")
        await gated.fetcher.reached_gate.wait()

        status = gated.manager.get_status("repo-1")

        assert status.status == "parsing"
        assert status.current_phase == "Parsing code"
        assert status.files_total == 3
        assert 10 <= status.progress < 50
        gated.fetcher.gate.set()
        await gated.manager.wait_for("repo-1", timeout=10)

    @pytest.mark.asyncio
    async def test_active_jobs_gauge(self, gated):
        await gated.manager.start_indexing("repo-1")
        await gated.fetcher.reached_gate.wait()

        assert gated.metrics.get_gauge(ACTIVE_JOBS) == 1

        gated.fetcher.gate.set()
        await gated.manager.wait_for("repo-1", timeout=10)

        assert gated.metrics.get_gauge(ACTIVE_JOBS) == 0

    @pytest.mark.asyncio
    async def test_cancel_during_parsing(self, gated):
        await gated.manager.start_indexing("repo-1")
        await gated.fetcher.reached_gate.wait()

        cancelled = await gated.manager.cancel_indexing("repo-1")
        assert cancelled.status is JobStatus.CANCELLED
        assert gated.manager.get_status("repo-1").status == "cancelled"

        gated.fetcher.gate.set()
        status = await gated.manager.wait_for("repo-1", timeout=10)

        assert status.status == "cancelled"
        assert status.files_processed == 0
        assert status.error is None
        assert gated.vector_store.count("repo-1") == 0
        assert gated.fetcher.fetched == ["src/app.py"]

    @pytest.mark.asyncio
    async def test_cancelled_reindex_keeps_previous_index(self, harness):
        await harness.index()
        harness.fetcher.gate = asyncio.Event()
        await harness.manager.start_indexing("repo-1")
        await harness.fetcher.reached_gate.wait()

        assert harness.vector_store.count("repo-1") == 4
        assert harness.manager.get_status("repo-1").is_indexed is True

        await harness.manager.cancel_indexing("repo-1")
        harness.fetcher.gate.set()
        status = await harness.manager.wait_for("repo-1", timeout=10)

        assert status.status == "cancelled"
        assert status.is_indexed is True
        assert harness.vector_store.count("repo-1") == 4

    @pytest.mark.asyncio
    async def test_restart_after_cancel(self, gated):
        await gated.manager.start_indexing("repo-1")
        await gated.fetcher.reached_gate.wait()
        await gated.manager.cancel_indexing("repo-1")
        gated.fetcher.gate.set()
        await gated.manager.wait_for("repo-1", timeout=10)

        status = await gated.index()

        assert status.status == "indexed"

    @pytest.mark.asyncio
    async def test_cancel_without_active_job(self, harness):
        with pytest.raises(NoActiveJobError) as exc_info:
            await harness.manager.cancel_indexing("repo-1")
        assert exc_info.value.code == "NO_ACTIVE_JOB"

        await harness.index()
        with pytest.raises(NoActiveJobError):
            await harness.manager.cancel_indexing("repo-1")

    @pytest.mark.asyncio
    async def test_cancel_orphaned_job(self, harness):
        orphan = harness.job_store.claim("repo-1")

        cancelled = await harness.manager.cancel_indexing("repo-1")

        assert cancelled.id == orphan.id
        assert harness.manager.get_status("repo-1").status == "cancelled"

    @pytest.mark.asyncio
    async def test_shutdown_fails_running_jobs(self, gated):
        await gated.manager.start_indexing("repo-1")
        await gated.fetcher.reached_gate.wait()

        await gated.manager.shutdown()

        status = gated.manager.get_status("repo-1")
        assert status.status == "failed"
        assert status.error == "Indexing interrupted by shutdown"


class TestStaleJobRecovery:
    """Test cases for recover_stale_jobs."""

    def test_old_jobs_are_failed(self, harness):
        job = harness.job_store.claim("repo-1")
        job.created_at = utcnow() - timedelta(hours=2)
        harness.job_store.save(job)

        assert harness.manager.recover_stale_jobs() == 1

        status = harness.manager.get_status("repo-1")
        assert status.status == "failed"
        assert status.error == STALE_JOB_ERROR

    def test_recent_jobs_are_kept(self, harness):
        harness.job_store.claim("repo-1")

        assert harness.manager.recover_stale_jobs() == 0
        assert harness.manager.get_status("repo-1").status == "pending"
