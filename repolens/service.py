"""Operations exposed to the outer application layers."""

import logging
from typing import List, Optional

from repolens.catalog import RepositoryCatalog
from repolens.config import Settings, get_settings
from repolens.fetching import GitHubFetcher, LocalDirectoryFetcher, RepositoryFetcher, RoutingFetcher
from repolens.indexing import (
    CancelIndexingResponse,
    IndexingJobManager,
    IndexingPipeline,
    IndexingStatus,
    InMemoryJobStore,
    SqlJobStore,
    StartIndexingResponse,
)
from repolens.llm import BedrockEmbeddingProvider, BedrockRerankProvider, EmbeddingProvider, RerankProvider
from repolens.models import RetrievedChunk
from repolens.parsing import CodeChunker, FileFilter
from repolens.rag import ContextResult, Retriever, build_code_context
from repolens.rag.context import OptionsLike, resolve_options
from repolens.retry import RetryPolicy
from repolens.vector import Embedder, VectorStore
from repolens.vector.embedder import UsageSink

logger = logging.getLogger(__name__)


class CodebaseService:
    """Start, poll and cancel indexing; query and build context."""

    def __init__(
        self,
        manager: IndexingJobManager,
        retriever: Retriever,
        catalog: RepositoryCatalog,
        settings: Optional[Settings] = None,
    ):
        self.manager = manager
        self.retriever = retriever
        self.catalog = catalog
        self.settings = settings or get_settings()

    async def start_indexing(self, repository_id: str, ref: Optional[str] = None) -> StartIndexingResponse:
        """Raises ``JobAlreadyRunningError`` (code ``ALREADY_RUNNING``) when busy."""
        job = await self.manager.start_indexing(repository_id, ref)
        return StartIndexingResponse(job_id=job.id, status=job.status.display_value)

    def get_status(self, repository_id: str) -> IndexingStatus:
        return self.manager.get_status(repository_id)

    async def cancel_indexing(self, repository_id: str) -> CancelIndexingResponse:
        """Raises ``NoActiveJobError`` when nothing is running."""
        job = await self.manager.cancel_indexing(repository_id)
        return CancelIndexingResponse(job_id=job.id)

    async def query(
        self,
        repository_id: str,
        text: str,
        k: Optional[int] = None,
        min_score: Optional[float] = None,
        hybrid: Optional[bool] = None,
        rerank: Optional[bool] = None,
    ) -> List[RetrievedChunk]:
        return await self.retriever.retrieve(
            repository_id, text, k=k, min_score=min_score, hybrid=hybrid, rerank=rerank
        )

    def build_context(self, chunks: List[RetrievedChunk], options: OptionsLike = None) -> ContextResult:
        """Context builder with this deployment's default locale and budget."""
        defaults = {
            "language": self.settings.context_language,
            "max_tokens": self.settings.context_max_tokens,
        }
        explicit = resolve_options(options).model_dump(exclude_unset=True)
        return build_code_context(chunks, {**defaults, **explicit})

    async def close(self) -> None:
        await self.manager.shutdown()
        await self.manager.pipeline.fetcher.close()


def build_service(
    settings: Optional[Settings] = None,
    catalog: Optional[RepositoryCatalog] = None,
    provider: Optional[EmbeddingProvider] = None,
    fetcher: Optional[RepositoryFetcher] = None,
    usage_sink: Optional[UsageSink] = None,
    reranker: Optional[RerankProvider] = None,
) -> CodebaseService:
    """Wire every component from settings.

    Args:
        settings: Configuration; the process-wide settings by default
        catalog: Repositories that may be indexed
        provider: Embedding provider; Bedrock by default
        fetcher: Repository fetcher; GitHub plus local directories by default
        usage_sink: Receives token usage of every embedding call
        reranker: Second-stage reranker; Bedrock when reranking is enabled
    """
    settings = settings or get_settings()
    catalog = catalog or RepositoryCatalog()

    fetcher = fetcher or RoutingFetcher(
        remote=GitHubFetcher(
            token=settings.github_token,
            api_url=settings.github_api_url,
            timeout=settings.fetch_timeout_seconds,
            max_files=settings.max_repository_files,
        ),
        local=LocalDirectoryFetcher(),
    )
    provider = provider or BedrockEmbeddingProvider(
        region=settings.bedrock_region,
        model_id=settings.bedrock_embed_model_id,
        dimension=settings.embedding_dimensions,
        timeout=settings.bedrock_timeout_seconds,
    )

    embedder = Embedder(
        provider,
        max_batch_size=settings.embedding_batch_size,
        max_batch_tokens=settings.embedding_max_batch_tokens,
        retry_policy=RetryPolicy(
            max_attempts=settings.embedding_max_attempts,
            base_delay=settings.embedding_backoff_base_seconds,
        ),
        max_concurrency=settings.embedding_max_concurrency,
        batch_delay=settings.embedding_batch_delay_seconds,
        usage_sink=usage_sink,
    )
    if reranker is None and settings.rerank_enabled:
        reranker = BedrockRerankProvider(
            region=settings.bedrock_region,
            model_id=settings.bedrock_rerank_model_id,
            timeout=settings.bedrock_timeout_seconds,
        )
    vector_store = VectorStore(index_path=settings.vector_index_path)
    chunker = CodeChunker(max_file_bytes=settings.max_file_bytes)

    pipeline = IndexingPipeline(
        fetcher=fetcher,
        chunker=chunker,
        embedder=embedder,
        vector_store=vector_store,
        file_filter=FileFilter(max_file_bytes=settings.max_file_bytes),
        fetch_retry=RetryPolicy(
            max_attempts=settings.fetch_max_attempts,
            base_delay=settings.fetch_backoff_base_seconds,
            max_delay=settings.fetch_backoff_max_seconds,
        ),
    )

    job_store = SqlJobStore(settings.jobs_database_url) if settings.jobs_database_url else InMemoryJobStore()
    manager = IndexingJobManager(
        pipeline=pipeline,
        repositories=catalog,
        job_store=job_store,
        stale_job_minutes=settings.stale_job_minutes,
    )
    retriever = Retriever(
        vector_store,
        embedder,
        default_k=settings.retrieval_top_k,
        default_min_score=settings.retrieval_min_score,
        hybrid=settings.retrieval_hybrid,
        rrf_k=settings.retrieval_rrf_k,
        candidate_pool=settings.retrieval_candidate_pool,
        reranker=reranker,
        rerank_min_score=settings.rerank_min_score,
    )

    logger.info("Repolens service initialized")
    return CodebaseService(manager, retriever, catalog, settings)
