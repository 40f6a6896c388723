"""Query-time retrieval of relevant chunks."""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

from repolens.llm.provider import RerankProvider
from repolens.models import CodeChunk, RetrievedChunk
from repolens.observability.metrics import RETRIEVAL_LATENCY, MetricsCollector, get_metrics_collector
from repolens.rag.hybrid import DEFAULT_RRF_K, LexicalIndex, reciprocal_rank_fusion
from repolens.rag.reranker import rerank_chunks
from repolens.vector.embedder import Embedder
from repolens.vector.store import VectorStore

logger = logging.getLogger(__name__)


class Retriever:
    """Embed a query and rank a repository's chunks against it.

    Reads whatever snapshot the vector store currently publishes, so a query
    during re-indexing sees the previous completed index.

    In hybrid mode the vector ranking is fused with a BM25 ranking by
    reciprocal rank fusion. Fused scores are divided by the best possible
    fused score, so a chunk ranked first by both lists scores 1.0. With a
    reranker, the first-stage candidates are reordered by it before the
    top-k cut.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        default_k: int = 15,
        default_min_score: Optional[float] = None,
        hybrid: bool = False,
        rrf_k: int = DEFAULT_RRF_K,
        candidate_pool: int = 50,
        reranker: Optional[RerankProvider] = None,
        rerank_min_score: float = 0.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize retriever.

        Args:
            vector_store: Published chunk snapshots
            embedder: Turns query text into a vector
            default_k: Chunks returned when ``k`` is not given
            default_min_score: Similarity floor when ``min_score`` is not given
            hybrid: Fuse vector and BM25 rankings by default
            rrf_k: Reciprocal rank fusion constant
            candidate_pool: Candidates taken from each ranking before fusion or reranking
            reranker: Optional second-stage relevance scorer
            rerank_min_score: Drop reranked chunks scoring below this
            metrics: Metrics collector; the process-wide one by default
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.default_k = default_k
        self.default_min_score = default_min_score
        self.hybrid = hybrid
        self.rrf_k = rrf_k
        self.candidate_pool = candidate_pool
        self.reranker = reranker
        self.rerank_min_score = rerank_min_score
        self.metrics = metrics or get_metrics_collector()
        self._lexical: Dict[str, LexicalIndex] = {}

    async def retrieve(
        self,
        repository_id: str,
        query: Union[str, Sequence[float]],
        k: Optional[int] = None,
        min_score: Optional[float] = None,
        file_filter: Optional[str] = None,
        language_filter: Optional[str] = None,
        chunk_type_filter: Optional[str] = None,
        hybrid: Optional[bool] = None,
        rerank: Optional[bool] = None,
    ) -> List[RetrievedChunk]:
        """Top chunks for ``query``, best first.

        Args:
            repository_id: Repository to search
            query: Question text, or a precomputed query embedding
            k: Maximum number of chunks
            min_score: Drop vector matches scoring below this
            file_filter: Keep only paths containing this substring
            language_filter: Keep only this language
            chunk_type_filter: Keep only this chunk type
            hybrid: Fuse with BM25; the retriever's default when None
            rerank: Apply the reranker; on whenever one is configured when None

        Returns:
            Chunks ordered by descending score; empty when nothing is indexed

        Raises:
            ValueError: ``k`` is not positive, or hybrid search or reranking was
                requested without query text or without a reranker
        """
        if k is None:
            k = self.default_k
        if k <= 0:
            raise ValueError("k must be positive")
        min_score = self.default_min_score if min_score is None else min_score

        text = query if isinstance(query, str) else None
        hybrid, rerank = self._resolve_modes(text, hybrid, rerank)

        if not self.vector_store.has_chunks(repository_id):
            logger.info(f"No indexed chunks for {repository_id}")
            return []

        with self.metrics.time_operation(RETRIEVAL_LATENCY, labels={"mode": "hybrid" if hybrid else "vector"}):
            query_vector = await self.embedder.embed_query(text) if text is not None else list(query)

            def predicate(chunk: CodeChunk) -> bool:
                if file_filter and file_filter not in chunk.file_path:
                    return False
                if language_filter and chunk.language != language_filter:
                    return False
                if chunk_type_filter and chunk.chunk_type != chunk_type_filter:
                    return False
                return True

            pool = max(k, self.candidate_pool) if (hybrid or rerank) else k
            results = self.vector_store.search(repository_id, query_vector, pool, predicate=predicate)
            if min_score is not None:
                results = [r for r in results if r.score >= min_score]

            if hybrid:
                lexical = self._lexical_index(repository_id).search(text, pool, predicate=predicate)
                results = self._fuse(results, lexical)

            if rerank:
                results = await rerank_chunks(
                    text, results, self.reranker, top_k=k, min_score=self.rerank_min_score
                )

        results = results[:k]
        logger.info(f"Retrieved {len(results)} chunks for {repository_id}")
        return results

    def _resolve_modes(self, text: Optional[str], hybrid: Optional[bool], rerank: Optional[bool]) -> Tuple[bool, bool]:
        if rerank and self.reranker is None:
            raise ValueError("Reranking requested but no reranker is configured")
        if text is None and (hybrid or rerank):
            raise ValueError("Hybrid search and reranking need the query text")

        if hybrid is None:
            hybrid = self.hybrid and text is not None
        if rerank is None:
            rerank = self.reranker is not None and text is not None
        return hybrid, rerank

    def _lexical_index(self, repository_id: str) -> LexicalIndex:
        chunks = self.vector_store.get_chunks(repository_id)
        index = self._lexical.get(repository_id)
        # Snapshots are immutable, so list identity tells whether it was swapped
        if index is None or index.chunks is not chunks:
            index = LexicalIndex(chunks)
            self._lexical[repository_id] = index
            logger.debug(f"Built BM25 index over {len(chunks)} chunks of {repository_id}")
        return index

    def _fuse(
        self,
        vector_results: List[RetrievedChunk],
        lexical_results: List[Tuple[CodeChunk, float]],
    ) -> List[RetrievedChunk]:
        candidates = {r.id: r for r in vector_results}
        for chunk, _ in lexical_results:
            candidates.setdefault(chunk.id, RetrievedChunk.from_chunk(chunk, 0.0))

        fused = reciprocal_rank_fusion(
            [[r.id for r in vector_results], [chunk.id for chunk, _ in lexical_results]],
            k=self.rrf_k,
        )
        best_possible = 2.0 / (self.rrf_k + 1)
        ranked = [
            replace(candidates[chunk_id], score=min(1.0, score / best_possible))
            for chunk_id, score in fused.items()
        ]
        ranked.sort(key=lambda r: (-r.score, r.start_line, r.file_path))
        return ranked
