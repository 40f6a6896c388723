"""Second-stage reranking of retrieved chunks."""

import logging
from dataclasses import replace
from typing import List, Sequence

from repolens.exceptions import RepolensError
from repolens.llm.provider import RerankProvider
from repolens.models import RetrievedChunk

logger = logging.getLogger(__name__)

# At or below this many chunks the first-stage order is kept
MIN_CHUNKS_TO_RERANK = 3


def rerank_document(chunk: RetrievedChunk) -> str:
    """Chunk text sent to the reranker, prefixed with its symbol and location."""
    header = f"{chunk.chunk_type}: {chunk.symbol_name}\n" if chunk.symbol_name else ""
    return f"{header}File: {chunk.location}\n\n{chunk.content}"


async def rerank_chunks(
    query: str,
    chunks: Sequence[RetrievedChunk],
    reranker: RerankProvider,
    top_k: int = 15,
    min_score: float = 0.0,
) -> List[RetrievedChunk]:
    """Reorder ``chunks`` by the reranker's relevance to ``query``.

    Reranked chunks carry the reranker's score, clamped to [0, 1]. When the
    reranker fails the first-stage order is returned, cut to ``top_k``.

    Args:
        query: Question text
        chunks: First-stage results, best first
        reranker: Relevance scoring service
        top_k: Maximum chunks returned
        min_score: Drop reranked chunks scoring below this

    Returns:
        Up to ``top_k`` chunks, best first
    """
    if top_k <= 0:
        raise ValueError("top_k must be positive")
    if len(chunks) <= MIN_CHUNKS_TO_RERANK:
        return list(chunks[:top_k])

    documents = [rerank_document(chunk) for chunk in chunks]
    try:
        results = await reranker.rerank(query, documents, top_k=min(top_k, len(chunks)))
    except RepolensError as e:
        logger.warning(f"Reranking failed, keeping retrieval order: {e}")
        return list(chunks[:top_k])

    reranked = []
    for result in sorted(results, key=lambda r: -r.relevance_score):
        if result.relevance_score < min_score or not 0 <= result.index < len(chunks):
            continue
        score = min(1.0, max(0.0, result.relevance_score))
        reranked.append(replace(chunks[result.index], score=score))

    logger.debug(f"Reranked {len(chunks)} chunks down to {len(reranked[:top_k])}")
    return reranked[:top_k]
