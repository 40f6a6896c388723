"""Lexical ranking and reciprocal rank fusion for hybrid retrieval."""

import re
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from rank_bm25 import BM25Okapi

from repolens.models import CodeChunk

DEFAULT_RRF_K = 60

_WORD = re.compile(r"[A-Za-z0-9_]+")
_CAMEL_PART = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")


def tokenize(text: str) -> List[str]:
    """Lowercased identifier tokens for BM25.

    Compound identifiers are kept whole and also split into their parts, so
    ``getUserName`` and ``get_user_name`` both match a query for ``user``.
    """
    tokens = []
    for word in _WORD.findall(text):
        tokens.append(word.lower())
        parts = [part.lower() for piece in word.split('_') for part in _CAMEL_PART.findall(piece)]
        if len(parts) > 1:
            tokens.extend(parts)
    return tokens


def chunk_document(chunk: CodeChunk) -> str:
    """Text indexed lexically for a chunk: path, symbol and source."""
    return "\n".join(part for part in (chunk.file_path, chunk.symbol_name, chunk.content) if part)


class LexicalIndex:
    """BM25 (Okapi) over one immutable chunk list."""

    def __init__(self, chunks: Sequence[CodeChunk]):
        self.chunks = chunks
        corpus = [tokenize(chunk_document(chunk)) for chunk in chunks]
        # BM25Okapi divides by the average document length
        self._bm25 = BM25Okapi(corpus) if any(corpus) else None

    def search(
        self,
        query: str,
        k: int,
        predicate: Optional[Callable[[CodeChunk], bool]] = None,
    ) -> List[Tuple[CodeChunk, float]]:
        """Chunks with a positive BM25 score for ``query``, best first."""
        tokens = tokenize(query)
        if self._bm25 is None or not tokens:
            return []

        scores = self._bm25.get_scores(tokens)
        ranked = [
            (position, float(score))
            for position, score in enumerate(scores)
            if score > 0 and (predicate is None or predicate(self.chunks[position]))
        ]
        ranked.sort(key=lambda item: (-item[1], item[0]))
        return [(self.chunks[position], score) for position, score in ranked[:k]]


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[Hashable]],
    k: int = DEFAULT_RRF_K,
) -> Dict[Hashable, float]:
    """Fuse ranked key lists: each key scores ``sum(1 / (k + rank))``.

    Ranks start at 1. A key missing from a ranking contributes nothing for it.
    """
    if k < 0:
        raise ValueError("RRF constant must not be negative")

    fused: Dict[Hashable, float] = {}
    for ranking in rankings:
        for rank, key in enumerate(ranking, start=1):
            fused[key] = fused.get(key, 0.0) + 1.0 / (k + rank)
    return fused
