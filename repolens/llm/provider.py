"""Contracts between retrieval code and the embedding and reranking services."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Protocol


@dataclass
class EmbeddingResult:
    """Vectors for one provider call, in input order."""
    vectors: List[List[float]]
    total_tokens: int = 0


@dataclass
class TokenUsage:
    """Token consumption of one embedding call, for billing sinks."""
    operation: str
    model: str
    tokens: int
    texts: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EmbeddingProvider(Protocol):
    """Batch text to fixed-dimension vectors."""

    model_id: str
    dimension: int

    async def embed(self, texts: List[str], input_type: str = "document") -> EmbeddingResult:
        ...


@dataclass
class RerankResult:
    """Relevance of one input document; ``index`` points into the request."""
    index: int
    relevance_score: float


class RerankProvider(Protocol):
    """Score documents against a query."""

    model_id: str

    async def rerank(self, query: str, documents: List[str], top_k: int) -> List[RerankResult]:
        ...
