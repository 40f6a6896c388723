"""Embedding batching and vector storage."""

from .embedder import Embedder, estimate_tokens
from .store import VectorStore, VectorStoreError

__all__ = [
    "Embedder",
    "estimate_tokens",
    "VectorStore",
    "VectorStoreError",
]
