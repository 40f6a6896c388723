"""Embedding provider clients."""

from .bedrock_client import BedrockEmbeddingProvider, BedrockRerankProvider
from .exceptions import (
    EmbeddingAuthenticationError,
    EmbeddingError,
    EmbeddingRateLimitError,
    EmbeddingServiceError,
    EmbeddingTimeoutError,
    EmbeddingValidationError,
)
from .provider import EmbeddingProvider, EmbeddingResult, RerankProvider, RerankResult, TokenUsage

__all__ = [
    "BedrockEmbeddingProvider",
    "BedrockRerankProvider",
    "EmbeddingAuthenticationError",
    "EmbeddingError",
    "EmbeddingRateLimitError",
    "EmbeddingServiceError",
    "EmbeddingTimeoutError",
    "EmbeddingValidationError",
    "EmbeddingProvider",
    "EmbeddingResult",
    "RerankProvider",
    "RerankResult",
    "TokenUsage",
]
