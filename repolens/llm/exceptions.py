"""Exceptions for embedding provider operations."""

from repolens.exceptions import (
    AuthenticationError,
    RateLimitError,
    RepolensError,
    TransientError,
    UpstreamTimeoutError,
)


class EmbeddingError(RepolensError):
    """Base exception for embedding operations."""
    pass


class EmbeddingRateLimitError(EmbeddingError, RateLimitError):
    """Provider throttled the request."""
    pass


class EmbeddingTimeoutError(EmbeddingError, UpstreamTimeoutError):
    """Provider did not answer in time."""
    pass


class EmbeddingServiceError(EmbeddingError, TransientError):
    """Provider-side failure that may clear up on retry."""
    pass


class EmbeddingAuthenticationError(EmbeddingError, AuthenticationError):
    """Credentials missing, expired or lacking model access."""
    pass


class EmbeddingValidationError(EmbeddingError):
    """Provider rejected the input, typically because it is too large."""
    pass
