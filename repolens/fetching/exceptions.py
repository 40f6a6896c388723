"""Exceptions for repository fetching."""

from repolens.exceptions import (
    AuthenticationError,
    RateLimitError,
    RepolensError,
    TransientError,
    UpstreamTimeoutError,
)


class FetchError(RepolensError):
    """Base exception for fetch operations."""
    pass


class TransientFetchError(FetchError, TransientError):
    """Server-side or network failure worth retrying."""
    pass


class FetchRateLimitError(FetchError, RateLimitError):
    """Hosting provider rate limit exceeded."""
    pass


class FetchTimeoutError(FetchError, UpstreamTimeoutError):
    """Hosting provider did not answer in time."""
    pass


class FetchAuthenticationError(FetchError, AuthenticationError):
    """Token missing, invalid or lacking access to the repository."""
    pass


class RepositoryNotFoundError(FetchError):
    """Repository, ref or path does not exist."""
    pass
