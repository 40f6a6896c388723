"""Repository fetchers."""

from .base import RepositoryFetcher, RepositoryFile, RepositorySnapshot
from .exceptions import (
    FetchAuthenticationError,
    FetchError,
    FetchRateLimitError,
    FetchTimeoutError,
    RepositoryNotFoundError,
    TransientFetchError,
)
from .github import GitHubFetcher
from .local import LocalDirectoryFetcher
from .routing import RoutingFetcher

__all__ = [
    "RepositoryFetcher",
    "RepositoryFile",
    "RepositorySnapshot",
    "FetchAuthenticationError",
    "FetchError",
    "FetchRateLimitError",
    "FetchTimeoutError",
    "RepositoryNotFoundError",
    "TransientFetchError",
    "GitHubFetcher",
    "LocalDirectoryFetcher",
    "RoutingFetcher",
]
