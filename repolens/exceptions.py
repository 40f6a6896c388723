"""Error taxonomy shared by every Repolens component."""

from typing import Optional


class RepolensError(Exception):
    """Base exception for Repolens."""
    pass


class TransientError(RepolensError):
    """Upstream failure that may succeed when retried."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitError(TransientError):
    """Upstream signalled that we are sending too many requests."""
    pass


class UpstreamTimeoutError(TransientError):
    """Upstream did not answer within the configured timeout."""
    pass


class AuthenticationError(RepolensError):
    """Credentials were rejected or lack permission. Never retried."""
    pass


class StorageError(RepolensError):
    """Persisting or reading indexed data failed."""
    pass
