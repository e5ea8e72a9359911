"""Error taxonomy for GitHub API access.

Every error raised by ``GitHubFetcher`` is a ``GitHubApiError`` so callers
can catch the family while still branching on the specific kind:

- RateLimitError: recoverable by waiting; never consumes an attempt
- NotFoundError: terminal for the entity (deleted or private)
- TransientError: network failures and 5xx responses, retried with backoff
- PermanentError: malformed data or invalid identifiers, not retried
- CircuitOpenError: the breaker rejected the call without touching the network
"""

from typing import Optional


class GitHubApiError(Exception):
    """Base class for GitHub API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class RateLimitError(GitHubApiError):
    """The API budget is exhausted until ``reset_at`` (epoch seconds)."""

    def __init__(
        self,
        message: str,
        reset_at: Optional[float] = None,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
    ):
        super().__init__(message, status_code=status_code, url=url)
        self.reset_at = reset_at


class NotFoundError(GitHubApiError):
    """Resource does not exist or is not visible to the token."""


class TransientError(GitHubApiError):
    """Retryable failure (connection error, timeout, 5xx)."""


class PermanentError(GitHubApiError):
    """Non-retryable failure (bad request, auth failure, invalid payload)."""


class CircuitOpenError(GitHubApiError):
    """Call rejected because the circuit breaker is open."""
