"""
Failure taxonomy.

Every component raises one of these so the job processor can decide,
without inspecting messages, whether work is retried, deferred or failed.
"""

from typing import Optional


class GovernorError(Exception):
    """Base class for all governor errors."""


class TransientResourceError(GovernorError):
    """Network blip, timeout, connection refused. Safe to retry with backoff."""


class LockTimeoutError(TransientResourceError):
    """Could not obtain an exclusive lock within the wait budget."""


class QuotaExceededError(GovernorError):
    """Rate limit or quota reached. Reschedule at or after retry_after seconds."""

    def __init__(self, message: str, retry_after: Optional[float] = None, service: str = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.service = service


class TerminalAuthError(GovernorError):
    """Credential revoked or invalid grant. Needs human re-authorization."""


class ConfigurationError(GovernorError):
    """Missing or invalid settings. Fails fast at startup."""


class PoolExhaustedError(TransientResourceError):
    """Pool is full and nothing could be evicted."""


class CorruptCacheEntryError(GovernorError):
    """A cached payload could not be decoded. The entry has been deleted."""
