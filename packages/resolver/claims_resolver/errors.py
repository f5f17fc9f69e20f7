"""Error taxonomy for identifier resolution."""

from typing import Optional


class ResolverError(Exception):
    """Base class for resolution failures.

    ``provenance`` carries the JSON request description when the failure came
    from a registry call, so it can be stored next to the ``Error`` status.
    """

    def __init__(self, message: str, provenance: Optional[str] = None):
        super().__init__(message)
        self.provenance = provenance


class TransientError(ResolverError):
    """Network, timeout or retryable HTTP status. Retried in a later round."""

    def __init__(self, message: str, status: Optional[int] = None, provenance: Optional[str] = None):
        super().__init__(message, provenance=provenance)
        self.status = status


class PermanentError(ResolverError):
    """Non-retryable HTTP status or malformed payload."""

    def __init__(self, message: str, status: Optional[int] = None, provenance: Optional[str] = None):
        super().__init__(message, provenance=provenance)
        self.status = status


class NotFoundError(ResolverError):
    """The registry affirmatively has no record for the identifier."""


class ConfigurationError(ResolverError):
    """Unreadable or invalid local input."""


class CacheStorageError(ResolverError):
    """The resolution cache could not be read or written."""
