"""
Exception types raised by the ingestion pipeline.

Fatal errors abort the whole run. Everything else is contained to the
(product, store) pair that raised it and shows up in the final report.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for ingestion errors."""


class FatalIngestError(IngestError):
    """A failed precondition that stops the run before or during setup."""


class ConfigError(FatalIngestError):
    """Missing or invalid configuration."""


class AuthError(FatalIngestError):
    """The client-credentials token exchange failed."""


class DiscoveryError(FatalIngestError):
    """The catalog could not be listed, or listed no products."""


class TransientNetworkError(IngestError):
    """Timeouts, 5xx or 429 responses that outlasted every retry attempt."""


class ApiResponseError(IngestError):
    """A terminal non-OK HTTP response."""

    def __init__(self, message: str, status: int, path: str = ""):
        super().__init__(message)
        self.status = status
        self.path = path


class FetchFailure(IngestError):
    """The detail payload for a pair could not be fetched."""


class PersistenceError(IngestError):
    """A database error while writing a pair (the transaction was rolled back)."""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original


class IngestCancelled(IngestError):
    """Cancellation was requested while waiting on a retry or throttle."""
