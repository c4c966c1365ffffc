"""
Exception hierarchy for the ingestion pipeline.

The error classifier maps these (and httpx's own exceptions) onto the
closed category/severity taxonomy; see `feed_ingest.recovery.classifier`.
"""

from __future__ import annotations


class IngestError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(IngestError):
    """Invalid or missing configuration (unknown source, bad settings)."""


class ResourceExhaustedError(IngestError):
    """Local resources (memory, file handles, disk) ran out."""


class FetchStatusError(IngestError):
    """A fetch completed with a non-success HTTP status."""

    def __init__(self, url: str, status_code: int, message: str | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code} for {url}")


class ContentParseError(IngestError):
    """A response body could not be decoded or parsed."""


class ContentValidationError(IngestError):
    """A candidate or its content failed validation (e.g. an unfetchable URL)."""

    def __init__(self, message: str, reason: str = "validation"):
        self.reason = reason
        super().__init__(message)


class JobNotFoundError(IngestError, KeyError):
    """No job with the requested id exists."""


class InvalidTransitionError(IngestError):
    """A job status change would move backwards or leave a terminal state."""
