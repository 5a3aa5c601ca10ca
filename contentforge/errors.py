"""Error taxonomy shared by retrieval, generation, the pipeline and the API layer.

API boundaries translate these into JSON envelopes (see contentforge.main):
- 400: InvalidParameter
- 404: NotFound
- 500: everything else, including upstream failures
"""
from typing import Any, Optional


class ContentForgeError(Exception):
    """Base class for all application errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidParameter(ContentForgeError):
    """Bad caller input (out-of-range top-k, unknown task type, bad lineage)."""

    status_code = 400


class NotFound(ContentForgeError):
    """An expected task or configuration row is missing."""

    status_code = 404


class DimensionMismatch(ContentForgeError):
    """Vector length disagrees with the configured index dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")


class ProviderError(ContentForgeError):
    """Embedding or generation provider failed (timeout, quota, malformed response)."""


class EmptyGeneration(ContentForgeError):
    """Model returned empty or whitespace-only output."""


class ParseFailure(ContentForgeError):
    """Model output did not match the expected structured shape."""


class UpstreamHTTPError(ContentForgeError):
    """Publishing collaborator answered with a non-2xx status."""

    def __init__(self, status: int, body: str, reason: str = "") -> None:
        self.status = status
        self.body = body
        message = f"Blog platform request failed: {status} {reason}".rstrip()
        super().__init__(f"{message} - {body}" if body else message, details={"status": status, "body": body})


class ConfigurationError(ContentForgeError):
    """Required settings for an outbound collaborator are missing."""


class ClaimLost(ContentForgeError):
    """The task left 'in_progress' before this run could record its result."""
