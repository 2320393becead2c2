"""
Shared error types for core services.
"""

from typing import Sequence


class ValidationIssue(ValueError):
    """Malformed input, rejected before any external call is made."""

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class ProviderUnavailable(RuntimeError):
    """Raised when an external collaborator failed after retries."""


class EmbeddingProviderError(ProviderUnavailable):
    """Raised when the embedding provider is unavailable."""


class CompletionProviderError(ProviderUnavailable):
    """Raised when the completion provider is unavailable."""


class VectorIndexError(ProviderUnavailable):
    """Raised when a vector index call fails."""


class RetrievalUnavailable(ProviderUnavailable):
    """Raised when no requested retrieval source could be queried."""

    def __init__(self, message: str, sources: Sequence[str] = ()):
        super().__init__(message)
        self.sources = tuple(sources)


class TrackingFailure(RuntimeError):
    """Raised when an operation record cannot be written. Never user-facing."""
