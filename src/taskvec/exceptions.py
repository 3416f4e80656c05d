"""Custom exception hierarchy for taskvec.

Per-item generation failures are *values* (see
:class:`~taskvec.generation.GenerationError`), not exceptions.  The classes
below are raised for caller bugs and systemic failures that the immediate
caller must handle.
"""

from __future__ import annotations


class TaskVecError(Exception):
    """Base exception for all taskvec errors."""


class ValidationError(TaskVecError):
    """Raised when input is rejected before any queuing or storage write."""


class StorageUnavailableError(TaskVecError):
    """Raised on vector store failures (DB connection, write or read errors)."""


class QueryEmbeddingUnavailableError(TaskVecError):
    """Raised when the query text of a search could not be embedded.

    Attributes:
        kind: The :class:`~taskvec.generation.GenerationErrorKind` value
            reported by the generator (``"timeout"``, ``"rate_limited"``, ...).
    """

    def __init__(self, message: str, kind: str) -> None:
        super().__init__(message)
        self.kind = kind


class SearchTimeoutError(TaskVecError):
    """Raised when a search exceeds its deadline."""


class RecordNotFoundError(TaskVecError):
    """Raised when a record_id does not exist in the store."""


class InvalidTransitionError(TaskVecError):
    """Raised when a status transition is not allowed by the lifecycle."""


class SchedulerClosedError(TaskVecError):
    """Raised when work is submitted to a closed scheduler."""


# ------------------------------------------------------------------
# Provider-side errors (raised by EmbeddingProvider implementations)
# ------------------------------------------------------------------


class ProviderError(TaskVecError):
    """Raised by an embedding provider when the upstream call fails."""


class ProviderRateLimitedError(ProviderError):
    """Raised when the upstream service rejects a call for rate limiting."""


class ProviderTimeoutError(ProviderError):
    """Raised when the upstream service times out."""
