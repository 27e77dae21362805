"""Error taxonomy shared by every NeuraNote component.

Each error carries a stable ``kind`` so callers can decide what to do
(retry, prompt a purchase, show a validation message) without parsing text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NETWORK = "network"
    PROVIDER = "provider"
    INSUFFICIENT_TOKENS = "insufficient_tokens"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    GEOCODE_UNRESOLVED = "geocode_unresolved"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    CANCELLED = "cancelled"


_RETRYABLE = {ErrorKind.NETWORK, ErrorKind.PROVIDER, ErrorKind.CONCURRENCY_CONFLICT}


class NeuraNoteError(Exception):
    """Base class for all NeuraNote errors."""

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE


class NetworkError(NeuraNoteError):
    """Provider unreachable, connection reset or timed out."""

    kind = ErrorKind.NETWORK


class ProviderError(NeuraNoteError):
    """Provider answered but refused: rate limit, bad credentials, malformed payload."""

    kind = ErrorKind.PROVIDER

    def __init__(self, message: str, *, status: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


class InsufficientTokensError(NeuraNoteError):
    kind = ErrorKind.INSUFFICIENT_TOKENS

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Not enough tokens. Required: {required}, Available: {available}")
        self.required = required
        self.available = available


class ValidationError(NeuraNoteError):
    kind = ErrorKind.VALIDATION


class NotFoundError(NeuraNoteError):
    kind = ErrorKind.NOT_FOUND


class GeocodeUnresolved(NeuraNoteError):
    """A place name could not be resolved. Never fatal to a pipeline run."""

    kind = ErrorKind.GEOCODE_UNRESOLVED


class ConcurrencyConflictError(NeuraNoteError):
    """A versioned write lost the race; re-read and retry."""

    kind = ErrorKind.CONCURRENCY_CONFLICT


class PipelineError(NeuraNoteError):
    """A summarization stage failed. ``kind`` mirrors the underlying cause."""

    def __init__(self, stage: str, cause: Exception) -> None:
        super().__init__(f"Summarization failed at stage '{stage}': {cause}")
        self.stage = stage
        self.cause = cause
        self.kind = cause.kind if isinstance(cause, NeuraNoteError) else ErrorKind.PROVIDER


class PipelineCancelled(NeuraNoteError):
    kind = ErrorKind.CANCELLED

    def __init__(self, stage: str) -> None:
        super().__init__(f"Summarization cancelled before stage '{stage}'")
        self.stage = stage
