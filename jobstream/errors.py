"""Error taxonomy shared by the extraction client, pipelines, store and workflows.

Every error carries a ``kind`` so callers can tell a transient failure
("try again later") from a deterministic one ("bad input") without parsing
messages.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """All failure kinds known to the system."""
    # Extraction
    TIMEOUT = "timeout"
    INVALID_SCHEMA = "invalid_schema"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    RATE_LIMITED = "rate_limited"
    # Resolution
    AMBIGUOUS_MATCH = "ambiguous_match"
    # Store
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"
    # Workflow
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    SINGLE_FLIGHT_REJECTED = "single_flight_rejected"
    # Documents
    UNSUPPORTED_DOCUMENT = "unsupported_document"
    EMPTY_DOCUMENT = "empty_document"
    DOCUMENT_TOO_LARGE = "document_too_large"


class Classification(str, Enum):
    """What a caller should do about a failure."""
    BAD_INPUT = "bad_input"
    TRY_AGAIN_LATER = "try_again_later"


RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.UPSTREAM_UNAVAILABLE,
    ErrorKind.RATE_LIMITED,
    ErrorKind.UNAVAILABLE,
})


class PipelineError(Exception):
    """Base class for every failure raised by jobstream components."""

    allowed_kinds: frozenset[ErrorKind] = frozenset(ErrorKind)

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        if kind not in self.allowed_kinds:
            raise ValueError(f"{type(self).__name__} does not accept kind {kind.value!r}")
        self.kind = kind
        self.message = message or kind.value
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def classification(self) -> Classification:
        if self.retryable or self.kind == ErrorKind.SINGLE_FLIGHT_REJECTED:
            return Classification.TRY_AGAIN_LATER
        return Classification.BAD_INPUT

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "kind": self.kind.value,
            "classification": self.classification.value,
            "detail": self.message,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value!r}, {self.message!r})"


class ExtractionError(PipelineError):
    """Raised by the extraction client."""
    allowed_kinds = frozenset({
        ErrorKind.TIMEOUT,
        ErrorKind.INVALID_SCHEMA,
        ErrorKind.UPSTREAM_UNAVAILABLE,
        ErrorKind.RATE_LIMITED,
    })


class FetchError(PipelineError):
    """Raised when a posting page cannot be downloaded."""
    allowed_kinds = frozenset({
        ErrorKind.NOT_FOUND,
        ErrorKind.TIMEOUT,
        ErrorKind.UPSTREAM_UNAVAILABLE,
        ErrorKind.RATE_LIMITED,
    })


class ResolutionError(PipelineError):
    """Raised inside the resolver; always handled there by falling back."""
    allowed_kinds = frozenset({ErrorKind.AMBIGUOUS_MATCH})

    def __init__(self, kind: ErrorKind, message: str = "", candidates: list[Any] | None = None) -> None:
        super().__init__(kind, message)
        self.candidates = list(candidates or [])


class StoreError(PipelineError):
    """Raised by record and object store adapters."""
    allowed_kinds = frozenset({
        ErrorKind.CONFLICT,
        ErrorKind.UNAVAILABLE,
        ErrorKind.NOT_FOUND,
    })


class DocumentError(PipelineError):
    """Raised when a raw document cannot be turned into text."""
    allowed_kinds = frozenset({
        ErrorKind.UNSUPPORTED_DOCUMENT,
        ErrorKind.EMPTY_DOCUMENT,
        ErrorKind.DOCUMENT_TOO_LARGE,
    })


@dataclass
class ItemFailure:
    """One failed item inside a batch workflow run."""
    item: str
    kind: ErrorKind | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
        }


class WorkflowError(PipelineError):
    """Raised (or attached to summaries) by the workflow engine."""
    allowed_kinds = frozenset({
        ErrorKind.PARTIAL_BATCH_FAILURE,
        ErrorKind.SINGLE_FLIGHT_REJECTED,
    })

    def __init__(self, kind: ErrorKind, message: str = "", failures: list[ItemFailure] | None = None) -> None:
        super().__init__(kind, message)
        self.failures: list[ItemFailure] = list(failures or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.failures:
            data["failures"] = [f.to_dict() for f in self.failures]
        return data


def partial_batch_failure(failures: list[ItemFailure]) -> WorkflowError:
    return WorkflowError(
        ErrorKind.PARTIAL_BATCH_FAILURE,
        f"{len(failures)} item(s) failed",
        failures=failures,
    )


__all__ = [
    "Classification",
    "DocumentError",
    "ErrorKind",
    "ExtractionError",
    "FetchError",
    "ItemFailure",
    "PipelineError",
    "ResolutionError",
    "StoreError",
    "WorkflowError",
    "partial_batch_failure",
]
