"""Error taxonomy for the analysis pipeline.

Every stage raises a subclass of :class:`AnalysisError`. Callers can match on
the concrete class (or its ``kind``) to tell a bad image apart from a model
that is not ready or an internal inference failure.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    # Model lifecycle
    NOT_FOUND = "not_found"
    LOAD_FAILED = "load_failed"
    NOT_READY = "not_ready"
    # Decoding
    EMPTY_OR_UNREADABLE = "empty_or_unreadable"
    CORRUPT_FORMAT = "corrupt_format"
    # Inference
    SHAPE_MISMATCH = "shape_mismatch"
    EXECUTION_FAILED = "execution_failed"
    # Input validation and fetching
    INVALID_GEOMETRY = "invalid_geometry"
    FETCH_FAILED = "fetch_failed"


class AnalysisError(Exception):
    """Base error surfaced to callers, carrying a kind and a readable message."""

    allowed_kinds: frozenset[ErrorKind] = frozenset(ErrorKind)

    def __init__(self, kind: ErrorKind, message: str) -> None:
        if kind not in self.allowed_kinds:
            raise ValueError(f"{type(self).__name__} does not accept kind {kind!r}")
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class ModelError(AnalysisError):
    allowed_kinds = frozenset({ErrorKind.NOT_FOUND, ErrorKind.LOAD_FAILED, ErrorKind.NOT_READY})


class DecodeError(AnalysisError):
    allowed_kinds = frozenset({ErrorKind.EMPTY_OR_UNREADABLE, ErrorKind.CORRUPT_FORMAT})


class InferError(AnalysisError):
    allowed_kinds = frozenset({ErrorKind.SHAPE_MISMATCH, ErrorKind.EXECUTION_FAILED})

    def __init__(self, kind: ErrorKind, message: str, detail: str = "") -> None:
        super().__init__(kind, message)
        self.detail = detail


class ImageValidationError(AnalysisError):
    """Image decoded fine but does not look like a usable fundus photograph."""

    allowed_kinds = frozenset({ErrorKind.INVALID_GEOMETRY})


class FetchError(AnalysisError):
    allowed_kinds = frozenset({ErrorKind.FETCH_FAILED})
