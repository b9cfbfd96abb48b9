"""Custom exception hierarchy for the Tahweel conversion pipeline.

These errors give each failure mode a distinct type so the controller can
decide whether a fault is page-local, file-local or fatal for the job, and so
logs can be structured consistently.
"""
from __future__ import annotations


class ValidationError(Exception):
    """Raised when user supplied input (paths, settings) is invalid."""


class OCRServiceError(Exception):
    """Raised when the remote OCR service fails permanently for a request."""


class AuthenticationError(Exception):
    """Raised when no valid Google credential is available for the job."""


class PageSplitError(Exception):
    """Raised when a document cannot be opened or one of its pages fails to render."""


class OutputWriteError(Exception):
    """Raised when writing TXT/DOCX/JSON output fails."""


class ProcessingCancelled(Exception):
    """Control signal raised at a cancellation checkpoint.

    Not a failure: callers must surface it separately from errors.
    """

    def __init__(self, message: str = "Processing cancelled") -> None:
        super().__init__(message)


__all__ = [
    "ValidationError",
    "OCRServiceError",
    "AuthenticationError",
    "PageSplitError",
    "OutputWriteError",
    "ProcessingCancelled",
]
