#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class StorageError(Exception):
    """Raised when the record store cannot complete an operation."""


class QuotaStorageError(StorageError):
    """Raised when the daily quota document cannot be read or written.

    Callers must treat this as "deny": the tracker never guesses zero usage.
    """


class FeedFetchError(Exception):
    """Raised when a single feed cannot be downloaded."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class FeedTimeoutError(FeedFetchError):
    """Raised when a feed download exceeds its time budget."""


class ContentFilterError(Exception):
    """Raised when the text-generation provider blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by provider", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class CommentaryError(Exception):
    """Raised when no usable commentary came back for a record."""


class PipelineBusyError(Exception):
    """Raised when a pipeline run is requested while another is in progress."""

    def __init__(self, message: str = "Pipeline already running", started_at: Optional[str] = None):
        super().__init__(message)
        self.started_at = started_at


__all__ = [
    "StorageError",
    "QuotaStorageError",
    "FeedFetchError",
    "FeedTimeoutError",
    "ContentFilterError",
    "CommentaryError",
    "PipelineBusyError",
]
