"""Exception hierarchy shared by every stage of the pipeline."""

from __future__ import annotations

from typing import Any


class AicutError(Exception):
    """Base class for all aicut errors."""


class ConfigurationError(AicutError):
    """Raised when credentials or required settings are missing."""


class TransportError(AicutError):
    """Raised on network failure or a non-2xx response from an external service."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class GenerationError(TransportError):
    """Raised when a generation endpoint (image, video, speech) rejects a request."""


class ParseError(AicutError):
    """Raised when no extraction strategy yields valid JSON."""

    def __init__(self, message: str, text: str = ""):
        self.text = text
        super().__init__(message)


class JobFailedError(AicutError):
    """Raised when a generation job reports terminal failure."""

    def __init__(self, message: str, task_id: str | None = None):
        self.task_id = task_id
        super().__init__(message)


class JobTimeoutError(AicutError):
    """Raised when a job does not reach a terminal state within the poll cap."""

    def __init__(self, message: str, task_id: str | None = None, attempts: int = 0):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(message)


class ExportError(AicutError):
    """Raised when the export compositor cannot produce a file."""
