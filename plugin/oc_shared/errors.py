from __future__ import annotations

from typing import Optional


class ExporterError(Exception):
    """Base class for errors raised inside the exporter."""


class SinkApiError(ExporterError):
    """A sink operation kept failing after the retry budget was spent."""

    def __init__(self, operation: str, attempts: int, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempts: {cause!r}")


class ConfigurationError(ExporterError):
    def __init__(self, message: str, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message)


class QueueClosedError(ExporterError):
    """Raised by ``take()`` once the queue is closed and drained."""
