"""
Custom exceptions for the record exporter.

Backend failures are classified here before they reach the driver, so the
driver decides retry vs skip vs halt without looking at transport details.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx


class ExporterError(Exception):
    """Base error for the exporter."""

    pass


class ConfigurationError(ExporterError):
    """Fatal setup errors (e.g. template creation refused). Stops the exporter."""

    pass


class UnsupportedRecordType(ExporterError):
    """Record or value type outside the recognized enumeration."""

    def __init__(self, value: Any):
        super().__init__(f"Unsupported record type: {value!r}")
        self.value = value


class BackendError(ExporterError):
    """Backend answered with status >= 400 (or an unusable response)."""

    def __init__(self, message: str, status: Optional[int] = None, reason: str = ""):
        super().__init__(message)
        self.status = status
        self.reason = reason

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status}, reason={self.reason})"


class TransientBackendError(BackendError):
    """Server/connection errors that should be retried with backoff."""

    pass


class RejectedRecordError(ExporterError):
    """A single document was refused by the backend (non-retryable)."""

    def __init__(self, operation: Any, status: Optional[int] = None, reason: str = ""):
        super().__init__(
            f"Record {getattr(operation, 'document_id', operation)} rejected: {reason}"
        )
        self.operation = operation
        self.status = status
        self.reason = reason


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def map_http_error(e: Any, message: str = "Backend request failed") -> BackendError:
    """Classify an httpx exception or an error response into a BackendError."""
    if isinstance(e, BackendError):
        return e
    if isinstance(e, (httpx.TimeoutException, httpx.TransportError)):
        return TransientBackendError(f"{message}: {type(e).__name__}: {e}")
    if isinstance(e, httpx.Response):
        reason = e.reason_phrase or ""
        try:
            body = e.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            err = body["error"]
            reason = err.get("reason", reason) if isinstance(err, dict) else str(err)
        cls = TransientBackendError if is_retryable_status(e.status_code) else BackendError
        return cls(message, status=e.status_code, reason=reason)
    return BackendError(f"{message}: {e}")
