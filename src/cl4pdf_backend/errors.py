"""
Error taxonomy for the PDF job service.

Each error carries the HTTP status it maps to, a short user-facing
``error`` string and a ``details`` dict that is merged into the JSON
response body by the exception handler in ``main``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PdfServiceError(Exception):
    status_code: int = 500

    def __init__(self, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(error)
        self.error = error
        self.details: Dict[str, Any] = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.error, **self.details}


class ValidationError(PdfServiceError):
    """Bad request shape. Raised before any durable write."""

    status_code = 400


class AuthenticationError(PdfServiceError):
    status_code = 401


class AccountDisabledError(PdfServiceError):
    status_code = 403


class QuotaExceeded(PdfServiceError):
    """Usage gate denial; ``reason`` is usage_limit_exceeded or daily_limit_exceeded."""

    status_code = 429

    USAGE_LIMIT = "usage_limit_exceeded"
    DAILY_LIMIT = "daily_limit_exceeded"

    def __init__(self, reason: str, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(error, {"reason": reason, **(details or {})})
        self.reason = reason


class LedgerWriteError(PdfServiceError):
    """The job ledger rejected a write."""

    status_code = 500


class ProcessingError(PdfServiceError):
    """A document could not be decoded or transformed."""

    status_code = 500


class StorageError(ProcessingError):
    """An artifact upload failed."""
