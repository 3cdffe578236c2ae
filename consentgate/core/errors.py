from __future__ import annotations

from typing import Any


class ConsentGateError(Exception):
    """Base error for ConsentGate."""

    http_status = 400

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict[str, Any]:
        # Match the {"code", "message", ...} shape used by HTTPException details.
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(ConsentGateError):
    """Bad input, missing record, or unmet precondition; safe to surface verbatim."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        not_found: bool = False,
    ) -> None:
        super().__init__(code, message, details)
        self.http_status = 404 if not_found else 400


class AdmissionDenied(ConsentGateError):
    """Plan limit or domain/subscription precondition blocked a provisioning request."""

    http_status = 403


class ConflictError(ConsentGateError):
    """Another lifecycle operation is already in flight for the same proxy."""

    http_status = 409


class UnavailableError(ConsentGateError):
    """A dependency the request needs is not configured or not reachable."""

    http_status = 503


class BackendError(Exception):
    """Provisioning backend failure raised inside the creation driver."""


class BackendTransientError(BackendError):
    """Retryable backend failure (throttling, timeouts, 5xx)."""


class NotConfiguredError(BackendError):
    """Provisioning backend credentials are absent."""
