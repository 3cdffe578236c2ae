from __future__ import annotations

from typing import Any

from consentgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", "PROXY_NOT_RETRYABLE", "Only a failed proxy can be retried"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing authenticated subject"),
    403: _response(
        "Admission denied or forbidden",
        "PLAN_LIMIT_REACHED",
        "Plan limit reached for active proxies",
        {"used": 1, "limit": 1, "plan": "starter"},
    ),
    404: _response("Not found", "PROXY_NOT_FOUND", "No proxy exists for this domain"),
    409: _response(
        "Conflict",
        "PROXY_IN_PROGRESS",
        "Provisioning is already in progress for this domain",
        {"proxy_id": "3f0c2b8e-7f55-4a55-9d1b-0c1b9f0f6a11"},
    ),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _response(
        "Service unavailable",
        "BACKEND_NOT_CONFIGURED",
        "Provisioning backend credentials are not configured",
    ),
}
