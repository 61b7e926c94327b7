from __future__ import annotations

from typing import Any

from opsportal.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="BAD_REQUEST", message="Bad request"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing X-User-Id header"),
    402: _response(
        "Quota exceeded",
        code="QUOTA_EXCEEDED",
        message="Usage limit reached for this service",
        details={"service_id": "svc_example", "limit": 1000, "consumed": 1000, "reset_period": "monthly"},
    ),
    403: _response("Forbidden", code="FORBIDDEN", message="Caller lacks the required role"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response("Conflict", code="INVALID_STATE", message="Workflow instance is already active"),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message="Configuration validation failed",
        details={"fields": {"api_key": "API key must be at least 10 characters"}},
    ),
    502: _response(
        "Automation engine failure",
        code="INTEGRATION_ERROR",
        message="Automation engine did not respond within 15000 ms",
        details={"instance_id": "wf_example"},
    ),
    503: _response("Service unavailable", code="DATABASE_ERROR", message="Entitlement store unavailable"),
}
