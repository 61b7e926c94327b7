from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsportal.apps.api.response import error_response
from opsportal.core.errors import (
    AuthorizationError,
    ConflictError,
    DatabaseError,
    IntegrationError,
    NotFoundError,
    PortalError,
    QuotaExceededError,
    ValidationError,
    VaultConfigurationError,
)
from opsportal.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "INTEGRATION_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_PORTAL_STATUS: tuple[tuple[type[PortalError], int], ...] = (
    (ValidationError, 422),
    (QuotaExceededError, 402),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (IntegrationError, 502),
    (VaultConfigurationError, 503),
    (DatabaseError, 503),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for(exc: PortalError) -> int:
    for error_cls, status_code in _PORTAL_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def portal_exception_handler(request: Request, exc: PortalError) -> JSONResponse:
    # Domain errors carry their own code and structured details.
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("request_failed code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(exc.details) if exc.details else None,
    )
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface request-shape errors with structured details for UI parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    payload = error_response(request=request, code="TENANT_PREDICATE_REQUIRED", message=exc.message)
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
