from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.response import error_response
from tenantguard.core.errors import (
    AuthenticationError,
    Forbidden,
    InvalidOperation,
    NotFound,
    TenantGuardError,
    TenantScopeError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "INVALID_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    500: "INTERNAL_ERROR",
}

# One fixed shape per class; clients cannot tell denial causes apart.
_PUBLIC_ERRORS: tuple[tuple[type[TenantGuardError], int, str], ...] = (
    (AuthenticationError, 401, "Authentication required"),
    (Forbidden, 403, "Access denied"),
    (NotFound, 404, "Resource not found"),
)
_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def _envelope(
    request: Request,
    status_code: int,
    message: str,
    *,
    code: str | None = None,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(
        request=request,
        code=code or _STATUS_CODES.get(status_code, "UNKNOWN_ERROR"),
        message=message,
        details=details,
    )
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Router-level errors (unknown path, wrong method) still use the envelope.
    detail = exc.detail
    if isinstance(detail, dict):
        return _envelope(
            request,
            exc.status_code,
            str(detail.get("message") or "Request failed"),
            code=detail.get("code"),
            headers=exc.headers,
        )
    message = detail if isinstance(detail, str) else "Request failed"
    return _envelope(request, exc.status_code, message, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        details={"errors": exc.errors()},
    )


async def tenantguard_exception_handler(request: Request, exc: TenantGuardError) -> JSONResponse:
    for error_type, status_code, message in _PUBLIC_ERRORS:
        if isinstance(exc, error_type):
            headers = _CHALLENGE if status_code == 401 else None
            return _envelope(request, status_code, message, headers=headers)
    if isinstance(exc, InvalidOperation):
        return _envelope(request, 400, str(exc) or "Invalid request")
    if isinstance(exc, TenantScopeError):
        logger.error("tenant_scope_violation path=%s", request.url.path, exc_info=exc)
    else:
        logger.error("tenantguard_error path=%s kind=%s", request.url.path, type(exc).__name__, exc_info=exc)
    return _envelope(request, 500, "Internal server error")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "Internal server error")
