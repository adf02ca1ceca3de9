from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mailgate.apps.api.response import admission_error_response, error_response, retry_after_headers
from mailgate.core.errors import (
    BatchEmptyError,
    BatchTooLargeError,
    BatchValidationFailedError,
    ContentRejectedError,
    EnqueueFailureError,
    IdempotencyConflictError,
    IdempotencyInProgressError,
    MailgateError,
    MessageValidationError,
    NotFoundError,
    QuotaExceededError,
    TenantSuspendedError,
)
from mailgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered most specific first; NotFoundError covers its tenant/batch subclasses.
_STATUS_BY_ERROR: tuple[tuple[type[MailgateError], int], ...] = (
    (IdempotencyConflictError, 409),
    (IdempotencyInProgressError, 409),
    (ContentRejectedError, 422),
    (QuotaExceededError, 429),
    (TenantSuspendedError, 403),
    (EnqueueFailureError, 503),
    (MessageValidationError, 400),
    (BatchEmptyError, 400),
    (BatchTooLargeError, 400),
    (BatchValidationFailedError, 400),
    (NotFoundError, 404),
)


def status_for_error(exc: MailgateError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


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


async def mailgate_exception_handler(request: Request, exc: MailgateError) -> JSONResponse:
    status_code = status_for_error(exc)
    payload = admission_error_response(request=request, exc=exc)
    headers = retry_after_headers(exc)
    return JSONResponse(content=payload, status_code=status_code, headers=headers or None)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure Starlette-raised exceptions (e.g. unknown routes) are wrapped consistently.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # Missing tenant scope is a server bug, never a client error.
    logger.error("tenant_predicate_missing path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="TENANT_SCOPE_MISSING", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
