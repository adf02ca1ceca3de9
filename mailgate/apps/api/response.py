from __future__ import annotations

from datetime import datetime
import math
from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from mailgate.core.clock import utc_now
from mailgate.core.errors import MailgateError, QuotaExceededError


API_VERSION = "v1"


class ResponseMeta(BaseModel):
    # Echo the caller's request id so retried sends can be correlated with the original.
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    # Only admission errors carry this; clients resend with the same Idempotency-Key when true.
    retryable: bool | None = None
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    retryable: bool | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, retryable=retryable, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}


def admission_error_response(*, request: Request, exc: MailgateError) -> dict[str, Any]:
    return error_response(
        request=request,
        code=exc.code,
        message=str(exc),
        details=exc.details() or None,
        retryable=exc.retryable,
    )


def retry_after_headers(exc: MailgateError, *, now: datetime | None = None) -> dict[str, str]:
    """Retry-After for admission errors a client may resend.

    Quota denials wait for the next UTC midnight; transient failures
    (queue unavailable, original still in flight) retry after a second.
    """
    if isinstance(exc, QuotaExceededError):
        seconds = math.ceil((exc.resets_at - (now or utc_now())).total_seconds())
        return {"Retry-After": str(max(0, seconds))}
    if exc.retryable:
        return {"Retry-After": "1"}
    return {}
