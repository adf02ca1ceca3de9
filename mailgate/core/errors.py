from __future__ import annotations

from datetime import datetime
from typing import Any


class MailgateError(Exception):
    """Base error for mailgate."""

    code = "MAILGATE_ERROR"
    retryable = False

    def details(self) -> dict[str, Any]:
        return {}


class MessageValidationError(MailgateError):
    """A single message failed structural validation."""

    code = "MESSAGE_VALIDATION_ERROR"

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("; ".join(reasons) or "Invalid message")
        self.reasons = reasons

    def details(self) -> dict[str, Any]:
        return {"reasons": list(self.reasons)}


class IdempotencyConflictError(MailgateError):
    """Idempotency key reused with a materially different request."""

    code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str) -> None:
        super().__init__("Idempotency-Key already used with different payload")
        self.key = key

    def details(self) -> dict[str, Any]:
        return {"idempotency_key": self.key}


class IdempotencyInProgressError(MailgateError):
    """Original request for this key is still being admitted."""

    code = "IDEMPOTENCY_IN_PROGRESS"
    retryable = True

    def __init__(self, key: str) -> None:
        super().__init__("A request with this Idempotency-Key is still in progress")
        self.key = key

    def details(self) -> dict[str, Any]:
        return {"idempotency_key": self.key}


class ContentRejectedError(MailgateError):
    """Content gate rejected the message."""

    code = "CONTENT_REJECTED"

    def __init__(self, errors: list[str], warnings: list[str], score: int) -> None:
        super().__init__("Message content rejected")
        self.errors = errors
        self.warnings = warnings
        self.score = score

    def details(self) -> dict[str, Any]:
        return {"errors": list(self.errors), "warnings": list(self.warnings), "score": self.score}


class QuotaExceededError(MailgateError):
    """Tenant reached its daily send limit."""

    code = "DAILY_QUOTA_EXCEEDED"

    def __init__(self, *, current: int, limit: int, resets_at: datetime) -> None:
        super().__init__("Daily sending quota exceeded")
        self.current = current
        self.limit = limit
        self.resets_at = resets_at

    def details(self) -> dict[str, Any]:
        return {"current": self.current, "limit": self.limit, "resets_at": self.resets_at.isoformat()}


class TenantSuspendedError(MailgateError):
    """Tenant sending privileges are suspended."""

    code = "TENANT_SUSPENDED"

    def __init__(
        self,
        *,
        reason: str | None,
        current: int,
        limit: int,
        resets_at: datetime,
    ) -> None:
        super().__init__("Tenant is suspended")
        self.reason = reason
        self.current = current
        self.limit = limit
        self.resets_at = resets_at

    def details(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "current": self.current,
            "limit": self.limit,
            "resets_at": self.resets_at.isoformat(),
        }


class EnqueueFailureError(MailgateError):
    """Dispatch queue rejected the job; the send record was rolled back."""

    code = "QUEUE_UNAVAILABLE"
    retryable = True

    def __init__(self, message: str = "Unable to enqueue email for processing") -> None:
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"retryable": self.retryable}


class BatchEmptyError(MailgateError):
    """Batch contained no messages."""

    code = "BATCH_EMPTY"

    def __init__(self) -> None:
        super().__init__("Batch cannot be empty")


class BatchTooLargeError(MailgateError):
    """Batch exceeded the configured item cap."""

    code = "BATCH_TOO_LARGE"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Batch cannot exceed {limit} emails")
        self.size = size
        self.limit = limit

    def details(self) -> dict[str, Any]:
        return {"size": self.size, "limit": self.limit}


class BatchValidationFailedError(MailgateError):
    """All-or-nothing batch rejected during the upfront validation pass."""

    code = "BATCH_VALIDATION_FAILED"

    def __init__(self, reasons: list[str], *, truncated: bool = False) -> None:
        super().__init__("Batch validation failed")
        self.reasons = reasons
        self.truncated = truncated

    def details(self) -> dict[str, Any]:
        return {"reasons": list(self.reasons), "truncated": self.truncated}


class NotFoundError(MailgateError):
    """Requested record does not exist for this tenant."""

    code = "NOT_FOUND"


class TenantNotFoundError(NotFoundError):
    code = "TENANT_NOT_FOUND"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant {tenant_id} not found")
        self.tenant_id = tenant_id


class BatchNotFoundError(NotFoundError):
    code = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch with ID {batch_id} not found")
        self.batch_id = batch_id
