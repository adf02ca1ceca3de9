from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from mailgate.core.errors import MessageValidationError


MAX_EMAIL_LENGTH = 254
MAX_SUBJECT_LENGTH = 150
MAX_HTML_BYTES = 1_048_576
MAX_CC_COUNT = 5
MAX_BCC_COUNT = 5
MAX_TAGS_COUNT = 5
MAX_TAG_LENGTH = 32
MAX_HEADERS_COUNT = 10
MAX_HEADER_KEY_LENGTH = 64
MAX_HEADER_VALUE_LENGTH = 256
MAX_EXTERNAL_ID_LENGTH = 64
MAX_IDEMPOTENCY_KEY_LENGTH = 128
MAX_NAME_LENGTH = 120
MAX_LEGAL_NAME_LENGTH = 150

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_TOKEN_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_CUSTOM_HEADER_RE = re.compile(r"^(X-Custom-[a-zA-Z0-9-]+|X-Priority)$")


def _normalize_address(value: str) -> str:
    cleaned = value.strip().lower()
    if len(cleaned) > MAX_EMAIL_LENGTH:
        raise ValueError(f"Email must not exceed {MAX_EMAIL_LENGTH} characters")
    if not _EMAIL_RE.match(cleaned):
        raise ValueError("Invalid email format")
    return cleaned


def _check_token(value: str, *, label: str, max_length: int) -> str:
    cleaned = value.strip()
    if not cleaned or len(cleaned) > max_length:
        raise ValueError(f"{label} must have 1 to {max_length} characters")
    if not _TOKEN_RE.match(cleaned):
        raise ValueError(f"{label} must contain only alphanumeric, hyphens, and underscores")
    return cleaned


class RecipientInfo(BaseModel):
    external_id: str | None = None
    email: str | None = None
    name: str | None = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    legal_name: str | None = Field(default=None, min_length=1, max_length=MAX_LEGAL_NAME_LENGTH)

    model_config = {"extra": "forbid"}

    @field_validator("external_id")
    @classmethod
    def _external_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_token(value, label="External ID", max_length=MAX_EXTERNAL_ID_LENGTH)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str | None) -> str | None:
        return _normalize_address(value) if value is not None else None


class EmailMessage(BaseModel):
    to: str
    cc: list[str] = Field(default_factory=list, max_length=MAX_CC_COUNT)
    bcc: list[str] = Field(default_factory=list, max_length=MAX_BCC_COUNT)
    subject: str = Field(min_length=1, max_length=MAX_SUBJECT_LENGTH)
    html: str = Field(min_length=1)
    reply_to: str | None = None
    headers: dict[str, str] | None = None
    tags: list[str] = Field(default_factory=list, max_length=MAX_TAGS_COUNT)
    external_id: str | None = None
    recipient: RecipientInfo | None = None

    # Reject unknown fields so tenant_id cannot be supplied in the payload.
    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "to": "customer@example.com",
                    "subject": "Your invoice is ready",
                    "html": "<p>Hello, your invoice for March is attached.</p>",
                    "tags": ["billing"],
                }
            ]
        },
    }

    @field_validator("to", "reply_to")
    @classmethod
    def _address(cls, value: str | None) -> str | None:
        return _normalize_address(value) if value is not None else None

    @field_validator("cc", "bcc")
    @classmethod
    def _address_list(cls, values: list[str]) -> list[str]:
        return [_normalize_address(value) for value in values]

    @field_validator("subject")
    @classmethod
    def _subject(cls, value: str) -> str:
        if "\n" in value or "\r" in value:
            raise ValueError("Subject must not contain line breaks")
        return value.strip()

    @field_validator("html")
    @classmethod
    def _html(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_HTML_BYTES:
            raise ValueError(f"HTML content size must not exceed {MAX_HTML_BYTES} bytes")
        return value

    @field_validator("headers")
    @classmethod
    def _headers(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        if value is None:
            return None
        if len(value) > MAX_HEADERS_COUNT:
            raise ValueError(f"Maximum of {MAX_HEADERS_COUNT} custom headers allowed")
        for key, header_value in value.items():
            if len(key) > MAX_HEADER_KEY_LENGTH or not _CUSTOM_HEADER_RE.match(key):
                raise ValueError("Header must be X-Custom-* or X-Priority")
            if len(header_value) > MAX_HEADER_VALUE_LENGTH:
                raise ValueError(f"Header value must not exceed {MAX_HEADER_VALUE_LENGTH} characters")
        return value

    @field_validator("tags")
    @classmethod
    def _tags(cls, values: list[str]) -> list[str]:
        return [_check_token(value, label="Tag", max_length=MAX_TAG_LENGTH) for value in values]

    @field_validator("external_id")
    @classmethod
    def _external_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_token(value, label="External ID", max_length=MAX_EXTERNAL_ID_LENGTH)

    @model_validator(mode="after")
    def _recipient_matches_to(self) -> "EmailMessage":
        if self.recipient and self.recipient.email and self.recipient.email != self.to:
            raise ValueError("recipient.email must match 'to' field")
        return self


def validate_idempotency_key(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise MessageValidationError(["Idempotency-Key is empty"])
    if len(cleaned) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise MessageValidationError(
            [f"Idempotency-Key must not exceed {MAX_IDEMPOTENCY_KEY_LENGTH} characters"]
        )
    if not _TOKEN_RE.match(cleaned):
        raise MessageValidationError(
            ["Idempotency-Key must contain only alphanumeric, hyphens, and underscores"]
        )
    return cleaned


def format_validation_errors(exc: ValidationError) -> list[str]:
    # Flatten pydantic errors into "field: message" strings for clients.
    reasons: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = str(error.get("msg", "invalid value"))
        reasons.append(f"{location}: {message}" if location else message)
    return reasons


def parse_message(raw: EmailMessage | dict[str, Any]) -> EmailMessage:
    # Structural validation with no side effects; shared by single and batch intake.
    if isinstance(raw, EmailMessage):
        return raw
    if not isinstance(raw, dict):
        raise MessageValidationError(["Message must be an object"])
    try:
        return EmailMessage.model_validate(raw)
    except ValidationError as exc:
        raise MessageValidationError(format_validation_errors(exc)) from exc
