from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any, Protocol

from mailgate.core.config import get_settings
from mailgate.domain.state import GateDecision
from mailgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SPAM_PHRASES = (
    "click here",
    "buy now",
    "limited time",
    "free money",
    "viagra",
    "casino",
    "lottery",
    "nigerian prince",
    "urgent action",
    "congratulations",
    "you have won",
    "claim now",
    "act now",
    "free trial",
    "risk free",
    "guarantee",
    "no obligation",
    "while supplies last",
    "order now",
    "double your income",
)

DISPOSABLE_DOMAINS = frozenset(
    {
        "temp-mail.com",
        "guerrillamail.com",
        "10minutemail.com",
        "mailinator.com",
        "throwaway.email",
        "tempmail.com",
        "yopmail.com",
        "maildrop.cc",
        "trashmail.com",
        "getnada.com",
    }
)

URL_SHORTENERS = (
    "bit.ly",
    "tinyurl.com",
    "goo.gl",
    "t.co",
    "ow.ly",
    "is.gd",
    "buff.ly",
    "adf.ly",
)

FORBIDDEN_TAGS = ("script", "iframe", "object", "embed", "form")

DISPOSABLE_PENALTY = 50
FORBIDDEN_MARKUP_PENALTY = 50
SPAM_PHRASE_PENALTY = 5
SUSPICIOUS_LINK_PENALTY = 10
LOW_TEXT_RATIO_PENALTY = 15
MIN_TEXT_RATIO = 0.1

_LINK_RE = re.compile(r"""(?:href|src)=["']([^"']+)["']""", re.IGNORECASE)
_IP_LINK_RE = re.compile(r"https?://\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}")
_TAG_RE = re.compile(r"<[^>]*>")
_FORBIDDEN_RES = tuple((tag, re.compile(rf"<{tag}[\s>]", re.IGNORECASE)) for tag in FORBIDDEN_TAGS)


class ScorableMessage(Protocol):
    to: str
    subject: str
    html: str


@dataclass(frozen=True)
class ContentVerdict:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    score: int = 0
    decision: GateDecision = GateDecision.ALLOWED

    def as_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "score": self.score,
            "decision": self.decision.value,
        }


def is_disposable_address(address: str) -> bool:
    _, _, domain = address.rpartition("@")
    return bool(domain) and domain.lower() in DISPOSABLE_DOMAINS


def find_spam_phrases(content: str) -> list[str]:
    lowered = content.lower()
    return [phrase for phrase in SPAM_PHRASES if phrase in lowered]


def find_suspicious_links(html: str) -> list[str]:
    # Shorteners hide the destination; IP literals skip domain reputation entirely.
    suspicious: list[str] = []
    for url in _LINK_RE.findall(html):
        lowered = url.lower()
        if any(shortener in lowered for shortener in URL_SHORTENERS) or _IP_LINK_RE.search(url):
            suspicious.append(url)
    return suspicious


def find_forbidden_tags(html: str) -> list[str]:
    return [tag for tag, pattern in _FORBIDDEN_RES if pattern.search(html)]


def text_ratio(html: str) -> float:
    if not html:
        return 0.0
    text_only = _TAG_RE.sub("", html).strip()
    return len(text_only) / len(html)


class ContentGate:
    def __init__(self, *, threshold: int | None = None, enabled: bool | None = None) -> None:
        settings = get_settings()
        self._threshold = settings.content_rejection_threshold if threshold is None else threshold
        self._enabled = settings.content_gate_enabled if enabled is None else enabled

    @property
    def threshold(self) -> int:
        return self._threshold

    def evaluate(self, message: ScorableMessage) -> ContentVerdict:
        if not self._enabled:
            return ContentVerdict(valid=True)
        try:
            return self._score(message)
        except Exception as exc:  # noqa: BLE001 - delivery wins over content policing
            increment_counter("content_gate_fail_open_total")
            logger.error("content_gate_failed", exc_info=exc)
            return ContentVerdict(
                valid=True,
                warnings=[f"Validation service error: {exc}"],
                score=0,
                decision=GateDecision.ALLOWED_DEGRADED,
            )

    def _score(self, message: ScorableMessage) -> ContentVerdict:
        errors: list[str] = []
        warnings: list[str] = []
        score = 0

        if is_disposable_address(message.to):
            errors.append("Disposable email domain not allowed")
            score += DISPOSABLE_PENALTY
            logger.warning("content_disposable_domain to=%s", message.to)

        phrases = find_spam_phrases(f"{message.subject} {message.html}")
        if phrases:
            warnings.append(f"Spam words detected: {', '.join(phrases)}")
            score += len(phrases) * SPAM_PHRASE_PENALTY

        links = find_suspicious_links(message.html)
        if links:
            warnings.append(f"Suspicious links detected: {len(links)} link(s)")
            score += len(links) * SUSPICIOUS_LINK_PENALTY

        tags = find_forbidden_tags(message.html)
        if tags:
            errors.append(f"Forbidden HTML tags not allowed: {', '.join(tags)}")
            score += FORBIDDEN_MARKUP_PENALTY
            logger.warning("content_forbidden_tags tags=%s", ",".join(tags))

        ratio = text_ratio(message.html)
        if ratio < MIN_TEXT_RATIO:
            warnings.append(f"Low text-to-HTML ratio: {ratio * 100:.1f}%")
            score += LOW_TEXT_RATIO_PENALTY

        valid = not errors and score < self._threshold
        logger.debug(
            "content_evaluated valid=%s score=%s errors=%s warnings=%s",
            valid,
            score,
            len(errors),
            len(warnings),
        )
        return ContentVerdict(
            valid=valid,
            errors=errors,
            warnings=warnings,
            score=score,
            decision=GateDecision.ALLOWED if valid else GateDecision.DENIED,
        )


_content_gate: ContentGate | None = None


def get_content_gate() -> ContentGate:
    global _content_gate
    if _content_gate is None:
        _content_gate = ContentGate()
    return _content_gate


def reset_content_gate() -> None:
    # Reset cached services for deterministic tests.
    global _content_gate
    _content_gate = None
