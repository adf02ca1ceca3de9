from __future__ import annotations

from enum import Enum


class SendStatus(str, Enum):
    PENDING = "PENDING"
    ENQUEUED = "ENQUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class BatchMode(str, Enum):
    ALL_OR_NOTHING = "ALL_OR_NOTHING"
    BEST_EFFORT = "BEST_EFFORT"


class BatchStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class GateDecision(str, Enum):
    # Fail-open paths stay distinguishable from normal admissions.
    ALLOWED = "allowed"
    ALLOWED_DEGRADED = "allowed_degraded"
    DENIED = "denied"


class DeliveryEventType(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    BOUNCE = "bounce"
    COMPLAINT = "complaint"


PERMANENT_BOUNCE = "Permanent"

# Send records only ever move forward through their lifecycle.
_SEND_TRANSITIONS: dict[SendStatus, frozenset[SendStatus]] = {
    SendStatus.PENDING: frozenset({SendStatus.ENQUEUED}),
    SendStatus.ENQUEUED: frozenset({SendStatus.SENT, SendStatus.FAILED}),
    SendStatus.SENT: frozenset(),
    SendStatus.FAILED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return SendStatus(target) in _SEND_TRANSITIONS[SendStatus(current)]


def final_batch_status(*, total: int, failed: int) -> BatchStatus:
    if failed == 0:
        return BatchStatus.COMPLETED
    if failed < total:
        return BatchStatus.PARTIAL
    return BatchStatus.FAILED
