from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.core.clock import utc_now
from mailgate.domain.models import DeliveryEvent
from mailgate.domain.state import DeliveryEventType, SendStatus, can_transition
from mailgate.persistence.repos import delivery_events as events_repo
from mailgate.persistence.repos import send_records as send_records_repo
from mailgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Only delivery attempts move the send record; feedback markers are append-only.
_STATUS_FOR_EVENT = {
    DeliveryEventType.SENT: SendStatus.SENT,
    DeliveryEventType.FAILED: SendStatus.FAILED,
}


async def record_delivery_outcome(
    session: AsyncSession,
    send_record_id: str,
    event_type: DeliveryEventType | str,
    *,
    bounce_type: str | None = None,
    complaint_feedback_type: str | None = None,
    error: str | None = None,
    occurred_at: datetime | None = None,
) -> DeliveryEvent | None:
    """Record a dispatch result or provider feedback for a send record.

    Returns None when the record no longer exists (for example after an
    all-or-nothing batch rollback), so late outcomes are dropped quietly.
    """
    resolved_type = DeliveryEventType(event_type)
    record = await send_records_repo.get_send_record_by_id(session, send_record_id)
    if record is None:
        logger.info("delivery_outcome_orphaned send_record_id=%s event=%s", send_record_id, resolved_type.value)
        return None

    now = occurred_at or utc_now()
    target = _STATUS_FOR_EVENT.get(resolved_type)
    if target is not None:
        record.attempts = (record.attempts or 0) + 1
        if can_transition(record.status, target.value):
            record.status = target.value
            record.processed_at = now
            if error:
                record.last_error = error[:2000]
        else:
            logger.warning(
                "delivery_outcome_regression_ignored send_record_id=%s current=%s target=%s",
                send_record_id,
                record.status,
                target.value,
            )

    event = await events_repo.add_event(
        session,
        tenant_id=record.tenant_id,
        send_record_id=record.id,
        event_type=resolved_type,
        occurred_at=now,
        bounce_type=bounce_type,
        complaint_feedback_type=complaint_feedback_type,
        detail=error,
    )
    await session.commit()
    increment_counter(f"delivery_outcomes_total.{resolved_type.value}")
    return event
