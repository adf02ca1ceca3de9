from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.domain.models import DeliveryEvent
from mailgate.domain.state import PERMANENT_BOUNCE, DeliveryEventType


async def add_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    send_record_id: str,
    event_type: DeliveryEventType,
    occurred_at: datetime,
    bounce_type: str | None = None,
    complaint_feedback_type: str | None = None,
    detail: str | None = None,
) -> DeliveryEvent:
    event = DeliveryEvent(
        tenant_id=tenant_id,
        send_record_id=send_record_id,
        event_type=event_type.value,
        bounce_type=bounce_type,
        complaint_feedback_type=complaint_feedback_type,
        detail=detail,
        occurred_at=occurred_at,
    )
    session.add(event)
    return event


async def _count(session: AsyncSession, *conditions) -> int:
    result = await session.execute(select(func.count()).select_from(DeliveryEvent).where(*conditions))
    return int(result.scalar() or 0)


async def count_sent(session: AsyncSession, tenant_id: str, *, since: datetime) -> int:
    return await _count(
        session,
        DeliveryEvent.tenant_id == tenant_id,
        DeliveryEvent.event_type == DeliveryEventType.SENT.value,
        DeliveryEvent.occurred_at >= since,
    )


async def count_permanent_bounces(session: AsyncSession, tenant_id: str, *, since: datetime) -> int:
    # Transient bounces are retried by dispatch and do not hurt reputation.
    return await _count(
        session,
        DeliveryEvent.tenant_id == tenant_id,
        DeliveryEvent.event_type == DeliveryEventType.BOUNCE.value,
        DeliveryEvent.bounce_type == PERMANENT_BOUNCE,
        DeliveryEvent.occurred_at >= since,
    )


async def count_complaints(session: AsyncSession, tenant_id: str, *, since: datetime) -> int:
    return await _count(
        session,
        DeliveryEvent.tenant_id == tenant_id,
        DeliveryEvent.event_type == DeliveryEventType.COMPLAINT.value,
        DeliveryEvent.occurred_at >= since,
    )
