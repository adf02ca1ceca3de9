from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.domain.models import DeliveryEvent, Tenant
from mailgate.domain.state import PERMANENT_BOUNCE, DeliveryEventType


def make_message(**overrides: Any) -> dict[str, Any]:
    # Clean payload that passes both structural validation and the content gate.
    payload: dict[str, Any] = {
        "to": "customer@example.com",
        "subject": "Your invoice is ready",
        "html": "<p>Hello, your invoice for March is attached to this message.</p>",
    }
    payload.update(overrides)
    return payload


async def create_tenant(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    daily_limit: int = 1000,
    is_active: bool = True,
    is_suspended: bool = False,
    suspension_reason: str | None = None,
) -> Tenant:
    tenant = Tenant(
        id=tenant_id or f"t-{uuid4().hex[:12]}",
        name="Test tenant",
        daily_limit=daily_limit,
        is_active=is_active,
        is_suspended=is_suspended,
        suspension_reason=suspension_reason,
    )
    session.add(tenant)
    await session.commit()
    return tenant


async def add_delivery_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    occurred_at: datetime,
    sent: int = 0,
    permanent_bounces: int = 0,
    transient_bounces: int = 0,
    complaints: int = 0,
) -> None:
    # Bulk-seed the outcome feed the reputation monitor reads.
    rows: list[DeliveryEvent] = []
    for _ in range(sent):
        rows.append(_event(tenant_id, DeliveryEventType.SENT, occurred_at))
    for _ in range(permanent_bounces):
        rows.append(_event(tenant_id, DeliveryEventType.BOUNCE, occurred_at, bounce_type=PERMANENT_BOUNCE))
    for _ in range(transient_bounces):
        rows.append(_event(tenant_id, DeliveryEventType.BOUNCE, occurred_at, bounce_type="Transient"))
    for _ in range(complaints):
        rows.append(_event(tenant_id, DeliveryEventType.COMPLAINT, occurred_at))
    session.add_all(rows)
    await session.commit()


def _event(
    tenant_id: str,
    event_type: DeliveryEventType,
    occurred_at: datetime,
    *,
    bounce_type: str | None = None,
) -> DeliveryEvent:
    return DeliveryEvent(
        tenant_id=tenant_id,
        send_record_id=str(uuid4()),
        event_type=event_type.value,
        bounce_type=bounce_type,
        occurred_at=occurred_at,
    )
