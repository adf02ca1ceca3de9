from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def list_monitorable_tenant_ids(session: AsyncSession) -> list[str]:
    # Only active tenants that still send are worth sweeping.
    result = await session.execute(
        select(Tenant.id)
        .where(Tenant.is_active.is_(True), Tenant.is_suspended.is_(False))
        .order_by(Tenant.id)
    )
    return list(result.scalars().all())


async def update_cached_metrics(
    session: AsyncSession,
    tenant: Tenant,
    *,
    bounce_rate_pct: float,
    complaint_rate_pct: float,
    updated_at: datetime,
) -> None:
    tenant.bounce_rate_pct = bounce_rate_pct
    tenant.complaint_rate_pct = complaint_rate_pct
    tenant.last_metrics_update = updated_at


async def suspend(session: AsyncSession, tenant: Tenant, *, reason: str, suspended_at: datetime) -> bool:
    # Suspension is one-way; never overwrite an existing reason.
    if tenant.is_suspended:
        return False
    tenant.is_suspended = True
    tenant.suspension_reason = reason
    tenant.suspended_at = suspended_at
    return True
