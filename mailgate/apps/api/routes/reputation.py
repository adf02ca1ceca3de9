from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.apps.api.deps import get_db, tenant_id_header
from mailgate.apps.api.response import success_response
from mailgate.core.clock import as_utc
from mailgate.core.errors import TenantNotFoundError
from mailgate.persistence.repos import tenants as tenants_repo
from mailgate.services.reputation import ReputationMonitor, get_reputation_monitor


router = APIRouter(tags=["reputation"])


@router.get("/reputation")
async def get_reputation(
    request: Request,
    tenant_id: str = Depends(tenant_id_header),
    monitor: ReputationMonitor = Depends(get_reputation_monitor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Live rates for the trailing window; suspension only changes in the sweep.
    tenant = await tenants_repo.get_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    rates = await monitor.calculate_rates(db, tenant_id)
    data = {
        "tenant_id": tenant_id,
        **rates.as_dict(),
        "is_suspended": tenant.is_suspended,
        "suspension_reason": tenant.suspension_reason,
        "last_metrics_update": (
            as_utc(tenant.last_metrics_update).isoformat() if tenant.last_metrics_update else None
        ),
    }
    return success_response(request=request, data=data)
