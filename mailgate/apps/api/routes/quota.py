from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.apps.api.deps import get_db, tenant_id_header
from mailgate.apps.api.response import success_response
from mailgate.core.errors import TenantNotFoundError
from mailgate.services.admission import AdmissionService, get_admission_service
from mailgate.services.quota import BLOCKED_TENANT_NOT_FOUND


router = APIRouter(prefix="/email", tags=["quota"])


@router.get("/quota")
async def get_quota(
    request: Request,
    tenant_id: str = Depends(tenant_id_header),
    admission: AdmissionService = Depends(get_admission_service),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await admission.check_quota(db, tenant_id)
    if result.blocked_by == BLOCKED_TENANT_NOT_FOUND:
        raise TenantNotFoundError(tenant_id)
    return success_response(request=request, data=result.as_dict())
