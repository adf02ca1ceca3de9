from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.apps.api.deps import get_db, idempotency_key_header, tenant_id_header
from mailgate.apps.api.response import get_request_id, success_response
from mailgate.services.admission import AdmissionService, get_admission_service


router = APIRouter(prefix="/email", tags=["email"])


@router.post("/send", status_code=202)
async def send_email(
    request: Request,
    payload: dict[str, Any] = Body(...),
    tenant_id: str = Depends(tenant_id_header),
    idempotency_key: str | None = Depends(idempotency_key_header),
    admission: AdmissionService = Depends(get_admission_service),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Structural validation happens in the pipeline so item and batch errors share codes.
    acceptance = await admission.submit(
        db,
        tenant_id=tenant_id,
        message=payload,
        idempotency_key=idempotency_key,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=acceptance.as_dict())
