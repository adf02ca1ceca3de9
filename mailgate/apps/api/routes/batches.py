from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.apps.api.deps import get_db, tenant_id_header
from mailgate.apps.api.response import get_request_id, success_response
from mailgate.domain.state import BatchMode
from mailgate.services.batches import BatchOrchestrator, get_batch_orchestrator


router = APIRouter(prefix="/email/batch", tags=["batches"])


class BatchRequest(BaseModel):
    # Items stay raw here; per-item validation is owned by the orchestrator.
    emails: list[dict[str, Any]] = Field(default_factory=list)
    mode: BatchMode = BatchMode.BEST_EFFORT


@router.post("", status_code=202)
async def create_batch(
    request: Request,
    payload: BatchRequest,
    tenant_id: str = Depends(tenant_id_header),
    orchestrator: BatchOrchestrator = Depends(get_batch_orchestrator),
    db: AsyncSession = Depends(get_db),
) -> dict:
    accepted = await orchestrator.create_batch(
        db,
        tenant_id=tenant_id,
        messages=payload.emails,
        mode=payload.mode,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=accepted.as_dict())


@router.get("/{batch_id}")
async def get_batch(
    request: Request,
    batch_id: str,
    tenant_id: str = Depends(tenant_id_header),
    orchestrator: BatchOrchestrator = Depends(get_batch_orchestrator),
    db: AsyncSession = Depends(get_db),
) -> dict:
    progress = await orchestrator.get_batch_status(db, tenant_id, batch_id)
    return success_response(request=request, data=progress.as_dict())


@router.get("/{batch_id}/emails")
async def get_batch_emails(
    request: Request,
    batch_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    tenant_id: str = Depends(tenant_id_header),
    orchestrator: BatchOrchestrator = Depends(get_batch_orchestrator),
    db: AsyncSession = Depends(get_db),
) -> dict:
    emails = await orchestrator.get_batch_emails(db, tenant_id, batch_id, limit=limit)
    return success_response(request=request, data=emails)
