from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.persistence.db import get_session
from mailgate.services.dispatch import get_queue_depth


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def tenant_id_header(x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id")) -> str:
    # Authentication happens upstream; the gateway forwards the resolved tenant.
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=401,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return x_tenant_id.strip()


async def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> str | None:
    # Format is validated by the admission pipeline so errors share one taxonomy.
    return idempotency_key


async def dispatch_queue_depth() -> int | None:
    return await get_queue_depth()
