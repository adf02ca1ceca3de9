from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.domain.models import IdempotencyRecord


async def get_record(session: AsyncSession, tenant_id: str, key: str) -> IdempotencyRecord | None:
    result = await session.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.tenant_id == tenant_id,
            IdempotencyRecord.idem_key == key,
        )
    )
    return result.scalar_one_or_none()


def add_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    key: str,
    request_hash: str,
    send_record_id: str,
    expires_at: datetime,
) -> IdempotencyRecord:
    record = IdempotencyRecord(
        tenant_id=tenant_id,
        idem_key=key,
        request_hash=request_hash,
        send_record_id=send_record_id,
        expires_at=expires_at,
    )
    session.add(record)
    return record


async def delete_record(session: AsyncSession, tenant_id: str, key: str) -> None:
    await session.execute(
        delete(IdempotencyRecord).where(
            IdempotencyRecord.tenant_id == tenant_id,
            IdempotencyRecord.idem_key == key,
        )
    )
