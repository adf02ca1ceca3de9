from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.domain.messages import EmailMessage
from mailgate.domain.models import SendRecord
from mailgate.domain.state import SendStatus
from mailgate.persistence.guards import tenant_predicate


def build_send_record(
    *,
    record_id: str,
    tenant_id: str,
    message: EmailMessage,
    request_id: str | None,
    batch_id: str | None = None,
) -> SendRecord:
    # New records always start PENDING; enqueue success moves them forward.
    return SendRecord(
        id=record_id,
        tenant_id=tenant_id,
        batch_id=batch_id,
        to_address=message.to,
        cc=list(message.cc),
        bcc=list(message.bcc),
        subject=message.subject,
        html=message.html,
        reply_to=message.reply_to,
        headers=message.headers,
        tags=list(message.tags),
        external_id=message.external_id,
        recipient=message.recipient.model_dump(exclude_none=True) if message.recipient else None,
        status=SendStatus.PENDING.value,
        attempts=0,
        request_id=request_id,
    )


async def get_send_record(session: AsyncSession, tenant_id: str, record_id: str) -> SendRecord | None:
    # Return None for tenant mismatch to keep 404 semantics; status may be advanced by another session.
    result = await session.execute(
        select(SendRecord)
        .where(SendRecord.id == record_id, tenant_predicate(SendRecord, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_send_record_by_id(session: AsyncSession, record_id: str) -> SendRecord | None:
    # Use with care; tenant checks should be enforced by callers.
    result = await session.execute(select(SendRecord).where(SendRecord.id == record_id))
    return result.scalar_one_or_none()


async def mark_enqueued(
    session: AsyncSession,
    record_id: str,
    *,
    job_id: str,
    enqueued_at: datetime,
) -> None:
    record = await get_send_record_by_id(session, record_id)
    if record is None:
        return
    record.status = SendStatus.ENQUEUED.value
    record.job_id = job_id
    record.enqueued_at = enqueued_at


async def delete_send_record(session: AsyncSession, record_id: str) -> None:
    await session.execute(delete(SendRecord).where(SendRecord.id == record_id))


async def delete_batch_records(session: AsyncSession, batch_id: str) -> int:
    result = await session.execute(delete(SendRecord).where(SendRecord.batch_id == batch_id))
    return int(result.rowcount or 0)


async def list_batch_records(session: AsyncSession, batch_id: str, *, limit: int) -> list[SendRecord]:
    result = await session.execute(
        select(SendRecord)
        .where(SendRecord.batch_id == batch_id)
        .order_by(SendRecord.created_at, SendRecord.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_batch_records(session: AsyncSession, batch_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(SendRecord).where(SendRecord.batch_id == batch_id)
    )
    return int(result.scalar() or 0)
