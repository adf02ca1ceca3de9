from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.domain.models import Batch
from mailgate.domain.state import BatchStatus
from mailgate.persistence.guards import tenant_predicate


async def create_batch(
    session: AsyncSession,
    *,
    batch_id: str,
    tenant_id: str,
    mode: str,
    total_count: int,
    request_id: str | None,
) -> Batch:
    batch = Batch(
        id=batch_id,
        tenant_id=tenant_id,
        mode=mode,
        status=BatchStatus.PROCESSING.value,
        total_count=total_count,
        processed_count=0,
        success_count=0,
        failed_count=0,
        request_id=request_id,
    )
    session.add(batch)
    return batch


async def get_batch(session: AsyncSession, tenant_id: str, batch_id: str) -> Batch | None:
    # Return None for tenant mismatch to keep 404 semantics; progress is written by another session.
    result = await session.execute(
        select(Batch)
        .where(Batch.id == batch_id, tenant_predicate(Batch, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def update_progress(
    session: AsyncSession,
    batch_id: str,
    *,
    success_count: int,
    failed_count: int,
    updated_at: datetime,
) -> None:
    # Counters are written together so processed always equals success + failed.
    await session.execute(
        update(Batch)
        .where(Batch.id == batch_id)
        .values(
            processed_count=success_count + failed_count,
            success_count=success_count,
            failed_count=failed_count,
            updated_at=updated_at,
        )
    )


async def finalize(
    session: AsyncSession,
    batch_id: str,
    *,
    status: BatchStatus,
    success_count: int,
    failed_count: int,
    completed_at: datetime,
) -> None:
    await session.execute(
        update(Batch)
        .where(Batch.id == batch_id)
        .values(
            status=status.value,
            processed_count=success_count + failed_count,
            success_count=success_count,
            failed_count=failed_count,
            updated_at=completed_at,
            completed_at=completed_at,
        )
    )


async def delete_batch(session: AsyncSession, batch_id: str) -> None:
    await session.execute(delete(Batch).where(Batch.id == batch_id))


async def mark_failed(
    session: AsyncSession,
    batch_id: str,
    *,
    success_count: int,
    failed_count: int,
    completed_at: datetime,
) -> None:
    # Terminal state for batches whose processing or rollback broke; counters reflect work done so far.
    await session.execute(
        update(Batch)
        .where(Batch.id == batch_id, Batch.status == BatchStatus.PROCESSING.value)
        .values(
            status=BatchStatus.FAILED.value,
            processed_count=success_count + failed_count,
            success_count=success_count,
            failed_count=failed_count,
            updated_at=completed_at,
            completed_at=completed_at,
        )
    )
