from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from mailgate.core.config import get_settings
from mailgate.core.errors import (
    BatchEmptyError,
    BatchNotFoundError,
    BatchTooLargeError,
    BatchValidationFailedError,
)
from mailgate.domain.models import Batch, SendRecord
from mailgate.domain.state import BatchMode, BatchStatus
from mailgate.persistence.repos import batches as batches_repo
from mailgate.persistence.repos import send_records as send_records_repo
from mailgate.services.batches import progress_percent
from mailgate.tests.utils.data import create_tenant, make_message


async def _count(session, model) -> int:
    return int(await session.scalar(select(func.count()).select_from(model)) or 0)


def _clean_batch(size: int) -> list[dict]:
    return [make_message(to=f"user{index}@example.com") for index in range(size)]


def test_progress_rounds_to_whole_percent() -> None:
    assert progress_percent(1, 3) == 33
    assert progress_percent(2, 3) == 67
    assert progress_percent(0, 0) == 0


@pytest.mark.asyncio
async def test_empty_and_oversized_batches_are_rejected(session, orchestrator) -> None:
    tenant = await create_tenant(session)
    with pytest.raises(BatchEmptyError):
        await orchestrator.create_batch(session, tenant_id=tenant.id, messages=[])
    with pytest.raises(BatchTooLargeError):
        await orchestrator.create_batch(session, tenant_id=tenant.id, messages=[{}] * 1001)
    assert await _count(session, Batch) == 0


@pytest.mark.asyncio
async def test_best_effort_batch_completes(session, orchestrator, dispatch_queue) -> None:
    tenant = await create_tenant(session)
    accepted = await orchestrator.create_batch(session, tenant_id=tenant.id, messages=_clean_batch(4))
    assert accepted.status == BatchStatus.PROCESSING.value
    assert accepted.total == 4

    await orchestrator.drain()

    progress = await orchestrator.get_batch_status(session, tenant.id, accepted.batch_id)
    assert progress.status == BatchStatus.COMPLETED.value
    assert (progress.processed, progress.success, progress.failed) == (4, 4, 0)
    assert progress.progress == 100
    assert progress.completed_at is not None
    assert len(dispatch_queue.jobs) == 4
    assert all(job.batch_id == accepted.batch_id for job in dispatch_queue.jobs)


@pytest.mark.asyncio
async def test_best_effort_counts_failures_without_rollback(session, orchestrator, dispatch_queue) -> None:
    tenant = await create_tenant(session)
    messages = _clean_batch(5)
    messages[1] = make_message(to="broken-address")
    messages[3] = make_message(to="someone@mailinator.com")

    accepted = await orchestrator.create_batch(session, tenant_id=tenant.id, messages=messages)
    await orchestrator.drain()

    progress = await orchestrator.get_batch_status(session, tenant.id, accepted.batch_id)
    assert progress.status == BatchStatus.PARTIAL.value
    assert (progress.processed, progress.success, progress.failed) == (5, 3, 2)
    assert len(dispatch_queue.jobs) == 3
    assert await _count(session, SendRecord) == 3


@pytest.mark.asyncio
async def test_best_effort_all_failed(session, orchestrator, dispatch_queue) -> None:
    tenant = await create_tenant(session)
    dispatch_queue.fail_all = True
    accepted = await orchestrator.create_batch(session, tenant_id=tenant.id, messages=_clean_batch(3))
    await orchestrator.drain()

    progress = await orchestrator.get_batch_status(session, tenant.id, accepted.batch_id)
    assert progress.status == BatchStatus.FAILED.value
    assert progress.failed == 3
    assert await _count(session, SendRecord) == 0


@pytest.mark.asyncio
async def test_progress_checkpoints_keep_counters_consistent(
    session, orchestrator, monkeypatch
) -> None:
    monkeypatch.setenv("BATCH_CHECKPOINT_INTERVAL", "2")
    get_settings.cache_clear()
    tenant = await create_tenant(session)
    messages = _clean_batch(5)
    messages[2] = make_message(to="someone@mailinator.com")

    checkpoints: list[tuple[int, int]] = []
    original_update = batches_repo.update_progress

    async def _spy(db, batch_id, *, success_count, failed_count, updated_at):
        checkpoints.append((success_count, failed_count))
        await original_update(
            db, batch_id, success_count=success_count, failed_count=failed_count, updated_at=updated_at
        )

    monkeypatch.setattr(batches_repo, "update_progress", _spy)
    await orchestrator.create_batch(session, tenant_id=tenant.id, messages=messages)
    await orchestrator.drain()

    # Checkpoints after items 2 and 4; processed always equals success + failed.
    assert checkpoints == [(2, 0), (3, 1)]


@pytest.mark.asyncio
async def test_all_or_nothing_validates_up_front(session, orchestrator, dispatch_queue) -> None:
    tenant = await create_tenant(session)
    messages = [make_message(to=f"bad-{index}") for index in range(25)]

    with pytest.raises(BatchValidationFailedError) as exc_info:
        await orchestrator.create_batch(
            session, tenant_id=tenant.id, messages=messages, mode=BatchMode.ALL_OR_NOTHING
        )

    error = exc_info.value
    assert error.truncated is True
    assert len(error.reasons) == 21
    assert error.reasons[0].startswith("emails[0]: to:")
    assert error.reasons[-1] == "... and 5 more errors"
    assert dispatch_queue.calls == 0
    assert await _count(session, Batch) == 0


@pytest.mark.asyncio
async def test_all_or_nothing_rolls_back_on_item_failure(
    session, orchestrator, dispatch_queue, quota_counter, counter_redis
) -> None:
    tenant = await create_tenant(session)
    messages = _clean_batch(10)
    # Structurally valid, but the content gate rejects the seventh item.
    messages[6] = make_message(to="someone@mailinator.com")

    accepted = await orchestrator.create_batch(
        session, tenant_id=tenant.id, messages=messages, mode=BatchMode.ALL_OR_NOTHING
    )
    await orchestrator.drain()

    assert len(dispatch_queue.jobs) == 6
    assert await _count(session, SendRecord) == 0
    assert await _count(session, Batch) == 0
    assert counter_redis.values[quota_counter.counter_key(tenant.id)] == 0
    with pytest.raises(BatchNotFoundError):
        await orchestrator.get_batch_status(session, tenant.id, accepted.batch_id)


@pytest.mark.asyncio
async def test_all_or_nothing_success(session, orchestrator, dispatch_queue) -> None:
    tenant = await create_tenant(session)
    accepted = await orchestrator.create_batch(
        session, tenant_id=tenant.id, messages=_clean_batch(3), mode=BatchMode.ALL_OR_NOTHING
    )
    await orchestrator.drain()

    progress = await orchestrator.get_batch_status(session, tenant.id, accepted.batch_id)
    assert progress.status == BatchStatus.COMPLETED.value
    assert progress.mode == BatchMode.ALL_OR_NOTHING.value
    assert len(dispatch_queue.jobs) == 3


@pytest.mark.asyncio
async def test_batch_reads_are_tenant_scoped(session, orchestrator) -> None:
    owner = await create_tenant(session)
    other = await create_tenant(session)
    accepted = await orchestrator.create_batch(session, tenant_id=owner.id, messages=_clean_batch(3))
    await orchestrator.drain()

    emails = await orchestrator.get_batch_emails(session, owner.id, accepted.batch_id, limit=2)
    assert emails["total"] == 3
    assert len(emails["emails"]) == 2
    assert {email["status"] for email in emails["emails"]} == {"ENQUEUED"}

    with pytest.raises(BatchNotFoundError):
        await orchestrator.get_batch_status(session, other.id, accepted.batch_id)
    with pytest.raises(BatchNotFoundError):
        await orchestrator.get_batch_emails(session, other.id, accepted.batch_id)


@pytest.mark.asyncio
async def test_unexpected_processing_error_marks_batch_failed(
    session, orchestrator, dispatch_queue, monkeypatch
) -> None:
    tenant = await create_tenant(session)

    async def _broken_finalize(*args, **kwargs):
        raise RuntimeError("database connection lost")

    monkeypatch.setattr(batches_repo, "finalize", _broken_finalize)
    accepted = await orchestrator.create_batch(session, tenant_id=tenant.id, messages=_clean_batch(3))
    await orchestrator.drain()

    progress = await orchestrator.get_batch_status(session, tenant.id, accepted.batch_id)
    assert progress.status == BatchStatus.FAILED.value
    assert (progress.processed, progress.success, progress.failed) == (3, 3, 0)
    assert progress.completed_at is not None
    assert len(dispatch_queue.jobs) == 3


@pytest.mark.asyncio
async def test_failed_rollback_still_ends_batch(
    session, orchestrator, dispatch_queue, quota_counter, counter_redis, monkeypatch
) -> None:
    tenant = await create_tenant(session)
    messages = _clean_batch(4)
    messages[3] = make_message(to="someone@mailinator.com")

    async def _broken_delete(*args, **kwargs):
        raise RuntimeError("delete timed out")

    monkeypatch.setattr(send_records_repo, "delete_batch_records", _broken_delete)
    accepted = await orchestrator.create_batch(
        session, tenant_id=tenant.id, messages=messages, mode=BatchMode.ALL_OR_NOTHING
    )
    await orchestrator.drain()

    progress = await orchestrator.get_batch_status(session, tenant.id, accepted.batch_id)
    assert progress.status == BatchStatus.FAILED.value
    assert (progress.success, progress.failed) == (3, 1)
    # Nothing was undone, so the admitted sends keep their quota.
    assert await _count(session, SendRecord) == 3
    assert counter_redis.values[quota_counter.counter_key(tenant.id)] == 3


@pytest.mark.asyncio
async def test_rollback_across_midnight_releases_each_day(
    session, orchestrator, admission, quota_counter, counter_redis, clock, monkeypatch
) -> None:
    tenant = await create_tenant(session)
    clock.now = datetime(2026, 3, 10, 23, 59, 59, tzinfo=timezone.utc)
    before_midnight = clock.now
    original_admit = admission.admit

    async def _admit_then_tick(*args, **kwargs):
        acceptance = await original_admit(*args, **kwargs)
        clock.advance(seconds=1)
        return acceptance

    monkeypatch.setattr(admission, "admit", _admit_then_tick)
    messages = _clean_batch(3)
    messages[2] = make_message(to="someone@mailinator.com")

    await orchestrator.create_batch(
        session, tenant_id=tenant.id, messages=messages, mode=BatchMode.ALL_OR_NOTHING
    )
    await orchestrator.drain()

    assert counter_redis.values[quota_counter.counter_key(tenant.id, before_midnight)] == 0
    assert counter_redis.values[quota_counter.counter_key(tenant.id)] == 0
