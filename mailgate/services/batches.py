from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailgate.core.clock import as_utc, utc_date_key, utc_now
from mailgate.core.config import get_settings
from mailgate.core.errors import (
    BatchEmptyError,
    BatchNotFoundError,
    BatchTooLargeError,
    BatchValidationFailedError,
    MailgateError,
    MessageValidationError,
)
from mailgate.domain.messages import EmailMessage, parse_message
from mailgate.domain.models import Batch, SendRecord
from mailgate.domain.state import BatchMode, BatchStatus, final_batch_status
from mailgate.persistence.db import SessionLocal
from mailgate.persistence.repos import batches as batches_repo
from mailgate.persistence.repos import send_records as send_records_repo
from mailgate.services.admission import AdmissionService, generate_request_id, get_admission_service
from mailgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchAcceptance:
    batch_id: str
    status: str
    total: int
    mode: str
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total": self.total,
            "mode": self.mode,
            "message": self.message,
        }


@dataclass(frozen=True)
class BatchProgress:
    batch_id: str
    status: str
    mode: str
    total: int
    processed: int
    success: int
    failed: int
    progress: int
    created_at: datetime
    completed_at: datetime | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "mode": self.mode,
            "total": self.total,
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def progress_percent(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(processed / total * 100)


def batch_progress(batch: Batch) -> BatchProgress:
    return BatchProgress(
        batch_id=batch.id,
        status=batch.status,
        mode=batch.mode,
        total=batch.total_count,
        processed=batch.processed_count,
        success=batch.success_count,
        failed=batch.failed_count,
        progress=progress_percent(batch.processed_count, batch.total_count),
        created_at=as_utc(batch.created_at),
        completed_at=as_utc(batch.completed_at) if batch.completed_at else None,
    )


def send_record_summary(record: SendRecord) -> dict[str, Any]:
    return {
        "outbox_id": record.id,
        "to": record.to_address,
        "subject": record.subject,
        "status": record.status,
        "job_id": record.job_id,
        "external_id": record.external_id,
        "created_at": as_utc(record.created_at).isoformat(),
    }


class _ItemFailed(Exception):
    """Stop an all-or-nothing batch at the first failing item."""

    def __init__(self, index: int, cause: Exception) -> None:
        super().__init__(f"item {index} failed: {cause}")
        self.index = index
        self.cause = cause


class BatchOrchestrator:
    """Accept a batch synchronously and admit its items in a background task.

    ALL_OR_NOTHING batches are validated up front and fully undone on the
    first item failure. BEST_EFFORT batches count failures and keep going.
    """

    def __init__(
        self,
        *,
        admission: AdmissionService | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._admission = admission or get_admission_service()
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or utc_now
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self._tasks: set[asyncio.Task[None]] = set()

    async def create_batch(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        messages: Sequence[EmailMessage | dict[str, Any]],
        mode: BatchMode | str = BatchMode.BEST_EFFORT,
        request_id: str | None = None,
    ) -> BatchAcceptance:
        settings = get_settings()
        resolved_mode = BatchMode(mode)
        if not messages:
            raise BatchEmptyError()
        if len(messages) > settings.batch_max_items:
            raise BatchTooLargeError(len(messages), settings.batch_max_items)

        items: list[EmailMessage | dict[str, Any]] = list(messages)
        if resolved_mode == BatchMode.ALL_OR_NOTHING:
            items = list(self._validate_all(messages, cap=settings.batch_validation_error_cap))

        batch_id = self._id_factory()
        resolved_request_id = request_id or generate_request_id()
        await batches_repo.create_batch(
            session,
            batch_id=batch_id,
            tenant_id=tenant_id,
            mode=resolved_mode.value,
            total_count=len(items),
            request_id=resolved_request_id,
        )
        await session.commit()

        task = asyncio.create_task(
            self.process_batch(
                batch_id=batch_id,
                tenant_id=tenant_id,
                items=items,
                mode=resolved_mode,
                request_id=resolved_request_id,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        increment_counter("batches_accepted_total")
        logger.info(
            "batch_accepted tenant_id=%s batch_id=%s mode=%s total=%s",
            tenant_id,
            batch_id,
            resolved_mode.value,
            len(items),
        )
        return BatchAcceptance(
            batch_id=batch_id,
            status=BatchStatus.PROCESSING.value,
            total=len(items),
            mode=resolved_mode.value,
            message=f"Batch accepted for processing. {len(items)} emails queued.",
        )

    def _validate_all(
        self, messages: Sequence[EmailMessage | dict[str, Any]], *, cap: int
    ) -> list[EmailMessage]:
        parsed: list[EmailMessage] = []
        reasons: list[str] = []
        failed_items = 0
        for index, raw in enumerate(messages):
            try:
                parsed.append(parse_message(raw))
            except MessageValidationError as exc:
                failed_items += 1
                for reason in exc.reasons:
                    reasons.append(f"emails[{index}]: {reason}")
        if not failed_items:
            return parsed
        truncated = len(reasons) > cap
        shown = reasons[:cap]
        if truncated:
            shown.append(f"... and {len(reasons) - cap} more errors")
        logger.info("batch_validation_failed failed_items=%s reasons=%s", failed_items, len(reasons))
        raise BatchValidationFailedError(shown, truncated=truncated)

    async def process_batch(
        self,
        *,
        batch_id: str,
        tenant_id: str,
        items: Sequence[EmailMessage | dict[str, Any]],
        mode: BatchMode,
        request_id: str | None = None,
    ) -> None:
        checkpoint = max(1, get_settings().batch_checkpoint_interval)
        success = 0
        failed = 0
        admitted_at: list[datetime] = []
        async with self._session_factory() as session:
            try:
                for index, raw in enumerate(items):
                    try:
                        message = parse_message(raw)
                        acceptance = await self._admission.admit(
                            session,
                            tenant_id=tenant_id,
                            message=message,
                            request_id=request_id,
                            batch_id=batch_id,
                        )
                        admitted_at.append(acceptance.received_at)
                        success += 1
                    except Exception as exc:  # noqa: BLE001 - item failures are accounted, not propagated
                        await session.rollback()
                        if mode == BatchMode.ALL_OR_NOTHING:
                            raise _ItemFailed(index, exc) from exc
                        failed += 1
                        self._log_item_failure(batch_id, index, exc)
                    if (index + 1) % checkpoint == 0:
                        await batches_repo.update_progress(
                            session,
                            batch_id,
                            success_count=success,
                            failed_count=failed,
                            updated_at=self._time_provider(),
                        )
                        await session.commit()

                status = final_batch_status(total=len(items), failed=failed)
                await batches_repo.finalize(
                    session,
                    batch_id,
                    status=status,
                    success_count=success,
                    failed_count=failed,
                    completed_at=self._time_provider(),
                )
                await session.commit()
                increment_counter(f"batches_finished_total.{status.value.lower()}")
                logger.info(
                    "batch_finished tenant_id=%s batch_id=%s status=%s success=%s failed=%s",
                    tenant_id,
                    batch_id,
                    status.value,
                    success,
                    failed,
                )
            except _ItemFailed as exc:
                try:
                    await self._rollback_batch(
                        session,
                        tenant_id=tenant_id,
                        batch_id=batch_id,
                        admitted_at=admitted_at,
                        failure=exc,
                    )
                except Exception:  # noqa: BLE001 - a broken rollback still ends in a terminal status
                    logger.exception("batch_rollback_failed tenant_id=%s batch_id=%s", tenant_id, batch_id)
                    await self._mark_failed(
                        session, tenant_id=tenant_id, batch_id=batch_id, success=success, failed=failed + 1
                    )
            except Exception:  # noqa: BLE001 - detached task; the failure is persisted on the batch
                logger.exception("batch_processing_failed tenant_id=%s batch_id=%s", tenant_id, batch_id)
                await self._mark_failed(
                    session, tenant_id=tenant_id, batch_id=batch_id, success=success, failed=failed
                )

    def _log_item_failure(self, batch_id: str, index: int, exc: Exception) -> None:
        if isinstance(exc, MailgateError):
            logger.warning(
                "batch_item_failed batch_id=%s index=%s code=%s error=%s", batch_id, index, exc.code, exc
            )
        else:
            logger.error("batch_item_failed batch_id=%s index=%s", batch_id, index, exc_info=exc)

    async def _rollback_batch(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        batch_id: str,
        admitted_at: list[datetime],
        failure: _ItemFailed,
    ) -> None:
        # Already-enqueued jobs stay on the queue; dispatchers skip records that no longer exist.
        deleted = await send_records_repo.delete_batch_records(session, batch_id)
        await batches_repo.delete_batch(session, batch_id)
        await session.commit()
        # Quota goes back to the day each send was counted against.
        by_day: dict[str, list[datetime]] = {}
        for stamp in admitted_at:
            by_day.setdefault(utc_date_key(stamp), []).append(stamp)
        for stamps in by_day.values():
            await self._admission.quota.release(tenant_id, len(stamps), at=stamps[0])
        increment_counter("batches_rolled_back_total")
        logger.error(
            "batch_rolled_back tenant_id=%s batch_id=%s index=%s deleted=%s",
            tenant_id,
            batch_id,
            failure.index,
            deleted,
            exc_info=failure.cause,
        )

    async def _mark_failed(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        batch_id: str,
        success: int,
        failed: int,
    ) -> None:
        # The processing session may be unusable, so the terminal status is written from a fresh one.
        try:
            await session.rollback()
            async with self._session_factory() as status_session:
                await batches_repo.mark_failed(
                    status_session,
                    batch_id,
                    success_count=success,
                    failed_count=failed,
                    completed_at=self._time_provider(),
                )
                await status_session.commit()
        except Exception:  # noqa: BLE001 - nothing left to fall back on
            logger.exception("batch_mark_failed_error tenant_id=%s batch_id=%s", tenant_id, batch_id)
            return
        increment_counter("batches_finished_total.failed")
        logger.error(
            "batch_failed tenant_id=%s batch_id=%s success=%s failed=%s", tenant_id, batch_id, success, failed
        )

    async def drain(self) -> None:
        # Await detached batch tasks; used at shutdown and in tests.
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def get_batch_status(self, session: AsyncSession, tenant_id: str, batch_id: str) -> BatchProgress:
        batch = await batches_repo.get_batch(session, tenant_id, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch_progress(batch)

    async def get_batch_emails(
        self,
        session: AsyncSession,
        tenant_id: str,
        batch_id: str,
        *,
        limit: int = 100,
    ) -> dict[str, Any]:
        batch = await batches_repo.get_batch(session, tenant_id, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        records = await send_records_repo.list_batch_records(session, batch_id, limit=limit)
        total = await send_records_repo.count_batch_records(session, batch_id)
        return {
            "batch_id": batch_id,
            "emails": [send_record_summary(record) for record in records],
            "total": total,
        }


_orchestrator: BatchOrchestrator | None = None


def get_batch_orchestrator() -> BatchOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = BatchOrchestrator()
    return _orchestrator


def reset_batch_orchestrator() -> None:
    # Reset cached services for deterministic tests.
    global _orchestrator
    _orchestrator = None
