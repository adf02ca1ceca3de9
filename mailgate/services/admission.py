from __future__ import annotations

from datetime import datetime
import logging
import secrets
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.core.clock import utc_now
from mailgate.core.errors import (
    ContentRejectedError,
    EnqueueFailureError,
    IdempotencyConflictError,
    QuotaExceededError,
    TenantNotFoundError,
    TenantSuspendedError,
)
from mailgate.domain.messages import EmailMessage, parse_message, validate_idempotency_key
from mailgate.domain.state import SendStatus
from mailgate.persistence.repos import send_records as send_records_repo
from mailgate.persistence.repos import tenants as tenants_repo
from mailgate.services.content_gate import ContentGate, get_content_gate
from mailgate.services.dispatch import DispatchJobPayload, build_dispatch_payload, enqueue_dispatch_job
from mailgate.services.idempotency import (
    Acceptance,
    IdempotencyLedger,
    LedgerNew,
    LedgerReplay,
    get_idempotency_ledger,
)
from mailgate.services.quota import (
    BLOCKED_SUSPENDED,
    BLOCKED_TENANT_NOT_FOUND,
    QuotaCounter,
    QuotaResult,
    get_quota_counter,
)
from mailgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Enqueuer = Callable[[DispatchJobPayload], Awaitable[str]]


def generate_request_id() -> str:
    return f"req_{secrets.token_hex(16)}"


class AdmissionService:
    """Admit single sends: ledger, content gate, quota, persist, enqueue.

    Quota is incremented only once a job is on the dispatch queue, and a
    failed enqueue deletes the PENDING record (and any idempotency claim)
    before surfacing a retryable ``EnqueueFailureError``.
    """

    def __init__(
        self,
        *,
        ledger: IdempotencyLedger | None = None,
        content_gate: ContentGate | None = None,
        quota: QuotaCounter | None = None,
        enqueue: Enqueuer | None = None,
        time_provider: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._ledger = ledger or get_idempotency_ledger()
        self._content_gate = content_gate or get_content_gate()
        self._quota = quota or get_quota_counter()
        self._enqueue = enqueue or enqueue_dispatch_job
        self._time_provider = time_provider or utc_now
        self._id_factory = id_factory or (lambda: str(uuid4()))

    @property
    def quota(self) -> QuotaCounter:
        return self._quota

    async def submit(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        message: EmailMessage | dict[str, Any],
        idempotency_key: str | None = None,
        request_id: str | None = None,
    ) -> Acceptance:
        parsed = parse_message(message)
        key = validate_idempotency_key(idempotency_key) if idempotency_key is not None else None

        decision = await self._ledger.resolve(session, tenant_id=tenant_id, key=key, message=parsed)
        if isinstance(decision, LedgerReplay):
            increment_counter("admission_replayed_total")
            logger.info(
                "admission_replayed tenant_id=%s outbox_id=%s",
                tenant_id,
                decision.acceptance.outbox_id,
            )
            return decision.acceptance

        try:
            return await self.admit(
                session,
                tenant_id=tenant_id,
                message=parsed,
                request_id=request_id,
                claim=decision,
            )
        except IntegrityError:
            # A concurrent request with the same key committed first; answer with its outcome.
            await session.rollback()
            if key is None:
                raise
            retry = await self._ledger.resolve(session, tenant_id=tenant_id, key=key, message=parsed)
            if isinstance(retry, LedgerReplay):
                increment_counter("admission_replayed_total")
                return retry.acceptance
            raise IdempotencyConflictError(key)

    async def admit(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        message: EmailMessage,
        request_id: str | None = None,
        batch_id: str | None = None,
        claim: LedgerNew | None = None,
    ) -> Acceptance:
        # Shared per-message path; batches call this directly without idempotency.
        verdict = self._content_gate.evaluate(message)
        if not verdict.valid:
            increment_counter("admission_rejected_total.content")
            errors = verdict.errors or [
                f"Spam score {verdict.score} exceeds threshold {self._content_gate.threshold}"
            ]
            raise ContentRejectedError(errors, verdict.warnings, verdict.score)

        quota = await self._quota.check(session, tenant_id)
        if not quota.allowed:
            await self._raise_quota_denial(session, tenant_id, quota)

        record_id = self._id_factory()
        received_at = self._time_provider()
        resolved_request_id = request_id or generate_request_id()

        record = send_records_repo.build_send_record(
            record_id=record_id,
            tenant_id=tenant_id,
            message=message,
            request_id=resolved_request_id,
            batch_id=batch_id,
        )
        record.created_at = received_at
        session.add(record)
        if claim is not None:
            self._ledger.claim(session, tenant_id=tenant_id, decision=claim, send_record_id=record_id)
        await session.commit()

        payload = build_dispatch_payload(
            outbox_id=record_id,
            tenant_id=tenant_id,
            request_id=resolved_request_id,
            message=message,
            batch_id=batch_id,
        )
        try:
            job_id = await self._enqueue(payload)
        except Exception as exc:  # noqa: BLE001 - any queue failure triggers the compensating delete
            await self._rollback_pending(session, tenant_id=tenant_id, record_id=record_id, claim=claim)
            increment_counter("admission_enqueue_failed_total")
            logger.error(
                "admission_enqueue_failed tenant_id=%s outbox_id=%s request_id=%s",
                tenant_id,
                record_id,
                resolved_request_id,
                exc_info=exc,
            )
            raise EnqueueFailureError() from exc

        await send_records_repo.mark_enqueued(
            session, record_id, job_id=job_id, enqueued_at=self._time_provider()
        )
        await session.commit()
        await self._quota.increment(tenant_id, at=received_at)

        increment_counter("admission_accepted_total")
        logger.info(
            "admission_enqueued tenant_id=%s outbox_id=%s job_id=%s batch_id=%s",
            tenant_id,
            record_id,
            job_id,
            batch_id,
        )
        return Acceptance(
            outbox_id=record_id,
            job_id=job_id,
            request_id=resolved_request_id,
            status=SendStatus.ENQUEUED.value,
            received_at=received_at,
        )

    async def check_quota(self, session: AsyncSession, tenant_id: str) -> QuotaResult:
        # Read-only quota status for clients.
        return await self._quota.check(session, tenant_id)

    async def _raise_quota_denial(self, session: AsyncSession, tenant_id: str, quota: QuotaResult) -> None:
        if quota.blocked_by == BLOCKED_TENANT_NOT_FOUND:
            increment_counter("admission_rejected_total.tenant")
            raise TenantNotFoundError(tenant_id)
        if quota.blocked_by == BLOCKED_SUSPENDED:
            increment_counter("admission_rejected_total.suspended")
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            raise TenantSuspendedError(
                reason=tenant.suspension_reason if tenant else None,
                current=quota.current,
                limit=quota.limit,
                resets_at=quota.resets_at,
            )
        increment_counter("admission_rejected_total.quota")
        raise QuotaExceededError(current=quota.current, limit=quota.limit, resets_at=quota.resets_at)

    async def _rollback_pending(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        record_id: str,
        claim: LedgerNew | None,
    ) -> None:
        # No orphan PENDING rows survive a failed enqueue.
        try:
            await send_records_repo.delete_send_record(session, record_id)
            if claim is not None:
                await self._ledger.release(session, tenant_id=tenant_id, key=claim.key)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("admission_rollback_failed tenant_id=%s outbox_id=%s", tenant_id, record_id)


_admission_service: AdmissionService | None = None


def get_admission_service() -> AdmissionService:
    global _admission_service
    if _admission_service is None:
        _admission_service = AdmissionService()
    return _admission_service


def reset_admission_service() -> None:
    # Reset cached services for deterministic tests.
    global _admission_service
    _admission_service = None
