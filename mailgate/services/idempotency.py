from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import json
import logging
import time
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.core.clock import as_utc, utc_now
from mailgate.core.config import get_settings
from mailgate.core.errors import IdempotencyConflictError, IdempotencyInProgressError
from mailgate.domain.messages import EmailMessage
from mailgate.domain.models import SendRecord
from mailgate.domain.state import SendStatus
from mailgate.persistence.repos import idempotency as idempotency_repo
from mailgate.persistence.repos import send_records as send_records_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Acceptance:
    # Response returned to callers for a single admitted send.
    outbox_id: str
    job_id: str
    request_id: str
    status: str
    received_at: datetime
    replayed: bool = False

    def as_dict(self) -> dict[str, str]:
        return {
            "outbox_id": self.outbox_id,
            "job_id": self.job_id,
            "request_id": self.request_id,
            "status": self.status,
            "received_at": self.received_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerNew:
    key: str | None
    fingerprint: str


@dataclass(frozen=True)
class LedgerReplay:
    acceptance: Acceptance


def normalize_payload(message: EmailMessage) -> dict:
    # Unordered lists are sorted so logically identical requests hash the same.
    payload = message.model_dump(mode="json", exclude_none=True)
    for field in ("cc", "bcc", "tags"):
        payload[field] = sorted(payload.get(field) or [])
    return payload


def fingerprint(message: EmailMessage) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(normalize_payload(message), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def acceptance_from_record(record: SendRecord, *, replayed: bool) -> Acceptance:
    return Acceptance(
        outbox_id=record.id,
        job_id=record.job_id or record.id,
        request_id=record.request_id or "",
        status=record.status,
        received_at=as_utc(record.created_at),
        replayed=replayed,
    )


class IdempotencyLedger:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or utc_now

    async def resolve(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        key: str | None,
        message: EmailMessage,
    ) -> LedgerNew | LedgerReplay:
        request_hash = fingerprint(message)
        if key is None:
            return LedgerNew(key=None, fingerprint=request_hash)

        record = await idempotency_repo.get_record(session, tenant_id, key)
        if record is None:
            return LedgerNew(key=key, fingerprint=request_hash)

        if as_utc(record.expires_at) <= self._time_provider():
            # Lazily purge expired keys so the caller proceeds as new.
            await idempotency_repo.delete_record(session, tenant_id, key)
            await session.commit()
            logger.info("idempotency_key_expired tenant_id=%s", tenant_id)
            return LedgerNew(key=key, fingerprint=request_hash)

        if record.request_hash != request_hash:
            raise IdempotencyConflictError(key)

        outbox = await self._await_settled(
            session, tenant_id=tenant_id, key=key, record_id=record.send_record_id
        )
        if outbox is None:
            # The original send was rolled back; free the key for a fresh attempt.
            await idempotency_repo.delete_record(session, tenant_id, key)
            await session.commit()
            return LedgerNew(key=key, fingerprint=request_hash)
        return LedgerReplay(acceptance=acceptance_from_record(outbox, replayed=True))

    async def _await_settled(
        self, session: AsyncSession, *, tenant_id: str, key: str, record_id: str
    ) -> SendRecord | None:
        # A PENDING record means the original is still enqueueing; its final outcome is what replays see.
        settings = get_settings()
        deadline = time.monotonic() + settings.idempotency_pending_wait_ms / 1000.0
        while True:
            outbox = await send_records_repo.get_send_record(session, tenant_id, record_id)
            if outbox is None or outbox.status != SendStatus.PENDING.value:
                return outbox
            if time.monotonic() >= deadline:
                logger.warning("idempotency_replay_pending tenant_id=%s outbox_id=%s", tenant_id, record_id)
                raise IdempotencyInProgressError(key)
            await asyncio.sleep(settings.idempotency_pending_poll_ms / 1000.0)

    def claim(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        decision: LedgerNew,
        send_record_id: str,
    ) -> None:
        # Stage the ledger row in the same transaction as the send record.
        if decision.key is None:
            return
        ttl_hours = get_settings().idempotency_ttl_hours
        idempotency_repo.add_record(
            session,
            tenant_id=tenant_id,
            key=decision.key,
            request_hash=decision.fingerprint,
            send_record_id=send_record_id,
            expires_at=self._time_provider() + timedelta(hours=ttl_hours),
        )

    async def release(self, session: AsyncSession, *, tenant_id: str, key: str | None) -> None:
        if key is None:
            return
        await idempotency_repo.delete_record(session, tenant_id, key)


_ledger: IdempotencyLedger | None = None


def get_idempotency_ledger() -> IdempotencyLedger:
    global _ledger
    if _ledger is None:
        _ledger = IdempotencyLedger()
    return _ledger


def reset_idempotency_ledger() -> None:
    # Reset cached services for deterministic tests.
    global _ledger
    _ledger = None
