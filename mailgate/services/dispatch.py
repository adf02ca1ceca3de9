from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel, Field

from mailgate.core.clock import utc_now
from mailgate.core.config import get_settings
from mailgate.domain.messages import EmailMessage


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class DispatchJobPayload(BaseModel):
    # Match the published job schema for API-to-dispatcher handoff.
    outbox_id: str
    tenant_id: str
    request_id: str
    batch_id: str | None = None
    to: str
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str
    # Dispatchers load the body from the send record instead of the queue.
    html_ref: str
    reply_to: str | None = None
    headers: dict[str, str] | None = None
    tags: list[str] = Field(default_factory=list)
    recipient: dict[str, Any] | None = None
    attempt: int = 1
    enqueued_at: str


def build_dispatch_payload(
    *,
    outbox_id: str,
    tenant_id: str,
    request_id: str,
    message: EmailMessage,
    batch_id: str | None = None,
) -> DispatchJobPayload:
    recipient = message.recipient.model_dump(exclude_none=True) if message.recipient else {}
    recipient.setdefault("email", message.to)
    return DispatchJobPayload(
        outbox_id=outbox_id,
        tenant_id=tenant_id,
        request_id=request_id,
        batch_id=batch_id,
        to=message.to,
        cc=list(message.cc),
        bcc=list(message.bcc),
        subject=message.subject,
        html_ref=outbox_id,
        reply_to=message.reply_to,
        headers=message.headers,
        tags=list(message.tags),
        recipient=recipient,
        enqueued_at=utc_now().isoformat(),
    )


async def get_redis_pool() -> ArqRedis:
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.dispatch_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to health endpoints.
    settings = get_settings()
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(settings.dispatch_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - health endpoints handle degraded Redis
        return None


async def enqueue_dispatch_job(payload: DispatchJobPayload) -> str:
    # Reuse the outbox id as job id so a record maps to exactly one queued job.
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        settings.dispatch_job_name,
        payload.model_dump(),
        _job_id=payload.outbox_id,
        _queue_name=settings.dispatch_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else payload.outbox_id
