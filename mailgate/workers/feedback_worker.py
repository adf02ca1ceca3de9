from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings
from pydantic import BaseModel

from mailgate.core.config import get_settings
from mailgate.core.logging import configure_logging
from mailgate.domain.state import DeliveryEventType
from mailgate.persistence.db import SessionLocal
from mailgate.services.outcomes import record_delivery_outcome
from mailgate.services.reputation import get_reputation_monitor


logger = logging.getLogger(__name__)


class DeliveryOutcomePayload(BaseModel):
    # Published by dispatchers and the provider feedback relay.
    send_record_id: str
    event_type: DeliveryEventType
    bounce_type: str | None = None
    complaint_feedback_type: str | None = None
    error: str | None = None


async def record_outcome(ctx, payload: dict) -> str:
    outcome = DeliveryOutcomePayload.model_validate(payload)
    async with SessionLocal() as session:
        event = await record_delivery_outcome(
            session,
            outcome.send_record_id,
            outcome.event_type,
            bounce_type=outcome.bounce_type,
            complaint_feedback_type=outcome.complaint_feedback_type,
            error=outcome.error,
        )
    return "recorded" if event is not None else "skipped"


async def monitor_reputation(ctx) -> dict[str, int]:
    # On-demand sweep, e.g. triggered by an operator.
    report = await get_reputation_monitor().monitor_all_tenants()
    return {"checked": report.checked, "suspended": report.suspended, "failed": report.failed}


async def _sweep_loop() -> None:
    settings = get_settings()
    interval_s = max(1, int(settings.reputation_sweep_interval_s))
    while True:
        try:
            await get_reputation_monitor().monitor_all_tenants()
        except Exception:  # noqa: BLE001 - keep the sweep alive while surfacing failures in worker logs.
            logger.exception("reputation_sweep_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    # Run the hourly reputation sweep alongside outcome ingestion.
    configure_logging()
    ctx["sweep_task"] = asyncio.create_task(_sweep_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("sweep_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.feedback_queue_name
    functions = [record_outcome, monitor_reputation]
    on_startup = _startup
    on_shutdown = _shutdown
