from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from mailgate.apps.api.deps import dispatch_queue_depth
from mailgate.apps.api.response import success_response
from mailgate.services.telemetry import counters_snapshot, p95_latency


router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request, queue_depth: int | None = Depends(dispatch_queue_depth)) -> dict:
    # Report degraded rather than failing when the queue is unreachable.
    data = {
        "status": "ok" if queue_depth is not None else "degraded",
        "queue_depth": queue_depth,
        "p95_latency_ms": p95_latency(300),
        "counters": counters_snapshot(),
    }
    return success_response(request=request, data=data)
