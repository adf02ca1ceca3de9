from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from mailgate.apps.api.errors import (
    http_exception_handler,
    mailgate_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from mailgate.apps.api.response import API_VERSION
from mailgate.apps.api.routes.batches import router as batches_router
from mailgate.apps.api.routes.email import router as email_router
from mailgate.apps.api.routes.health import router as health_router
from mailgate.apps.api.routes.quota import router as quota_router
from mailgate.apps.api.routes.reputation import router as reputation_router
from mailgate.core.config import get_settings
from mailgate.core.errors import MailgateError
from mailgate.core.logging import configure_logging
from mailgate.persistence.guards import TenantPredicateError
from mailgate.services.batches import get_batch_orchestrator
from mailgate.services.redis_store import close_counter_redis
from mailgate.services.telemetry import record_request


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Let in-flight batches finish before the process exits.
    await get_batch_orchestrator().drain()
    await close_counter_redis()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=f"{get_settings().app_name} API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(MailgateError, mailgate_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    prefix = f"/{API_VERSION}"
    app.include_router(email_router, prefix=prefix)
    app.include_router(batches_router, prefix=prefix)
    app.include_router(quota_router, prefix=prefix)
    app.include_router(reputation_router, prefix=prefix)
    app.include_router(health_router, prefix=prefix)
    return app


app = create_app()
