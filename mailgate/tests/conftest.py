from __future__ import annotations

from datetime import datetime, timezone
import os

# Point module-level engines at SQLite before mailgate.persistence.db is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from mailgate.core.config import get_settings
from mailgate.persistence.db import create_all
from mailgate.services.admission import AdmissionService, reset_admission_service
from mailgate.services.batches import BatchOrchestrator, reset_batch_orchestrator
from mailgate.services.content_gate import ContentGate, reset_content_gate
from mailgate.services.idempotency import IdempotencyLedger, reset_idempotency_ledger
from mailgate.services.quota import QuotaCounter, reset_quota_counter
from mailgate.services.reputation import ReputationMonitor, reset_reputation_monitor
from mailgate.services.telemetry import reset_telemetry
from mailgate.tests.utils.fakes import FakeDispatchQueue, FrozenClock, StubCounterRedis, redis_provider


@pytest.fixture(autouse=True)
def reset_cached_state() -> None:
    # Keep settings and service singletons isolated between tests.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_admission_service()
    reset_batch_orchestrator()
    reset_content_gate()
    reset_idempotency_ledger()
    reset_quota_counter()
    reset_reputation_monitor()


@pytest.fixture
async def engine():
    # StaticPool shares the single in-memory database across sessions.
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_all(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def file_session_factory(tmp_path):
    # One connection per session so concurrent requests get real transaction isolation.
    file_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mailgate.db'}", poolclass=NullPool)
    await create_all(file_engine)
    yield async_sessionmaker(file_engine, expire_on_commit=False)
    await file_engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def counter_redis() -> StubCounterRedis:
    return StubCounterRedis()


@pytest.fixture
def dispatch_queue() -> FakeDispatchQueue:
    return FakeDispatchQueue()


@pytest.fixture
def quota_counter(counter_redis, clock) -> QuotaCounter:
    return QuotaCounter(redis_provider=redis_provider(counter_redis), time_provider=clock)


@pytest.fixture
def ledger(clock) -> IdempotencyLedger:
    return IdempotencyLedger(time_provider=clock)


@pytest.fixture
def admission(ledger, quota_counter, dispatch_queue, clock) -> AdmissionService:
    return AdmissionService(
        ledger=ledger,
        content_gate=ContentGate(),
        quota=quota_counter,
        enqueue=dispatch_queue.enqueue,
        time_provider=clock,
    )


@pytest.fixture
def orchestrator(admission, session_factory, clock) -> BatchOrchestrator:
    return BatchOrchestrator(admission=admission, session_factory=session_factory, time_provider=clock)


@pytest.fixture
def reputation_monitor(session_factory, clock) -> ReputationMonitor:
    return ReputationMonitor(session_factory=session_factory, time_provider=clock)
