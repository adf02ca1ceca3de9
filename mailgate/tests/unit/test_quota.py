from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from mailgate.core.config import get_settings
from mailgate.domain.state import GateDecision
from mailgate.services.quota import (
    BLOCKED_QUOTA,
    BLOCKED_SUSPENDED,
    BLOCKED_TENANT_NOT_FOUND,
    QuotaCounter,
)
from mailgate.tests.utils.data import create_tenant
from mailgate.tests.utils.fakes import redis_provider


@pytest.mark.asyncio
async def test_quota_allows_until_limit_then_denies(session, quota_counter, counter_redis) -> None:
    tenant = await create_tenant(session, daily_limit=1000)
    key = quota_counter.counter_key(tenant.id)

    counter_redis.values[key] = 999
    result = await quota_counter.check(session, tenant.id)
    assert result.allowed is True
    assert result.current == 999
    assert result.decision == GateDecision.ALLOWED

    await quota_counter.increment(tenant.id)
    result = await quota_counter.check(session, tenant.id)
    assert result.allowed is False
    assert result.current == 1000
    assert result.limit == 1000
    assert result.blocked_by == BLOCKED_QUOTA


@pytest.mark.asyncio
async def test_counter_key_and_reset_time_follow_utc_day(session, quota_counter, clock) -> None:
    tenant = await create_tenant(session, tenant_id="tenant-a")
    assert quota_counter.counter_key(tenant.id) == "quota:tenant:tenant-a:2026-03-10"

    result = await quota_counter.check(session, tenant.id)
    assert result.resets_at == datetime(2026, 3, 11, tzinfo=timezone.utc)

    clock.advance(hours=12)
    assert quota_counter.counter_key(tenant.id) == "quota:tenant:tenant-a:2026-03-11"


@pytest.mark.asyncio
async def test_increment_sets_ttl(session, quota_counter, counter_redis) -> None:
    tenant = await create_tenant(session)
    await quota_counter.increment(tenant.id, 3)
    key = quota_counter.counter_key(tenant.id)
    assert counter_redis.values[key] == 3
    assert counter_redis.ttls[key] == 86400


@pytest.mark.asyncio
async def test_missing_tenant_is_denied(session, quota_counter) -> None:
    result = await quota_counter.check(session, "missing-tenant")
    assert result.allowed is False
    assert result.reason == "tenant not found"
    assert result.blocked_by == BLOCKED_TENANT_NOT_FOUND


@pytest.mark.asyncio
async def test_suspended_tenant_is_denied(session, quota_counter) -> None:
    tenant = await create_tenant(session, is_suspended=True, suspension_reason="manual")
    result = await quota_counter.check(session, tenant.id)
    assert result.allowed is False
    assert result.reason == "suspended"
    assert result.blocked_by == BLOCKED_SUSPENDED


@pytest.mark.asyncio
async def test_store_outage_fails_open(session, quota_counter, counter_redis) -> None:
    tenant = await create_tenant(session, daily_limit=10)
    counter_redis.fail = True

    result = await quota_counter.check(session, tenant.id)
    assert result.allowed is True
    assert result.decision == GateDecision.ALLOWED_DEGRADED
    assert result.reason and result.reason.startswith("Quota check failed")

    # Increment failures are swallowed so queued work is never failed after the fact.
    await quota_counter.increment(tenant.id)


@pytest.mark.asyncio
async def test_slow_store_fails_open(session, clock, monkeypatch) -> None:
    monkeypatch.setenv("QUOTA_CHECK_TIMEOUT_MS", "10")
    get_settings.cache_clear()
    tenant = await create_tenant(session)

    class _SlowRedis:
        async def get(self, key):
            await asyncio.sleep(1)
            return "0"

    counter = QuotaCounter(redis_provider=redis_provider(_SlowRedis()), time_provider=clock)
    result = await counter.check(session, tenant.id)
    assert result.allowed is True
    assert result.decision == GateDecision.ALLOWED_DEGRADED


@pytest.mark.asyncio
async def test_unavailable_store_fails_open(session, clock) -> None:
    tenant = await create_tenant(session)

    async def _no_redis():
        return None

    counter = QuotaCounter(redis_provider=_no_redis, time_provider=clock)
    result = await counter.check(session, tenant.id)
    assert result.allowed is True
    assert result.decision == GateDecision.ALLOWED_DEGRADED


@pytest.mark.asyncio
async def test_release_and_reset(session, quota_counter, counter_redis) -> None:
    tenant = await create_tenant(session)
    await quota_counter.increment(tenant.id, 5)
    await quota_counter.release(tenant.id, 2)
    key = quota_counter.counter_key(tenant.id)
    assert counter_redis.values[key] == 3

    await quota_counter.reset(tenant.id)
    assert key not in counter_redis.values

    counter_redis.fail = True
    with pytest.raises(ConnectionError):
        await quota_counter.reset(tenant.id)


@pytest.mark.asyncio
async def test_release_never_goes_below_zero(session, quota_counter, counter_redis) -> None:
    tenant = await create_tenant(session)
    key = quota_counter.counter_key(tenant.id)

    await quota_counter.increment(tenant.id, 2)
    await quota_counter.release(tenant.id, 5)
    assert counter_redis.values[key] == 0

    # An already-empty counter stays at zero.
    await quota_counter.release(tenant.id, 3)
    assert counter_redis.values[key] == 0

    result = await quota_counter.check(session, tenant.id)
    assert result.current == 0
    assert result.allowed is True


@pytest.mark.asyncio
async def test_release_targets_the_admission_day(session, quota_counter, counter_redis, clock) -> None:
    tenant = await create_tenant(session)
    clock.now = datetime(2026, 3, 10, 23, 59, 50, tzinfo=timezone.utc)
    admitted_at = clock.now
    await quota_counter.increment(tenant.id, 4, at=admitted_at)

    # The rollback lands after midnight.
    clock.advance(seconds=20)
    await quota_counter.increment(tenant.id, 1)
    await quota_counter.release(tenant.id, 4, at=admitted_at)

    assert counter_redis.values[quota_counter.counter_key(tenant.id, admitted_at)] == 0
    assert counter_redis.values[quota_counter.counter_key(tenant.id)] == 1


@pytest.mark.asyncio
async def test_release_failure_is_swallowed(session, quota_counter, counter_redis) -> None:
    tenant = await create_tenant(session)
    await quota_counter.increment(tenant.id, 2)
    counter_redis.fail = True

    await quota_counter.release(tenant.id, 1)

    counter_redis.fail = False
    assert counter_redis.values[quota_counter.counter_key(tenant.id)] == 2
