from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from mailgate.core.clock import next_utc_midnight, utc_date_key, utc_now
from mailgate.core.config import get_settings
from mailgate.domain.state import GateDecision
from mailgate.persistence.repos import tenants as tenants_repo
from mailgate.services.redis_store import get_counter_redis
from mailgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BLOCKED_QUOTA = "quota"
BLOCKED_SUSPENDED = "suspended"
BLOCKED_TENANT_NOT_FOUND = "tenant_not_found"

RedisProvider = Callable[[], Awaitable[Redis | None]]

# Give back up to ARGV[1] units without dropping below zero; the TTL is refreshed on write.
_RELEASE_LUA = """
local current = tonumber(redis.call("GET", KEYS[1]) or "0")
if current <= 0 then
  return 0
end
local remaining = current - math.min(current, tonumber(ARGV[1]))
redis.call("SET", KEYS[1], remaining, "EX", tonumber(ARGV[2]))
return remaining
"""


class CounterStoreUnavailable(RuntimeError):
    """Counter store could not be reached."""


@dataclass(frozen=True)
class QuotaResult:
    # Summarize the daily quota decision for admission and client visibility.
    allowed: bool
    current: int
    limit: int
    resets_at: datetime
    reason: str | None = None
    decision: GateDecision = GateDecision.ALLOWED
    blocked_by: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "remaining": max(self.limit - self.current, 0),
            "resets_at": self.resets_at.isoformat(),
            "decision": self.decision.value,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload


class QuotaCounter:
    def __init__(
        self,
        *,
        redis_provider: RedisProvider | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow store and time injection for outage and rollover tests.
        self._redis_provider = redis_provider or get_counter_redis
        self._time_provider = time_provider or utc_now

    def counter_key(self, tenant_id: str, now: datetime | None = None) -> str:
        prefix = get_settings().quota_redis_prefix
        return f"{prefix}:{tenant_id}:{utc_date_key(now or self._time_provider())}"

    async def _redis(self) -> Redis:
        redis = await self._redis_provider()
        if redis is None:
            raise CounterStoreUnavailable("counter store unavailable")
        return redis

    async def _read_current(self, key: str) -> int:
        redis = await self._redis()
        raw = await redis.get(key)
        return int(raw) if raw else 0

    async def check(self, session: AsyncSession, tenant_id: str) -> QuotaResult:
        settings = get_settings()
        now = self._time_provider()
        resets_at = next_utc_midnight(now)

        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            return QuotaResult(
                allowed=False,
                current=0,
                limit=0,
                resets_at=resets_at,
                reason="tenant not found",
                decision=GateDecision.DENIED,
                blocked_by=BLOCKED_TENANT_NOT_FOUND,
            )

        limit = int(tenant.daily_limit)
        key = self.counter_key(tenant_id, now)
        current: int | None = None
        failure: str | None = None
        try:
            current = await asyncio.wait_for(
                self._read_current(key), timeout=settings.quota_check_timeout_ms / 1000.0
            )
        except Exception as exc:  # noqa: BLE001 - availability wins over strict enforcement
            increment_counter("quota_check_fail_open_total")
            logger.error("quota_check_failed tenant_id=%s", tenant_id, exc_info=exc)
            failure = f"Quota check failed ({type(exc).__name__}), allowing send"

        if tenant.is_suspended:
            logger.warning("quota_check_tenant_suspended tenant_id=%s", tenant_id)
            return QuotaResult(
                allowed=False,
                current=current or 0,
                limit=limit,
                resets_at=resets_at,
                reason="suspended",
                decision=GateDecision.DENIED,
                blocked_by=BLOCKED_SUSPENDED,
            )

        if current is None:
            return QuotaResult(
                allowed=True,
                current=0,
                limit=limit or settings.quota_fail_open_limit,
                resets_at=resets_at,
                reason=failure,
                decision=GateDecision.ALLOWED_DEGRADED,
            )

        allowed = current < limit
        logger.debug(
            "quota_checked tenant_id=%s current=%s limit=%s allowed=%s",
            tenant_id,
            current,
            limit,
            allowed,
        )
        return QuotaResult(
            allowed=allowed,
            current=current,
            limit=limit,
            resets_at=resets_at,
            reason=None if allowed else "daily limit reached",
            decision=GateDecision.ALLOWED if allowed else GateDecision.DENIED,
            blocked_by=None if allowed else BLOCKED_QUOTA,
        )

    async def increment(self, tenant_id: str, n: int = 1, *, at: datetime | None = None) -> None:
        # Called only after a send is durably enqueued; undercounting beats blocking queued work.
        key = self.counter_key(tenant_id, at)
        ttl = get_settings().quota_key_ttl_s
        try:
            redis = await self._redis()
            pipe = redis.pipeline(transaction=True)
            pipe.incrby(key, n)
            pipe.expire(key, ttl)
            await pipe.execute()
        except Exception as exc:  # noqa: BLE001 - increment failures never fail the send
            increment_counter("quota_increment_failed_total")
            logger.error("quota_increment_failed tenant_id=%s count=%s", tenant_id, n, exc_info=exc)
            return
        logger.debug("quota_incremented tenant_id=%s count=%s key=%s", tenant_id, n, key)

    async def release(self, tenant_id: str, n: int, *, at: datetime | None = None) -> None:
        # Give back quota consumed by sends rolled back after enqueue, on the day they were counted.
        if n <= 0:
            return
        key = self.counter_key(tenant_id, at)
        ttl = get_settings().quota_key_ttl_s
        try:
            redis = await self._redis()
            remaining = await redis.eval(_RELEASE_LUA, 1, key, n, ttl)
        except Exception as exc:  # noqa: BLE001 - over-counting is the safe direction here
            logger.error("quota_release_failed tenant_id=%s count=%s", tenant_id, n, exc_info=exc)
            return
        logger.debug("quota_released tenant_id=%s count=%s key=%s remaining=%s", tenant_id, n, key, remaining)

    async def reset(self, tenant_id: str) -> None:
        # Administrative reset; surface failures to the operator.
        key = self.counter_key(tenant_id)
        redis = await self._redis()
        await redis.delete(key)
        logger.info("quota_reset tenant_id=%s key=%s", tenant_id, key)


_quota_counter: QuotaCounter | None = None


def get_quota_counter() -> QuotaCounter:
    # Cache the quota counter for reuse across requests.
    global _quota_counter
    if _quota_counter is None:
        _quota_counter = QuotaCounter()
    return _quota_counter


def reset_quota_counter() -> None:
    # Reset cached services for deterministic tests.
    global _quota_counter
    _quota_counter = None
