from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailgate.core.clock import utc_now
from mailgate.core.config import get_settings
from mailgate.core.errors import TenantNotFoundError
from mailgate.persistence.db import SessionLocal
from mailgate.persistence.repos import delivery_events as events_repo
from mailgate.persistence.repos import tenants as tenants_repo
from mailgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReputationRates:
    sent: int
    bounces: int
    complaints: int
    bounce_rate_pct: float
    complaint_rate_pct: float
    window_start: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "bounces": self.bounces,
            "complaints": self.complaints,
            "bounce_rate": round(self.bounce_rate_pct, 2),
            "complaint_rate": round(self.complaint_rate_pct, 2),
            "window_start": self.window_start.isoformat(),
        }


@dataclass(frozen=True)
class ReputationCheck:
    tenant_id: str
    rates: ReputationRates
    suspended: bool
    newly_suspended: bool = False
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = {"tenant_id": self.tenant_id, "suspended": self.suspended, **self.rates.as_dict()}
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass
class SweepReport:
    checked: int = 0
    suspended: int = 0
    failed: int = 0
    failed_tenants: list[str] = field(default_factory=list)


def rate_pct(count: int, sent: int) -> float:
    if sent <= 0:
        return 0.0
    return count / sent * 100


def suspension_reason(
    *,
    bounce_rate_pct: float,
    complaint_rate_pct: float,
    bounce_threshold: float,
    complaint_threshold: float,
) -> str | None:
    # Bounce takes precedence when both thresholds are crossed.
    if bounce_rate_pct > bounce_threshold:
        return f"High bounce rate: {bounce_rate_pct:.2f}% (threshold: {bounce_threshold:g}%)"
    if complaint_rate_pct > complaint_threshold:
        return f"High complaint rate: {complaint_rate_pct:.2f}% (threshold: {complaint_threshold:g}%)"
    return None


class ReputationMonitor:
    """Compute trailing bounce/complaint rates and suspend abusive tenants.

    Suspension is one-way: a recovered tenant stays suspended until an
    operator clears it.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or utc_now

    async def calculate_rates(self, session: AsyncSession, tenant_id: str) -> ReputationRates:
        window_start = self._time_provider() - timedelta(days=get_settings().reputation_window_days)
        sent = await events_repo.count_sent(session, tenant_id, since=window_start)
        bounces = await events_repo.count_permanent_bounces(session, tenant_id, since=window_start)
        complaints = await events_repo.count_complaints(session, tenant_id, since=window_start)
        return ReputationRates(
            sent=sent,
            bounces=bounces,
            complaints=complaints,
            bounce_rate_pct=rate_pct(bounces, sent),
            complaint_rate_pct=rate_pct(complaints, sent),
            window_start=window_start,
        )

    async def check_and_suspend(self, session: AsyncSession, tenant_id: str) -> ReputationCheck:
        settings = get_settings()
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)

        now = self._time_provider()
        rates = await self.calculate_rates(session, tenant_id)
        await tenants_repo.update_cached_metrics(
            session,
            tenant,
            bounce_rate_pct=rates.bounce_rate_pct,
            complaint_rate_pct=rates.complaint_rate_pct,
            updated_at=now,
        )

        reason = suspension_reason(
            bounce_rate_pct=rates.bounce_rate_pct,
            complaint_rate_pct=rates.complaint_rate_pct,
            bounce_threshold=settings.reputation_bounce_threshold_pct,
            complaint_threshold=settings.reputation_complaint_threshold_pct,
        )
        newly_suspended = False
        if reason is not None:
            newly_suspended = await tenants_repo.suspend(session, tenant, reason=reason, suspended_at=now)
        await session.commit()

        if newly_suspended:
            increment_counter("tenants_suspended_total")
            logger.warning("tenant_suspended tenant_id=%s reason=%s", tenant_id, reason)
        else:
            logger.debug(
                "reputation_checked tenant_id=%s bounce_rate=%.2f complaint_rate=%.2f",
                tenant_id,
                rates.bounce_rate_pct,
                rates.complaint_rate_pct,
            )
        return ReputationCheck(
            tenant_id=tenant_id,
            rates=rates,
            suspended=bool(tenant.is_suspended),
            newly_suspended=newly_suspended,
            reason=tenant.suspension_reason,
        )

    async def monitor_all_tenants(self) -> SweepReport:
        timeout_s = get_settings().reputation_tenant_timeout_s
        async with self._session_factory() as session:
            tenant_ids = await tenants_repo.list_monitorable_tenant_ids(session)

        report = SweepReport()
        for tenant_id in tenant_ids:
            # Each tenant gets its own session so one failure cannot poison the rest.
            try:
                async with self._session_factory() as session:
                    result = await asyncio.wait_for(
                        self.check_and_suspend(session, tenant_id), timeout=timeout_s
                    )
            except Exception as exc:  # noqa: BLE001 - sweep continues past per-tenant failures
                report.failed += 1
                report.failed_tenants.append(tenant_id)
                increment_counter("reputation_check_failed_total")
                logger.error("reputation_check_failed tenant_id=%s", tenant_id, exc_info=exc)
                continue
            report.checked += 1
            if result.newly_suspended:
                report.suspended += 1

        logger.info(
            "reputation_sweep_finished checked=%s suspended=%s failed=%s",
            report.checked,
            report.suspended,
            report.failed,
        )
        return report


_monitor: ReputationMonitor | None = None


def get_reputation_monitor() -> ReputationMonitor:
    global _monitor
    if _monitor is None:
        _monitor = ReputationMonitor()
    return _monitor


def reset_reputation_monitor() -> None:
    # Reset cached services for deterministic tests.
    global _monitor
    _monitor = None
