from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    # Use UTC everywhere so quota days and TTLs share one boundary.
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read; treat naive values as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    # Daily quotas reset at the next UTC day boundary.
    now = as_utc(now)
    today = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return today + timedelta(days=1)


def utc_date_key(now: datetime) -> str:
    return as_utc(now).strftime("%Y-%m-%d")
