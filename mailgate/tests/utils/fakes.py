from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

from mailgate.services.dispatch import DispatchJobPayload


class StubCounterRedis:
    # In-memory stand-in for the quota counter store.

    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("counter store down")

    async def get(self, key: str) -> str | None:
        self._check()
        value = self.values.get(key)
        return str(value) if value is not None else None

    async def delete(self, key: str) -> int:
        self._check()
        return 1 if self.values.pop(key, None) is not None else 0

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> int:
        # Mirrors the quota release script: floor at zero and refresh the TTL on write.
        self._check()
        key, amount, ttl = keys_and_args
        current = self.values.get(key, 0)
        if current <= 0:
            return 0
        remaining = current - min(current, int(amount))
        self.values[key] = remaining
        self.ttls[key] = int(ttl)
        return remaining

    def pipeline(self, transaction: bool = True) -> "_StubPipeline":
        return _StubPipeline(self)


class _StubPipeline:
    def __init__(self, store: StubCounterRedis) -> None:
        self._store = store
        self._ops: list[tuple[str, str, int]] = []

    def incrby(self, key: str, amount: int) -> "_StubPipeline":
        self._ops.append(("incrby", key, amount))
        return self

    def expire(self, key: str, ttl: int) -> "_StubPipeline":
        self._ops.append(("expire", key, ttl))
        return self

    async def execute(self) -> list[Any]:
        self._store._check()
        results: list[Any] = []
        for op, key, amount in self._ops:
            if op == "incrby":
                self._store.values[key] = self._store.values.get(key, 0) + amount
                results.append(self._store.values[key])
            else:
                self._store.ttls[key] = amount
                results.append(True)
        return results


def redis_provider(store: StubCounterRedis):
    async def _provider() -> StubCounterRedis:
        return store

    return _provider


class FakeDispatchQueue:
    # Records enqueued payloads; individual calls can be made to fail.

    def __init__(self) -> None:
        self.jobs: list[DispatchJobPayload] = []
        self.calls = 0
        self.fail_all = False
        self.fail_on_calls: set[int] = set()
        # When set, enqueue parks until the event fires so callers overlap in the PENDING window.
        self.hold: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def enqueue(self, payload: DispatchJobPayload) -> str:
        self.calls += 1
        call = self.calls
        if self.hold is not None:
            self.entered.set()
            await self.hold.wait()
        if self.fail_all or call in self.fail_on_calls:
            raise ConnectionError("dispatch queue unavailable")
        self.jobs.append(payload)
        return payload.outbox_id


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)
