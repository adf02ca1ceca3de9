from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for health reporting.
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for admission, fail-open and suspension visibility.
    _counters[name] += value


def p95_latency(window_s: int) -> float | None:
    cutoff = time.time() - window_s
    values = sorted(sample.latency_ms for sample in _request_samples if sample.ts >= cutoff)
    if not values:
        return None
    index = max(0, math.ceil(0.95 * len(values)) - 1)
    return values[index]


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Reset in-process samples for deterministic tests.
    _request_samples.clear()
    _counters.clear()
