from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture handshake and capability call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def external_call_stats(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate p95/max latency and failure counts per integration for the health endpoint.
    cutoff = time.time() - window_s
    latencies_by: dict[str, list[float]] = defaultdict(list)
    failures_by: dict[str, int] = defaultdict(int)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        latencies_by[sample.integration].append(sample.latency_ms)
        if not sample.success:
            failures_by[sample.integration] += 1
    result: dict[str, dict[str, float | int | None]] = {}
    for integration, latencies in latencies_by.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "calls": len(latencies),
            "failures": failures_by[integration],
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process samples between tests.
    _external_samples.clear()
    _counters.clear()
