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


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for availability reporting.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for lifecycle dashboards.
    _counters[name] += value


def _percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    index = max(0, math.ceil((pct / 100.0) * len(ordered)) - 1)
    return ordered[index]


def availability(window_s: int) -> float | None:
    # Calculate availability as % of non-5xx requests over the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((len(samples) - failures) / len(samples)) * 100.0


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Summarize external call latency and failure counts per integration.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        summary[integration] = {
            "count": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95_ms": _percentile([sample.latency_ms for sample in samples], 95),
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process samples between tests.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
