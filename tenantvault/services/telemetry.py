from __future__ import annotations

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
class JobSample:
    ts: float
    job_type: str
    outcome: str
    duration_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_job_samples: Deque[JobSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for the health endpoint.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_job(*, job_type: str, outcome: str, duration_ms: float) -> None:
    # Capture job outcomes so operators can spot failing backup types.
    _job_samples.append(
        JobSample(ts=time.time(), job_type=job_type, outcome=outcome, duration_ms=duration_ms)
    )
    increment_counter(f"jobs_{outcome}_total")


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def _percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, int(round(pct / 100.0 * (len(ordered) - 1)))))
    return ordered[index]


def p95_request_latency(window_s: int) -> float | None:
    cutoff = time.time() - window_s
    return _percentile([s.latency_ms for s in _request_samples if s.ts >= cutoff], 95)


def job_duration_by_type(window_s: int) -> dict[str, dict[str, float | int | None]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[JobSample]] = defaultdict(list)
    for sample in _job_samples:
        if sample.ts >= cutoff:
            grouped[sample.job_type].append(sample)
    return {
        job_type: {
            "count": len(samples),
            "failed": sum(1 for s in samples if s.outcome == "failed"),
            "p95_ms": _percentile([s.duration_ms for s in samples], 95),
        }
        for job_type, samples in grouped.items()
    }


def reset_telemetry() -> None:
    _request_samples.clear()
    _job_samples.clear()
    _counters.clear()
