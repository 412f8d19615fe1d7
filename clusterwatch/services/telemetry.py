from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class TargetCallSample:
    ts: float
    target: str
    operation: str
    latency_ms: float
    success: bool


_target_samples: Deque[TargetCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_target_call(*, target: str, operation: str, latency_ms: float, success: bool) -> None:
    # Capture per-target latency so slow or flapping instances stand out.
    _target_samples.append(
        TargetCallSample(
            ts=time.time(),
            target=target,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def target_latency_by_target(window_s: int) -> dict[str, dict[str, float | int]]:
    # Aggregate p95/max latency and failure counts per target in the window.
    cutoff = time.time() - window_s
    latencies: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    for sample in _target_samples:
        if sample.ts < cutoff:
            continue
        latencies[sample.target].append(sample.latency_ms)
        if not sample.success:
            failures[sample.target] += 1
    result: dict[str, dict[str, float | int]] = {}
    for target, values in latencies.items():
        values.sort()
        p95_idx = max(0, math.ceil(0.95 * len(values)) - 1)
        result[target] = {
            "p95": values[p95_idx],
            "max": values[-1],
            "calls": len(values),
            "failures": failures[target],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset() -> None:
    _target_samples.clear()
    _counters.clear()
