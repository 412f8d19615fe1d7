from __future__ import annotations

from clusterwatch.services import telemetry


def test_target_latency_aggregates_per_target() -> None:
    for latency in (5.0, 10.0, 200.0):
        telemetry.record_target_call(target="a:5432/app", operation="connect", latency_ms=latency, success=True)
    telemetry.record_target_call(target="b:5432/app", operation="connect", latency_ms=3000.0, success=False)

    stats = telemetry.target_latency_by_target(window_s=60)

    assert stats["a:5432/app"] == {"p95": 200.0, "max": 200.0, "calls": 3, "failures": 0}
    assert stats["b:5432/app"]["failures"] == 1


def test_counters_accumulate_until_reset() -> None:
    telemetry.increment_counter("monitoring_cycles_total")
    telemetry.increment_counter("monitoring_cycles_total", 2)
    assert telemetry.counters_snapshot() == {"monitoring_cycles_total": 3}
    telemetry.reset()
    assert telemetry.counters_snapshot() == {}
