from __future__ import annotations

from leadpipe.services.metrics import MetricsCollector, percentile


def test_percentile_uses_floor_rank() -> None:
    values = [float(value) for value in range(1, 11)]
    assert percentile(values, 50) == 5.0
    assert percentile(values, 95) == 9.0
    assert percentile([], 95) == 0.0


def test_collectors_are_independent() -> None:
    first = MetricsCollector()
    second = MetricsCollector()
    first.increment("webhook_deliveries_total", result="delivered")

    assert first.counter("webhook_deliveries_total", result="delivered") == 1
    assert second.counter("webhook_deliveries_total", result="delivered") == 0


def test_snapshot_reports_counters_and_duration_summaries() -> None:
    metrics = MetricsCollector(max_samples=3)
    metrics.increment("webhook_deliveries_total", result="delivered")
    metrics.increment("webhook_deliveries_total", 2, result="failed")
    for value in (10.0, 20.0, 30.0, 40.0):
        metrics.observe("webhook_delivery_duration_ms", value)

    snapshot = metrics.snapshot()

    counters = {(item["name"], item["labels"].get("result")): item["value"] for item in snapshot["counters"]}
    assert counters == {
        ("webhook_deliveries_total", "delivered"): 1,
        ("webhook_deliveries_total", "failed"): 2,
    }
    assert metrics.counter_total("webhook_deliveries_total") == 3
    (histogram,) = snapshot["histograms"]
    assert histogram["count"] == 4
    assert histogram["p50"] == 30.0
    assert histogram["max"] == 40.0
    assert metrics.samples("webhook_delivery_duration_ms") == [20.0, 30.0, 40.0]
