from concurrent.futures import ThreadPoolExecutor

import pytest
from prometheus_client import REGISTRY

from radar_gateway.metrics import (
    MESSAGES_RECEIVED,
    TOOL_EXECUTION_DURATION,
    MetricsAggregator,
)


def test_counter_and_timing_stats(metrics):
    for _ in range(3):
        metrics.increment_counter(MESSAGES_RECEIVED)
    metrics.record_timing(TOOL_EXECUTION_DURATION, 100, {"toolName": "a", "success": "true"})
    metrics.record_timing(TOOL_EXECUTION_DURATION, 300, {"toolName": "b", "success": "false"})

    assert metrics.calculate_stats(MESSAGES_RECEIVED).count == 3

    stats = metrics.calculate_stats(TOOL_EXECUTION_DURATION)
    assert stats.to_dict() == {"count": 2, "sum": 400.0, "avg": 200.0, "min": 100.0, "max": 300.0}

    only_b = metrics.calculate_stats(TOOL_EXECUTION_DURATION, tags={"toolName": "b"})
    assert only_b.count == 1 and only_b.max == 300.0


def test_empty_series_has_zero_stats(metrics):
    assert metrics.calculate_stats("nothing").to_dict() == {"count": 0, "sum": 0.0, "avg": 0.0, "min": 0.0, "max": 0.0}


def test_window_and_retention(clock):
    agg = MetricsAggregator(retention_seconds=300, clock=clock, export=False)
    agg.increment_counter("errors")
    clock.advance(90)
    agg.increment_counter("errors")

    assert agg.calculate_stats("errors", 60).count == 1
    assert agg.calculate_stats("errors", 300).count == 2

    clock.advance(250)
    # Writing prunes samples past retention.
    agg.increment_counter("errors")
    assert len(agg.samples("errors", 10_000)) == 2


def test_record_never_raises(metrics, caplog):
    with caplog.at_level("ERROR", logger="radar_gateway.metrics"):
        metrics.record_metric("weird", "not-a-number")
    assert "Failed to record metric weird" in caplog.text
    assert metrics.calculate_stats("weird").count == 0
    assert "weird" not in metrics.series_names()


def test_snapshot_keys(metrics):
    metrics.increment_counter(MESSAGES_RECEIVED)
    snap = metrics.snapshot()
    assert snap == {
        "messages_1m": 1,
        "errors_5m": 0,
        "rate_limit_violations_1m": 0,
        "auth_failures_1m": 0,
        "tool_timeouts_5m": 0,
        "tool_executions_5m": 0,
    }
    assert metrics.series_names() == [MESSAGES_RECEIVED]


def test_prometheus_mirror(clock):
    def _value(name, labels):
        return REGISTRY.get_sample_value(name, labels) or 0.0

    before = _value("radar_metric_events_total", {"metric": "prom_sample"})
    hist_before = _value("radar_tool_duration_seconds_count", {"tool": "lookup", "success": "true"})

    agg = MetricsAggregator(clock=clock)
    agg.increment_counter("prom_sample")
    agg.record_timing(TOOL_EXECUTION_DURATION, 1500, {"toolName": "lookup", "success": "true"})

    assert _value("radar_metric_events_total", {"metric": "prom_sample"}) == pytest.approx(before + 1)
    assert _value("radar_tool_duration_seconds_count", {"tool": "lookup", "success": "true"}) == pytest.approx(
        hist_before + 1
    )


def test_concurrent_writes_keep_every_sample(metrics):
    def _bump(_):
        for _ in range(250):
            metrics.increment_counter("errors")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_bump, range(8)))

    assert metrics.calculate_stats("errors").count == 2000
