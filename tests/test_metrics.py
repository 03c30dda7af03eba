from __future__ import annotations

import pytest

from parley.metrics import MAX_CONNECTION_EVENTS, MAX_HISTOGRAM_SAMPLES, MetricsCollector, percentile
from parley.types import ToolCallResult, Usage


def test_percentile_uses_nearest_rank() -> None:
    values = [float(value) for value in range(1, 101)]

    assert percentile(values, 50) == 50.0
    assert percentile(values, 95) == 95.0
    assert percentile(values, 99) == 99.0
    assert percentile([], 50) == 0.0


def test_tool_breakdown_is_sorted_by_calls() -> None:
    metrics = MetricsCollector()
    for duration in (10.0, 20.0, 30.0):
        metrics.record_tool_call("list_orders", duration, is_error=False)
    metrics.record_tool_call("get_order", 5.0, is_error=True)

    breakdown = metrics.snapshot().tool_breakdown

    assert [(entry.name, entry.calls, entry.errors) for entry in breakdown] == [
        ("list_orders", 3, 0),
        ("get_order", 1, 1),
    ]
    assert breakdown[0].p50_ms == 20.0
    assert breakdown[0].p99_ms == 30.0


def test_histograms_and_connection_events_are_bounded() -> None:
    metrics = MetricsCollector()
    for value in range(MAX_HISTOGRAM_SAMPLES + 10):
        metrics.histogram("latency", float(value))
    for _ in range(MAX_CONNECTION_EVENTS + 5):
        metrics.record_connection_event("connect", duration_ms=1.0)

    snapshot = metrics.snapshot()

    assert snapshot.histograms["latency"].count == MAX_HISTOGRAM_SAMPLES
    assert len(snapshot.connection_events) == MAX_CONNECTION_EVENTS


@pytest.mark.asyncio
async def test_callbacks_feed_the_collector() -> None:
    metrics = MetricsCollector()
    callbacks = metrics.callbacks()

    await callbacks.usage(Usage(input_tokens=100, output_tokens=20, cache_read_input_tokens=50))
    await callbacks.usage(Usage(input_tokens=10, output_tokens=2))
    await callbacks.tool_call_end(ToolCallResult("list_orders", {}, "[]", False, 4.0))

    snapshot = metrics.snapshot()
    assert snapshot.token_usage == Usage(input_tokens=110, output_tokens=22, cache_read_input_tokens=50)
    assert snapshot.counters["tool.calls.list_orders"] == 1


def test_snapshot_serializes_and_reset_clears() -> None:
    metrics = MetricsCollector()
    metrics.increment("gateway.messages.dropped")
    metrics.gauge("gateway.sessions.active", 3)
    metrics.record_connection_event("error", error="connect timeout")

    payload = metrics.snapshot().to_dict()
    assert payload["counters"] == {"gateway.messages.dropped": 1}
    assert payload["gauges"] == {"gateway.sessions.active": 3}
    assert payload["connection_events"][0]["error"] == "connect timeout"

    metrics.reset()
    empty = metrics.snapshot()
    assert empty.counters == {}
    assert empty.connection_events == []
    assert empty.token_usage == Usage()
