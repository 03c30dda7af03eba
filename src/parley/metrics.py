"""In-process counters, histograms and gauges."""

from __future__ import annotations

import math
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from parley.core.hooks import ChatCallbacks
from parley.types import ToolCallResult, Usage

MAX_HISTOGRAM_SAMPLES = 10_000
MAX_CONNECTION_EVENTS = 100

type ConnectionEventKind = Literal["connect", "disconnect", "error"]


def percentile(sorted_values: list[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    index = math.ceil(p / 100 * len(sorted_values)) - 1
    return sorted_values[max(0, index)]


@dataclass(frozen=True)
class ConnectionEvent:
    kind: ConnectionEventKind
    timestamp: str
    duration_ms: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class HistogramSummary:
    count: int
    p50: float
    p95: float
    p99: float


@dataclass(frozen=True)
class ToolBreakdown:
    name: str
    calls: int
    errors: int
    p50_ms: float
    p95_ms: float
    p99_ms: float


@dataclass(frozen=True)
class MetricsSnapshot:
    counters: dict[str, float]
    gauges: dict[str, float]
    token_usage: Usage
    connection_events: list[ConnectionEvent]
    tool_breakdown: list[ToolBreakdown]
    histograms: dict[str, HistogramSummary] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetricsCollector:
    """Aggregates tool latency, token usage and connection lifecycle events."""

    def __init__(self) -> None:
        self._counters: Counter[str] = Counter()
        self._histograms: dict[str, deque[float]] = {}
        self._gauges: dict[str, float] = {}
        self._usage = Usage()
        self._connection_events: deque[ConnectionEvent] = deque(maxlen=MAX_CONNECTION_EVENTS)

    def increment(self, name: str, delta: float = 1) -> None:
        self._counters[name] += delta

    def histogram(self, name: str, value: float) -> None:
        samples = self._histograms.get(name)
        if samples is None:
            samples = self._histograms[name] = deque(maxlen=MAX_HISTOGRAM_SAMPLES)
        samples.append(value)

    def gauge(self, name: str, value: float) -> None:
        self._gauges[name] = value

    def record_tool_call(self, name: str, duration_ms: float, is_error: bool) -> None:
        self.increment(f"tool.calls.{name}")
        if is_error:
            self.increment(f"tool.errors.{name}")
        self.histogram(f"tool.duration.{name}", duration_ms)

    def record_token_usage(self, usage: Usage) -> None:
        self._usage = Usage(
            input_tokens=self._usage.input_tokens + usage.input_tokens,
            output_tokens=self._usage.output_tokens + usage.output_tokens,
            cache_creation_input_tokens=self._usage.cache_creation_input_tokens + usage.cache_creation_input_tokens,
            cache_read_input_tokens=self._usage.cache_read_input_tokens + usage.cache_read_input_tokens,
        )

    def record_connection_event(
        self, kind: ConnectionEventKind, *, duration_ms: float | None = None, error: str | None = None
    ) -> None:
        self._connection_events.append(
            ConnectionEvent(kind, datetime.now(UTC).isoformat(), duration_ms=duration_ms, error=error)
        )

    def callbacks(self) -> ChatCallbacks:
        """Observers that feed this collector from an orchestrator."""

        def on_tool_call_end(result: ToolCallResult) -> None:
            self.record_tool_call(result.name, result.duration_ms, result.is_error)

        return ChatCallbacks(on_tool_call_end=on_tool_call_end, on_usage=self.record_token_usage)

    def snapshot(self) -> MetricsSnapshot:
        histograms = {name: self._summarize(samples) for name, samples in self._histograms.items()}

        breakdown: list[ToolBreakdown] = []
        for key, calls in self._counters.items():
            if not key.startswith("tool.calls."):
                continue
            name = key.removeprefix("tool.calls.")
            summary = histograms.get(f"tool.duration.{name}") or HistogramSummary(0, 0.0, 0.0, 0.0)
            breakdown.append(
                ToolBreakdown(
                    name=name,
                    calls=int(calls),
                    errors=int(self._counters.get(f"tool.errors.{name}", 0)),
                    p50_ms=summary.p50,
                    p95_ms=summary.p95,
                    p99_ms=summary.p99,
                )
            )
        breakdown.sort(key=lambda entry: entry.calls, reverse=True)

        return MetricsSnapshot(
            counters=dict(self._counters),
            gauges=dict(self._gauges),
            token_usage=self._usage,
            connection_events=list(self._connection_events),
            tool_breakdown=breakdown,
            histograms=histograms,
        )

    def reset(self) -> None:
        self._counters.clear()
        self._histograms.clear()
        self._gauges.clear()
        self._usage = Usage()
        self._connection_events.clear()

    @staticmethod
    def _summarize(samples: deque[float]) -> HistogramSummary:
        ordered = sorted(samples)
        return HistogramSummary(
            count=len(ordered),
            p50=percentile(ordered, 50),
            p95=percentile(ordered, 95),
            p99=percentile(ordered, 99),
        )
