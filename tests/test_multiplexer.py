from __future__ import annotations

import asyncio
from typing import Any

import pytest

from parley.errors import QueueFullError, SessionCapacityError
from parley.metrics import MetricsCollector
from parley.session.multiplexer import SWEEP_JOB_ID, SessionHandle, SessionMultiplexer


class DummyOrchestrator:
    def __init__(self, identity: str) -> None:
        self.identity = identity
        self.channel = None
        self.disconnects = 0

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        self.disconnects += 1


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class Recorder:
    """Message handler that can be held open to simulate a slow model."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, Any]] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.gate = asyncio.Event()
        self.gate.set()

    async def __call__(self, handle: SessionHandle, message: Any) -> None:
        identity = handle.identity
        self.active[identity] = self.active.get(identity, 0) + 1
        self.max_active[identity] = max(self.max_active.get(identity, 0), self.active[identity])
        self.events.append(("start", identity, message))
        await self.gate.wait()
        await asyncio.sleep(0)
        self.events.append(("end", identity, message))
        self.active[identity] -= 1


def _multiplexer(handler: Recorder, **kwargs: Any) -> SessionMultiplexer:
    kwargs.setdefault("clock", FakeClock())
    return SessionMultiplexer(DummyOrchestrator, handler, **kwargs)  # type: ignore[arg-type]


async def _drain(multiplexer: SessionMultiplexer) -> None:
    workers = [multiplexer.get(identity).worker for identity in multiplexer.identities]
    await asyncio.gather(*(worker for worker in workers if worker is not None))


@pytest.mark.asyncio
async def test_messages_for_one_identity_run_in_order_one_at_a_time() -> None:
    handler = Recorder()
    multiplexer = _multiplexer(handler)

    for index in range(3):
        await multiplexer.enqueue("telegram:1", index)
    await _drain(multiplexer)

    assert [event for event in handler.events if event[0] == "start"] == [
        ("start", "telegram:1", 0),
        ("start", "telegram:1", 1),
        ("start", "telegram:1", 2),
    ]
    assert handler.events[:2] == [("start", "telegram:1", 0), ("end", "telegram:1", 0)]
    assert handler.max_active["telegram:1"] == 1
    assert multiplexer.get("telegram:1").idle


@pytest.mark.asyncio
async def test_identities_proceed_in_parallel() -> None:
    handler = Recorder()
    handler.gate.clear()
    multiplexer = _multiplexer(handler)

    await multiplexer.enqueue("telegram:1", "a")
    await multiplexer.enqueue("telegram:2", "b")
    await asyncio.sleep(0)

    started = {identity for kind, identity, _ in handler.events if kind == "start"}
    assert started == {"telegram:1", "telegram:2"}

    handler.gate.set()
    await _drain(multiplexer)


@pytest.mark.asyncio
async def test_full_queue_drops_and_counts() -> None:
    handler = Recorder()
    handler.gate.clear()
    metrics = MetricsCollector()
    multiplexer = _multiplexer(handler, max_queue=2, metrics=metrics)

    await multiplexer.enqueue("telegram:1", "first")
    await asyncio.sleep(0)
    await multiplexer.enqueue("telegram:1", "second")
    await multiplexer.enqueue("telegram:1", "third")
    with pytest.raises(QueueFullError) as exc_info:
        await multiplexer.enqueue("telegram:1", "fourth")

    assert exc_info.value.dropped == 1
    assert multiplexer.get("telegram:1").dropped == 1
    assert metrics.snapshot().counters["gateway.messages.dropped"] == 1

    handler.gate.set()
    await _drain(multiplexer)
    processed = [message for kind, _, message in handler.events if kind == "end"]
    assert processed == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_capacity_evicts_least_recent_idle_session() -> None:
    clock = FakeClock()
    multiplexer = _multiplexer(Recorder(), max_sessions=2, clock=clock)

    oldest = await multiplexer.get_or_create("a")
    clock.now += 1
    await multiplexer.get_or_create("b")
    clock.now += 1
    await multiplexer.get_or_create("c")

    assert multiplexer.identities == ["b", "c"]
    assert oldest.orchestrator.disconnects == 1


@pytest.mark.asyncio
async def test_capacity_refuses_when_every_session_is_busy() -> None:
    handler = Recorder()
    handler.gate.clear()
    metrics = MetricsCollector()
    multiplexer = _multiplexer(handler, max_sessions=1, metrics=metrics)

    await multiplexer.enqueue("a", "hold")
    with pytest.raises(SessionCapacityError):
        await multiplexer.get_or_create("b")

    assert multiplexer.identities == ["a"]
    assert metrics.snapshot().gauges["gateway.sessions.active"] == 1
    handler.gate.set()
    await _drain(multiplexer)


@pytest.mark.asyncio
async def test_sweep_evicts_only_idle_expired_sessions() -> None:
    clock = FakeClock()
    handler = Recorder()
    multiplexer = _multiplexer(handler, session_ttl_seconds=60, clock=clock)

    stale = await multiplexer.get_or_create("stale")
    clock.now += 30
    await multiplexer.get_or_create("recent")
    handler.gate.clear()
    await multiplexer.enqueue("busy", "work")
    clock.now += 45

    assert await multiplexer.sweep() == 1
    assert "stale" not in multiplexer
    assert stale.orchestrator.disconnects == 1
    assert set(multiplexer.identities) == {"recent", "busy"}

    handler.gate.set()
    await _drain(multiplexer)


@pytest.mark.asyncio
async def test_expired_session_is_replaced_on_next_use() -> None:
    clock = FakeClock()
    multiplexer = _multiplexer(Recorder(), session_ttl_seconds=60, clock=clock)

    first = await multiplexer.get_or_create("a")
    clock.now += 120
    second = await multiplexer.get_or_create("a")

    assert second is not first
    assert first.orchestrator.disconnects == 1


@pytest.mark.asyncio
async def test_handler_errors_do_not_stop_the_worker() -> None:
    seen: list[str] = []

    async def handler(_handle: SessionHandle, message: str) -> None:
        seen.append(message)
        if message == "boom":
            raise RuntimeError("model unavailable")

    multiplexer = SessionMultiplexer(DummyOrchestrator, handler)  # type: ignore[arg-type]
    await multiplexer.enqueue("a", "boom")
    await multiplexer.enqueue("a", "after")
    await _drain(multiplexer)

    assert seen == ["boom", "after"]


@pytest.mark.asyncio
async def test_start_schedules_sweep_and_stop_closes_everything() -> None:
    handler = Recorder()
    multiplexer = _multiplexer(handler, sweep_interval_seconds=3600)

    multiplexer.start()
    assert multiplexer._scheduler is not None
    assert multiplexer._scheduler.get_job(SWEEP_JOB_ID) is not None

    handle = await multiplexer.get_or_create("a")
    await multiplexer.enqueue("a", "last words")
    await multiplexer.stop()

    assert len(multiplexer) == 0
    assert handle.orchestrator.disconnects == 1
    assert ("end", "a", "last words") in handler.events
