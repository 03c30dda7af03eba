"""Per-identity session lifecycle for multi-tenant gateways."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from parley.errors import QueueFullError, SessionCapacityError
from parley.logging_utils import bind_session

if TYPE_CHECKING:
    from parley.core.orchestrator import ConversationOrchestrator
    from parley.metrics import MetricsCollector

DEFAULT_SESSION_TTL_SECONDS = 30 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_MAX_SESSIONS = 400
DEFAULT_MAX_SESSION_QUEUE = 128
SWEEP_JOB_ID = "parley.session.sweep"

type OrchestratorFactory = Callable[[str], ConversationOrchestrator]
type MessageHandler = Callable[[SessionHandle, Any], Awaitable[None]]


@dataclass(eq=False)
class SessionHandle:
    """Live state for one identity; owned by the multiplexer."""

    identity: str
    orchestrator: ConversationOrchestrator
    last_activity: float
    queue: deque[Any] = field(default_factory=deque)
    processing: bool = False
    dropped: int = 0
    worker: asyncio.Task[None] | None = None

    @property
    def idle(self) -> bool:
        return not self.processing and not self.queue

    async def ensure_connected(self) -> None:
        channel = self.orchestrator.channel
        if channel is not None and not channel.is_connected:
            await self.orchestrator.connect()

    async def close(self) -> None:
        try:
            await self.orchestrator.disconnect()
        except Exception:
            logger.exception("session.close.error identity={}", self.identity)


class SessionMultiplexer:
    """Serializes work per identity while identities run in parallel.

    Each identity has a bounded FIFO drained by at most one worker task, so
    an orchestrator never sees two concurrent ``chat`` calls.
    """

    def __init__(
        self,
        factory: OrchestratorFactory,
        handler: MessageHandler,
        *,
        session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        max_queue: int = DEFAULT_MAX_SESSION_QUEUE,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._handler = handler
        self.session_ttl_seconds = session_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.max_sessions = max_sessions
        self.max_queue = max_queue
        self._metrics = metrics
        self._clock = clock
        self._handles: dict[str, SessionHandle] = {}
        self._scheduler: AsyncIOScheduler | None = None

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, identity: object) -> bool:
        return identity in self._handles

    def get(self, identity: str) -> SessionHandle | None:
        return self._handles.get(identity)

    @property
    def identities(self) -> list[str]:
        return list(self._handles)

    async def get_or_create(self, identity: str) -> SessionHandle:
        now = self._clock()
        handle = self._handles.get(identity)
        if handle is not None and handle.idle and now - handle.last_activity > self.session_ttl_seconds:
            logger.info("session.expired identity={}", identity)
            await self._evict(handle)
            handle = self._handles.get(identity)

        if handle is None and len(self._handles) >= self.max_sessions:
            await self._evict_oldest()
            # Another caller may have created this identity while eviction awaited.
            handle = self._handles.get(identity)
            if handle is None and len(self._handles) >= self.max_sessions:
                logger.warning("session.capacity max_sessions={}", self.max_sessions)
                raise SessionCapacityError(f"Session limit reached ({self.max_sessions})")

        if handle is None:
            handle = SessionHandle(identity=identity, orchestrator=self._factory(identity), last_activity=now)
            self._handles[identity] = handle
            logger.info("session.create identity={} active={}", identity, len(self._handles))
            self._update_gauge()

        handle.last_activity = now
        return handle

    async def enqueue(self, identity: str, message: Any) -> SessionHandle:
        """Queue ``message`` for ``identity`` and make sure a worker drains it."""
        handle = await self.get_or_create(identity)
        if len(handle.queue) >= self.max_queue:
            handle.dropped += 1
            logger.warning(
                "session.queue.full identity={} max_queue={} dropped={}", identity, self.max_queue, handle.dropped
            )
            if self._metrics is not None:
                self._metrics.increment("gateway.messages.dropped")
            raise QueueFullError(identity, handle.dropped)

        handle.queue.append(message)
        handle.last_activity = self._clock()
        if not handle.processing:
            handle.processing = True
            handle.worker = asyncio.create_task(self._drain(handle), name=f"session:{identity}")
        return handle

    async def _drain(self, handle: SessionHandle) -> None:
        try:
            while handle.queue:
                message = handle.queue.popleft()
                handle.last_activity = self._clock()
                with bind_session(handle.identity):
                    try:
                        await self._handler(handle, message)
                    except Exception:
                        logger.exception("session.message.error identity={}", handle.identity)
                handle.last_activity = self._clock()
        finally:
            handle.processing = False
            handle.worker = None

    async def sweep(self) -> int:
        """Evict idle handles past the TTL, then trim back under capacity."""
        now = self._clock()
        expired = [
            handle
            for handle in list(self._handles.values())
            if handle.idle and now - handle.last_activity > self.session_ttl_seconds
        ]
        evicted = 0
        for handle in expired:
            # Work may have arrived while an earlier eviction awaited.
            if not handle.idle or self._handles.get(handle.identity) is not handle:
                continue
            logger.info("session.sweep.evict identity={}", handle.identity)
            await self._evict(handle)
            evicted += 1

        while len(self._handles) > self.max_sessions:
            if not await self._evict_oldest():
                break
            evicted += 1
        return evicted

    async def _evict_oldest(self) -> bool:
        candidates = sorted(
            (handle for handle in self._handles.values() if handle.idle),
            key=lambda handle: handle.last_activity,
        )
        if not candidates:
            return False
        logger.info("session.evict identity={}", candidates[0].identity)
        await self._evict(candidates[0])
        return True

    async def _evict(self, handle: SessionHandle) -> None:
        if self._handles.get(handle.identity) is handle:
            del self._handles[handle.identity]
        await handle.close()
        self._update_gauge()

    def _update_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.gauge("gateway.sessions.active", len(self._handles))

    def start(self) -> None:
        """Schedule the idle sweep on the running event loop."""
        if self._scheduler is not None and self._scheduler.running:
            return
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            coalesce=True,
            max_instances=1,
        )
        scheduler.start()
        self._scheduler = scheduler

    async def stop(self) -> None:
        """Stop sweeping, let queued work finish, and disconnect every session."""
        if self._scheduler is not None:
            if self._scheduler.running:
                with suppress(Exception):
                    self._scheduler.shutdown(wait=False)
            self._scheduler = None

        workers = [handle.worker for handle in self._handles.values() if handle.worker is not None]
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        for handle in list(self._handles.values()):
            await self._evict(handle)
