"""Channel manager: routes chat traffic into per-sender sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from loguru import logger

from parley.channels.base import BaseChannel
from parley.channels.bus import MessageBus
from parley.channels.events import InboundMessage, OutboundMessage
from parley.errors import QueueFullError, SessionCapacityError
from parley.session.multiplexer import OrchestratorFactory, SessionHandle, SessionMultiplexer

if TYPE_CHECKING:
    from parley.metrics import MetricsCollector

SLOW_DOWN_REPLY = "You are sending messages too quickly. Please wait for the previous requests to complete."
CAPACITY_REPLY = "Too many active sessions right now; please retry in a moment."
ERROR_REPLY = "I encountered an error processing your request. Please try again."
HELP_REPLY = "\n".join([
    "Commands:",
    "/help - show this help",
    "/reset - clear conversation history (/clear works too)",
    "/status - show session info",
    "/model [name] - show or change the model",
    "",
    "Any other text is sent to the assistant.",
])


class ChannelManager:
    """Coordinate inbound routing and outbound dispatch for channels."""

    def __init__(
        self,
        bus: MessageBus,
        factory: OrchestratorFactory,
        *,
        session_ttl_seconds: float,
        sweep_interval_seconds: float,
        max_sessions: int,
        max_queue: int,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.bus = bus
        self.sessions = SessionMultiplexer(
            factory,
            self._handle_message,
            session_ttl_seconds=session_ttl_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
            max_sessions=max_sessions,
            max_queue=max_queue,
            metrics=metrics,
        )
        self._channels: dict[str, BaseChannel] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._unsub_inbound: Callable[[], None] | None = None
        self._unsub_outbound: Callable[[], None] | None = None

    def register(self, channel: BaseChannel) -> None:
        self._channels[channel.name] = channel

    @property
    def channels(self) -> dict[str, BaseChannel]:
        return dict(self._channels)

    def enabled_channels(self) -> Iterable[str]:
        return self._channels.keys()

    async def start(self) -> None:
        self._unsub_inbound = self.bus.on_inbound(self._handle_inbound)
        self._unsub_outbound = self.bus.on_outbound(self._handle_outbound)
        self.sessions.start()
        for channel in self._channels.values():
            self._tasks.append(asyncio.create_task(channel.start(), name=f"channel:{channel.name}"))
        logger.info("channel.manager.start channels={}", ",".join(self._channels) or "-")

    async def stop(self) -> None:
        for channel in self._channels.values():
            try:
                await channel.stop()
            except Exception:
                logger.exception("channel.stop.error channel={}", channel.name)
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                continue
            except Exception:
                logger.exception("channel.task.error task={}", task.get_name())
        self._tasks.clear()
        await self.sessions.stop()
        if self._unsub_inbound is not None:
            self._unsub_inbound()
            self._unsub_inbound = None
        if self._unsub_outbound is not None:
            self._unsub_outbound()
            self._unsub_outbound = None
        logger.info("channel.manager.stopped")

    async def _handle_inbound(self, message: InboundMessage) -> None:
        try:
            await self.sessions.enqueue(message.identity, message)
        except QueueFullError:
            await self._reply(message, SLOW_DOWN_REPLY)
        except SessionCapacityError:
            await self._reply(message, CAPACITY_REPLY)

    async def _handle_outbound(self, message: OutboundMessage) -> None:
        channel = self._channels.get(message.channel)
        if channel is None:
            logger.warning("channel.outbound.unknown channel={}", message.channel)
            return
        try:
            await channel.send(message)
        except Exception:
            logger.exception("channel.send.error channel={} chat_id={}", message.channel, message.chat_id)

    async def _handle_message(self, handle: SessionHandle, message: InboundMessage) -> None:
        try:
            reply = self._command_reply(handle, message.content)
            if reply is None:
                try:
                    await handle.ensure_connected()
                    reply = await handle.orchestrator.chat(message.content)
                except Exception:
                    logger.exception("channel.chat.error identity={}", handle.identity)
                    reply = ERROR_REPLY
            if reply:
                await self._reply(message, reply)
        finally:
            await self._finished(message)

    async def _finished(self, message: InboundMessage) -> None:
        channel = self._channels.get(message.channel)
        if channel is None:
            return
        try:
            await channel.finished(message)
        except Exception:
            logger.exception("channel.finished.error channel={} chat_id={}", message.channel, message.chat_id)

    def _command_reply(self, handle: SessionHandle, text: str) -> str | None:
        command, _, argument = text.strip().partition(" ")
        match command.lower():
            case "/help":
                return HELP_REPLY
            case "/reset" | "/clear":
                handle.orchestrator.clear_history()
                return "Conversation history cleared."
            case "/status":
                orchestrator = handle.orchestrator
                return "\n".join([
                    "Session status",
                    f"Model: {orchestrator.model}",
                    f"History: {orchestrator.history_length} messages",
                    f"Tools: {len(orchestrator.tools)}",
                    f"Dropped messages: {handle.dropped}",
                    f"Active sessions: {len(self.sessions)}",
                ])
            case "/model":
                if not argument.strip():
                    return f"Current model: {handle.orchestrator.model}"
                handle.orchestrator.set_model(argument.strip())
                return f"Model changed to: {argument.strip()}"
        return None

    async def _reply(self, message: InboundMessage, content: str) -> None:
        message_id = message.metadata.get("message_id")
        await self.bus.publish_outbound(
            OutboundMessage(
                channel=message.channel,
                chat_id=message.chat_id,
                content=content,
                metadata={"identity": message.identity},
                reply_to_message_id=message_id if isinstance(message_id, int) else None,
            )
        )
