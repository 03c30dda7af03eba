"""Signal-based routing between channels and the session layer."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

from blinker import NamedSignal, Signal
from loguru import logger

from parley.channels.events import InboundMessage, OutboundMessage

type Handler[M] = Callable[[M], Coroutine[Any, Any, None]]
type Unsubscribe = Callable[[], None]


class MessageBus:
    """In-process bus: channels publish inbound, the manager publishes replies."""

    def __init__(self) -> None:
        self._inbound = NamedSignal("parley.inbound")
        self._outbound = NamedSignal("parley.outbound")

    async def publish_inbound(self, message: InboundMessage) -> None:
        await self._publish(self._inbound, message)

    async def publish_outbound(self, message: OutboundMessage) -> None:
        await self._publish(self._outbound, message)

    def on_inbound(self, handler: Handler[InboundMessage]) -> Unsubscribe:
        return self._subscribe(self._inbound, handler)

    def on_outbound(self, handler: Handler[OutboundMessage]) -> Unsubscribe:
        return self._subscribe(self._outbound, handler)

    async def _publish(self, signal: NamedSignal, message: InboundMessage | OutboundMessage) -> None:
        if not signal.receivers:
            logger.warning("bus.unrouted signal={} channel={}", signal.name, message.channel)
            return
        await signal.send_async(self, message=message)

    @staticmethod
    def _subscribe(signal: Signal, handler: Handler[Any]) -> Unsubscribe:
        async def _receiver(sender: Any, *, message: Any) -> None:
            await handler(message)

        signal.connect(_receiver, weak=False)
        return lambda: signal.disconnect(_receiver)
