"""Base channel interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from parley.channels.bus import MessageBus
from parley.channels.events import InboundMessage, OutboundMessage


class BaseChannel(ABC):
    """Abstract base class for channel adapters."""

    name: str = "base"

    def __init__(self, bus: MessageBus) -> None:
        self.bus = bus

    @abstractmethod
    async def start(self) -> None:
        """Start receiving messages; runs until ``stop`` is called."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop receiving and release the connection."""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        """Deliver one reply."""

    async def publish_inbound(self, message: InboundMessage) -> None:
        await self.bus.publish_inbound(message)

    async def finished(self, message: InboundMessage) -> None:
        """Called once ``message`` has been handled, whether or not a reply was sent."""
