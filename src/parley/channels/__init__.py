"""Chat channel adapters and bus exports."""

from parley.channels.base import BaseChannel
from parley.channels.bus import MessageBus
from parley.channels.events import InboundMessage, OutboundMessage
from parley.channels.manager import ChannelManager
from parley.channels.telegram import TelegramChannel, TelegramConfig

__all__ = [
    "BaseChannel",
    "ChannelManager",
    "InboundMessage",
    "MessageBus",
    "OutboundMessage",
    "TelegramChannel",
    "TelegramConfig",
]
