"""Parley: tool-using assistant conversations over MCP."""

from parley.config import Settings, get_settings
from parley.core.orchestrator import ConversationOrchestrator
from parley.session.multiplexer import SessionMultiplexer

__all__ = ["ConversationOrchestrator", "SessionMultiplexer", "Settings", "get_settings"]
__version__ = "0.1.0"
