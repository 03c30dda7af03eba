"""Conversation engine for Parley."""

from parley.core.cancellation import CancellationToken
from parley.core.history import HistoryLedger, normalize_turns, trim_turns
from parley.core.hooks import ChatCallbacks, ToolCallDecision
from parley.core.orchestrator import ConversationOrchestrator
from parley.core.provider import AnthropicProvider, ModelProvider, ModelRequest, ModelResponse

__all__ = [
    "AnthropicProvider",
    "CancellationToken",
    "ChatCallbacks",
    "ConversationOrchestrator",
    "HistoryLedger",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "ToolCallDecision",
    "normalize_turns",
    "trim_turns",
]
