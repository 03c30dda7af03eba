"""Language-model provider boundary and its Anthropic implementation."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import anthropic
from loguru import logger

from parley.errors import ModelProviderError
from parley.types import ContentBlock, TextBlock, ToolUseBlock, Usage

TOOL_USE_STOP_REASON = "tool_use"

type TextSink = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class ModelRequest:
    """One streaming request: full history, system prompt and tool catalog."""

    model: str
    system: str
    messages: Sequence[dict[str, Any]]
    tools: Sequence[dict[str, Any]] = ()
    max_tokens: int = 4096


@dataclass(frozen=True)
class ModelResponse:
    """The final structured message of one stream."""

    content: tuple[ContentBlock, ...]
    stop_reason: str | None
    usage: Usage = field(default_factory=Usage)

    @property
    def wants_tools(self) -> bool:
        return self.stop_reason == TOOL_USE_STOP_REASON and any(
            isinstance(block, ToolUseBlock) for block in self.content
        )


class ModelProvider(Protocol):
    """Streams one model response, pushing text deltas to ``on_text``.

    Cancelling the awaiting task must abort the underlying stream.
    """

    async def stream(self, request: ModelRequest, on_text: TextSink) -> ModelResponse: ...


class AnthropicProvider:
    """Streams messages through the Anthropic SDK."""

    def __init__(self, api_key: str, *, base_url: str | None = None, client: anthropic.AsyncAnthropic | None = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url)

    async def stream(self, request: ModelRequest, on_text: TextSink) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "system": request.system,
            "messages": list(request.messages),
        }
        if request.tools:
            kwargs["tools"] = list(request.tools)

        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for delta in stream.text_stream:
                    await on_text(delta)
                message = await stream.get_final_message()
        except anthropic.APIError as exc:
            logger.warning("model.stream.error model={} error={}", request.model, exc)
            raise ModelProviderError(f"Model request failed: {exc}") from exc

        return ModelResponse(
            content=tuple(_convert_blocks(message.content)),
            stop_reason=message.stop_reason,
            usage=_convert_usage(message.usage),
        )


def _convert_blocks(blocks: Sequence[Any]) -> list[ContentBlock]:
    converted: list[ContentBlock] = []
    for block in blocks:
        match getattr(block, "type", None):
            case "text":
                converted.append(TextBlock(block.text))
            case "tool_use":
                args = dict(block.input) if isinstance(block.input, dict) else block.input
                converted.append(ToolUseBlock(block.id, block.name, args))
    return converted


def _convert_usage(usage: Any) -> Usage:
    if usage is None:
        return Usage()
    return Usage(
        input_tokens=getattr(usage, "input_tokens", 0) or 0,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
        cache_creation_input_tokens=getattr(usage, "cache_creation_input_tokens", 0) or 0,
        cache_read_input_tokens=getattr(usage, "cache_read_input_tokens", 0) or 0,
    )
