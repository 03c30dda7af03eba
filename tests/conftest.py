from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from parley.core.provider import ModelRequest, ModelResponse, TextSink
from parley.errors import ToolTransportError
from parley.logging_utils import configure_logging
from parley.types import TextBlock, TextPart, ToolDescriptor, ToolOutput, ToolUseBlock, Usage

type Step = ModelResponse | Callable[[ModelRequest, TextSink], Awaitable[ModelResponse]]


def reply(text: str, *, usage: Usage | None = None) -> ModelResponse:
    return ModelResponse((TextBlock(text),), "end_turn", usage or Usage())


def tool_request(*calls: tuple[str, str, Any], text: str | None = None, stop_reason: str = "tool_use") -> ModelResponse:
    blocks: list[Any] = [TextBlock(text)] if text else []
    blocks.extend(ToolUseBlock(call_id, name, args) for call_id, name, args in calls)
    return ModelResponse(tuple(blocks), stop_reason, Usage(input_tokens=10, output_tokens=5))


class ScriptedProvider:
    """Plays back canned responses, streaming their text first."""

    def __init__(self, steps: list[Step]) -> None:
        self.steps = list(steps)
        self.requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest, on_text: TextSink) -> ModelResponse:
        self.requests.append(request)
        if not self.steps:
            raise AssertionError("provider called more often than scripted")
        step = self.steps.pop(0)
        if not isinstance(step, ModelResponse):
            return await step(request, on_text)
        for block in step.content:
            if isinstance(block, TextBlock):
                await on_text(block.text)
        return step


def stalled(*deltas: str) -> Callable[[ModelRequest, TextSink], Awaitable[ModelResponse]]:
    """A step that streams ``deltas`` and then never finishes."""

    async def step(_request: ModelRequest, on_text: TextSink) -> ModelResponse:
        for delta in deltas:
            await on_text(delta)
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

    return step


class FakeToolChannel:
    """In-memory stand-in for a connected tool server."""

    def __init__(self, tools: list[ToolDescriptor], handlers: dict[str, Callable[..., Any]] | None = None) -> None:
        self._catalog = tuple(tools)
        self._tools: tuple[ToolDescriptor, ...] = ()
        self.handlers = dict(handlers or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.connects = 0
        self.disconnects = 0
        self.connected = False

    @property
    def tools(self) -> tuple[ToolDescriptor, ...]:
        return self._tools

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> tuple[ToolDescriptor, ...]:
        self.connects += 1
        self.connected = True
        self._tools = self._catalog
        return self._tools

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False
        self._tools = ()

    async def ensure_connected(self) -> None:
        if not self.connected:
            await self.connect()

    async def call(self, name: str, args: dict[str, Any]) -> ToolOutput:
        self.calls.append((name, args))
        handler = self.handlers.get(name)
        if handler is None:
            return ToolOutput((TextPart(f"{name} ok"),))
        outcome = handler(**args)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if isinstance(outcome, ToolOutput):
            return outcome
        return ToolOutput((TextPart(str(outcome)),))


def flaky(failures: int, kind: Any, result: str = "recovered") -> Callable[..., str]:
    """Handler raising ``failures`` transport errors before succeeding."""
    remaining = {"count": failures}

    def handler(**_kwargs: Any) -> str:
        if remaining["count"] > 0:
            remaining["count"] -= 1
            raise ToolTransportError(kind, "connection closed")
        return result

    return handler


@pytest.fixture(scope="session", autouse=True)
def _configure_logging() -> None:
    configure_logging()


@pytest.fixture
def catalog() -> list[ToolDescriptor]:
    return [
        ToolDescriptor(
            name="list_products",
            description="List products in the catalog.",
            input_schema={
                "type": "object",
                "properties": {"limit": {"type": "integer"}, "query": {"type": "string"}},
            },
        ),
        ToolDescriptor(
            name="create_product",
            description="Create a product.",
            input_schema={
                "type": "object",
                "properties": {"title": {"type": "string"}, "price": {"type": "number"}},
                "required": ["title"],
                "additionalProperties": False,
            },
        ),
    ]


@pytest.fixture
def fake_channel(catalog: list[ToolDescriptor]) -> FakeToolChannel:
    return FakeToolChannel(catalog)
