"""Conversation and tool data model."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

type Role = Literal["user", "assistant"]
ROLES: frozenset[str] = frozenset({"user", "assistant"})


@dataclass(frozen=True)
class TextBlock:
    """Plain text content."""

    text: str

    def to_payload(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    """One tool invocation requested by the assistant."""

    id: str
    name: str
    # As sent by the model; validated before dispatch.
    input: Any = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        args = dict(self.input) if isinstance(self.input, Mapping) else {}
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": args}


@dataclass(frozen=True)
class ToolResultBlock:
    """Result for one earlier tool invocation."""

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.content}
        if self.is_error:
            payload["is_error"] = True
        return payload


type ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


def block_from_payload(payload: object) -> ContentBlock | None:
    """Decode one stored or provider block, returning None for unknown shapes."""

    if not isinstance(payload, Mapping):
        return None
    match payload.get("type"):
        case "text":
            text = payload.get("text")
            return TextBlock(text) if isinstance(text, str) else None
        case "tool_use":
            block_id, name, args = payload.get("id"), payload.get("name"), payload.get("input", {})
            if not isinstance(block_id, str) or not isinstance(name, str):
                return None
            return ToolUseBlock(block_id, name, dict(args) if isinstance(args, Mapping) else args)
        case "tool_result":
            tool_use_id = payload.get("tool_use_id")
            if not isinstance(tool_use_id, str):
                return None
            return ToolResultBlock(
                tool_use_id,
                _result_content_text(payload.get("content", "")),
                bool(payload.get("is_error", False)),
            )
    return None


def _result_content_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, Mapping) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(json.dumps(item, ensure_ascii=False))
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False)


@dataclass(frozen=True)
class Turn:
    """One role-tagged step of a conversation."""

    role: Role
    content: tuple[ContentBlock, ...]

    @classmethod
    def user_text(cls, text: str) -> Turn:
        return cls("user", (TextBlock(text),))

    @classmethod
    def assistant(cls, blocks: Iterable[ContentBlock]) -> Turn:
        return cls("assistant", tuple(blocks))

    @classmethod
    def tool_results(cls, results: Iterable[ToolResultBlock]) -> Turn:
        return cls("user", tuple(results))

    def text(self) -> str | None:
        """Joined text blocks, or None when the turn carries no text."""
        parts = [block.text for block in self.content if isinstance(block, TextBlock) and block.text]
        if not parts:
            return None
        return "\n".join(parts)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def result_blocks(self) -> list[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]

    @property
    def is_tool_result_turn(self) -> bool:
        """True for a user turn made up solely of tool results."""
        return (
            self.role == "user"
            and bool(self.content)
            and all(isinstance(block, ToolResultBlock) for block in self.content)
        )

    def to_payload(self) -> dict[str, Any]:
        return {"role": self.role, "content": [block.to_payload() for block in self.content]}

    @classmethod
    def from_payload(cls, payload: object) -> Turn | None:
        if not isinstance(payload, Mapping):
            return None
        role = payload.get("role")
        content = payload.get("content")
        if role not in ROLES or content is None:
            return None
        if isinstance(content, str):
            return cls(role, (TextBlock(content),))
        if not isinstance(content, list):
            return None
        blocks = [block for block in (block_from_payload(item) for item in content) if block is not None]
        if not blocks:
            return None
        return cls(role, tuple(blocks))


@dataclass(frozen=True)
class ToolDescriptor:
    """One entry of the tool catalog advertised at connect time."""

    name: str
    description: str
    input_schema: Mapping[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_model_tool(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": dict(self.input_schema)}


@dataclass(frozen=True)
class TextPart:
    """Text content returned by a tool."""

    text: str


@dataclass(frozen=True)
class StructuredPart:
    """Non-text content returned by a tool, kept as decoded JSON."""

    data: dict[str, Any]


type ToolContentPart = TextPart | StructuredPart


@dataclass(frozen=True)
class ToolOutput:
    """Raw result of one tool call at the channel boundary."""

    parts: tuple[ToolContentPart, ...] = ()
    is_error: bool = False

    @property
    def text(self) -> str:
        rendered: list[str] = []
        for part in self.parts:
            match part:
                case TextPart(text=text):
                    rendered.append(text)
                case StructuredPart(data=data):
                    rendered.append(json.dumps(data, ensure_ascii=False))
        return "\n".join(rendered)


@dataclass(frozen=True)
class ToolCallResult:
    """Outcome of one tool invocation as seen by the conversation loop."""

    name: str
    args: dict[str, Any]
    result_text: str
    is_error: bool
    duration_ms: float
    tool_use_id: str = ""


@dataclass(frozen=True)
class Usage:
    """Token usage reported by the model provider for one request."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
