"""Pre- and post-dispatch hooks around tool calls."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger

from parley.types import ToolCallResult, Usage

type DecisionAction = Literal["allow", "deny", "respond"]


@dataclass(frozen=True)
class ToolCallDecision:
    """Outcome of a pre-dispatch hook.

    ``allow`` may carry rewritten arguments, ``deny`` carries the reason
    reported to the model, and ``respond`` carries canned result text that
    stands in for the real call.
    """

    action: DecisionAction
    args: dict[str, Any] | None = None
    reason: str | None = None
    content: str | None = None

    @classmethod
    def allow(cls, args: dict[str, Any] | None = None) -> ToolCallDecision:
        return cls("allow", args=args)

    @classmethod
    def deny(cls, reason: str) -> ToolCallDecision:
        return cls("deny", reason=reason)

    @classmethod
    def respond(cls, content: str) -> ToolCallDecision:
        return cls("respond", content=content)


type MaybeAwaitable[T] = T | Awaitable[T]
type TextCallback = Callable[[str], MaybeAwaitable[None]]
type ToolCallCallback = Callable[[str, dict[str, Any]], MaybeAwaitable[None]]
type ToolCallStartHook = Callable[[str, dict[str, Any]], MaybeAwaitable[ToolCallDecision | None]]
type ToolCallEndCallback = Callable[[ToolCallResult], MaybeAwaitable[None]]
type UsageCallback = Callable[[Usage], MaybeAwaitable[None]]


@dataclass(frozen=True)
class ChatCallbacks:
    """Side-channel observers for one orchestrator call."""

    on_text: TextCallback | None = None
    on_tool_call: ToolCallCallback | None = None
    on_tool_call_start: ToolCallStartHook | None = None
    on_tool_call_end: ToolCallEndCallback | None = None
    on_usage: UsageCallback | None = None

    async def text(self, delta: str) -> None:
        await _notify("on_text", self.on_text, delta)

    async def tool_call(self, name: str, args: dict[str, Any]) -> None:
        await _notify("on_tool_call", self.on_tool_call, name, args)

    async def tool_call_end(self, result: ToolCallResult) -> None:
        await _notify("on_tool_call_end", self.on_tool_call_end, result)

    async def usage(self, usage: Usage) -> None:
        await _notify("on_usage", self.on_usage, usage)

    async def tool_call_start(self, name: str, args: dict[str, Any]) -> ToolCallDecision | None:
        """Run the pre-dispatch hook; a failing hook denies the call."""
        if self.on_tool_call_start is None:
            return None
        try:
            decision = self.on_tool_call_start(name, args)
            if inspect.isawaitable(decision):
                decision = await decision
        except Exception as exc:
            logger.exception("tool.hook.start.error name={}", name)
            return ToolCallDecision.deny(f"pre-dispatch hook failed: {exc}")
        return decision


def combine_start_hooks(hooks: Iterable[ToolCallStartHook | None]) -> ToolCallStartHook | None:
    """Chain pre-dispatch hooks; the first deny or respond wins, allows may rewrite args."""
    chain = [hook for hook in hooks if hook is not None]
    if not chain:
        return None
    if len(chain) == 1:
        return chain[0]

    async def combined(name: str, args: dict[str, Any]) -> ToolCallDecision | None:
        current = args
        rewritten = False
        for hook in chain:
            decision = hook(name, current)
            if inspect.isawaitable(decision):
                decision = await decision
            if decision is None:
                continue
            if decision.action != "allow":
                return decision
            if decision.args is not None:
                current = decision.args
                rewritten = True
        return ToolCallDecision.allow(current) if rewritten else None

    return combined


def merge_callbacks(*callbacks: ChatCallbacks | None) -> ChatCallbacks:
    """Fan observers out to every set; pre-dispatch hooks run as one chain."""
    present = [item for item in callbacks if item is not None]
    if len(present) == 1:
        return present[0]
    return ChatCallbacks(
        on_text=_fan_out("on_text", [item.on_text for item in present]),
        on_tool_call=_fan_out("on_tool_call", [item.on_tool_call for item in present]),
        on_tool_call_start=combine_start_hooks(item.on_tool_call_start for item in present),
        on_tool_call_end=_fan_out("on_tool_call_end", [item.on_tool_call_end for item in present]),
        on_usage=_fan_out("on_usage", [item.on_usage for item in present]),
    )


def _fan_out(hook: str, targets: list[Callable[..., Any] | None]) -> Callable[..., Awaitable[None]] | None:
    chain = [target for target in targets if target is not None]
    if not chain:
        return None

    async def fan_out(*args: Any) -> None:
        for target in chain:
            await _notify(hook, target, *args)

    return fan_out


async def _notify(hook: str, callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception("chat.callback.error hook={}", hook)
