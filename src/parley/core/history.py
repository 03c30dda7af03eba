"""Ordered conversation history with tool-call pairing."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

from parley.types import ToolResultBlock, Turn

DEFAULT_MAX_TURNS = 40
INTERRUPTED_RESULT = "Error: interrupted before a result was recorded"


def normalize_turns(turns: Iterable[Turn]) -> list[Turn]:
    """Drop tool results that do not answer an outstanding tool use.

    A user turn made up solely of tool results is kept whole or dropped
    whole. Mixed user turns keep their other blocks and lose only the
    unmatched results.
    """
    outstanding: set[str] = set()
    normalized: list[Turn] = []
    for turn in turns:
        if turn.role == "assistant":
            outstanding.update(block.id for block in turn.tool_uses())
            normalized.append(turn)
            continue

        results = turn.result_blocks()
        if not results:
            normalized.append(turn)
            continue

        if turn.is_tool_result_turn:
            ids = [block.tool_use_id for block in results]
            if len(set(ids)) != len(ids) or not all(tool_use_id in outstanding for tool_use_id in ids):
                continue
            outstanding.difference_update(ids)
            normalized.append(turn)
            continue

        kept = []
        for block in turn.content:
            if isinstance(block, ToolResultBlock):
                if block.tool_use_id not in outstanding:
                    continue
                outstanding.discard(block.tool_use_id)
            kept.append(block)
        if kept:
            normalized.append(Turn(turn.role, tuple(kept)))
    return normalized


def close_open_tool_uses(turns: Iterable[Turn]) -> list[Turn]:
    """Answer tool uses that never got a result with an interrupted error.

    Every assistant tool use must be answered by the turn right after it;
    a crash or cancellation between dispatch and recording leaves it open.
    """
    closed: list[Turn] = []
    pending: list[str] = []
    for turn in turns:
        if pending:
            answered = {block.tool_use_id for block in turn.result_blocks()} if turn.role == "user" else set()
            filler = interrupted_results(call_id for call_id in pending if call_id not in answered)
            if filler and answered:
                results = [block for block in turn.content if isinstance(block, ToolResultBlock)]
                others = [block for block in turn.content if not isinstance(block, ToolResultBlock)]
                turn = Turn(turn.role, (*results, *filler, *others))
            elif filler:
                closed.append(Turn.tool_results(filler))
        closed.append(turn)
        pending = [block.id for block in turn.tool_uses()] if turn.role == "assistant" else []
    if pending:
        closed.append(Turn.tool_results(interrupted_results(pending)))
    return closed


def interrupted_results(call_ids: Iterable[str]) -> list[ToolResultBlock]:
    return [ToolResultBlock(call_id, INTERRUPTED_RESULT, is_error=True) for call_id in call_ids]


def trim_turns(turns: Iterable[Turn], max_turns: int) -> list[Turn]:
    """Keep the most recent turns without leaving a dangling tool result."""
    items = list(turns)
    if max_turns <= 0:
        return []
    return normalize_turns(items[-max_turns:])


class HistoryLedger:
    """Conversation turns owned by one orchestrator."""

    def __init__(self, *, max_turns: int | None = DEFAULT_MAX_TURNS) -> None:
        self.max_turns = max_turns
        self._turns: list[Turn] = []

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def append(self, turn: Turn) -> bool:
        """Add a turn; returns False when normalization rejected it."""
        self._turns.append(turn)
        self._renormalize()
        return bool(self._turns) and self._turns[-1] is turn

    def trim(self, max_turns: int) -> None:
        self._turns = trim_turns(self._turns, max_turns)

    def load(self, turns: Iterable[Turn]) -> None:
        """Replace the history; tool uses left open by a crash get interrupted results."""
        self._turns = close_open_tool_uses(normalize_turns(turns))
        self._renormalize()

    def open_tool_uses(self) -> list[str]:
        """Ids of tool uses in the last turn that still wait for a result."""
        if not self._turns or self._turns[-1].role != "assistant":
            return []
        return [block.id for block in self._turns[-1].tool_uses()]

    def clear(self) -> None:
        self._turns = []

    def to_payloads(self) -> list[dict[str, Any]]:
        return [turn.to_payload() for turn in self._turns]

    def _renormalize(self) -> None:
        if self.max_turns is not None:
            self._turns = trim_turns(self._turns, self.max_turns)
        else:
            self._turns = normalize_turns(self._turns)
