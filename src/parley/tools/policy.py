"""Per-tool allow/deny rules applied before dispatch."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from loguru import logger

from parley.core.hooks import ToolCallDecision

type PolicyRule = Literal["allow", "deny"]

POLICY_FILE = "policies.json"
WRITE_PREFIXES: tuple[str, ...] = (
    "create_",
    "update_",
    "delete_",
    "remove_",
    "import_",
    "bulk_",
    "cancel_",
    "archive_",
    "set_",
    "send_",
    "refund_",
)


def is_write_tool(name: str) -> bool:
    """Guess from the tool name whether calling it mutates remote state."""
    lowered = name.lower()
    return lowered.startswith(WRITE_PREFIXES) or any(f"_{prefix}" in lowered for prefix in WRITE_PREFIXES)


def parse_policy(payload: object) -> dict[str, PolicyRule]:
    """Read ``{"toolHooks": {...}}``, keeping only allow/deny entries."""
    if not isinstance(payload, Mapping):
        return {}
    hooks = payload.get("toolHooks")
    if not isinstance(hooks, Mapping):
        return {}
    return {str(name): rule for name, rule in hooks.items() if rule in ("allow", "deny")}


def read_policy_file(path: Path) -> dict[str, PolicyRule]:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("tool.policy.unreadable path={} error={}", path, exc)
        return {}
    return parse_policy(payload)


@dataclass(frozen=True)
class ToolPolicy:
    """Pre-dispatch hook combining explicit rules with the write flag."""

    rules: Mapping[str, PolicyRule] = field(default_factory=dict)
    allow_writes: bool = False

    @classmethod
    def load(cls, paths: Iterable[Path], *, allow_writes: bool = False) -> ToolPolicy:
        """Merge policy files in order; later files override earlier ones."""
        rules: dict[str, PolicyRule] = {}
        for path in paths:
            rules.update(read_policy_file(path))
        return cls(rules=rules, allow_writes=allow_writes)

    def rule_for(self, name: str) -> PolicyRule | None:
        return self.rules.get(name)

    def __call__(self, name: str, args: dict[str, Any]) -> ToolCallDecision | None:
        rule = self.rules.get(name)
        if rule == "deny":
            return ToolCallDecision.deny(f"tool '{name}' is denied by policy")
        if rule == "allow":
            return None
        if not self.allow_writes and is_write_tool(name):
            return ToolCallDecision.deny(f"tool '{name}' modifies data and writes are disabled")
        return None
