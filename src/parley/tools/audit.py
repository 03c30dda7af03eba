"""Per-session JSONL audit trail of tool calls."""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from parley.types import ToolCallResult

AUDIT_FILE = "tool-audit.jsonl"
MAX_DEPTH = 5
MAX_STRING_LENGTH = 200
MAX_EXCERPT_LENGTH = 500
REDACTED = "[redacted]"
TRUNCATED = "[truncated]"

REDACT_KEY_RE = re.compile(
    r"(secret|token|authorization|api[-_]?key|password|admin|email|phone|address"
    r"|customer_email|customer_phone|customer_name|first_name|last_name)",
    re.IGNORECASE,
)


def sanitize_audit_value(value: Any, depth: int = 0) -> Any:
    """Redact sensitive keys and shorten long strings before they hit disk."""
    if depth > MAX_DEPTH:
        return TRUNCATED
    if isinstance(value, list | tuple):
        return [sanitize_audit_value(item, depth + 1) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if REDACT_KEY_RE.search(str(key)) else sanitize_audit_value(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, str):
        trimmed = value.strip()
        if len(trimmed) > MAX_STRING_LENGTH:
            return trimmed[: MAX_STRING_LENGTH - 3] + "..."
        return trimmed
    return value


class ToolAuditLog:
    """Post-dispatch sink writing one line per finished tool call."""

    def __init__(self, session_dir: Path, *, session_id: str, include_result: bool = False) -> None:
        self.path = session_dir / AUDIT_FILE
        self.session_id = session_id
        self.include_result = include_result

    def entry_for(self, result: ToolCallResult) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(),
            "type": "tool_result",
            "session": self.session_id,
            "name": result.name,
            "args": sanitize_audit_value(result.args),
            "duration_ms": round(result.duration_ms, 3),
            "is_error": result.is_error,
            "result_length": len(result.result_text),
        }
        if self.include_result:
            entry["result_excerpt"] = result.result_text[:MAX_EXCERPT_LENGTH]
        return entry

    def __call__(self, result: ToolCallResult) -> None:
        self.record(result)

    def record(self, result: ToolCallResult) -> None:
        line = json.dumps(self.entry_for(result), ensure_ascii=False, default=str)
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            self.path.chmod(0o600)
        except OSError as exc:
            logger.warning("tool.audit.error path={} error={}", self.path, exc)


def read_tool_audit(path: Path) -> list[dict[str, Any]]:
    """Load audit entries, skipping malformed lines."""
    if not path.exists():
        return []
    entries: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict) and payload.get("type") and payload.get("name"):
                entries.append(payload)
    return entries
