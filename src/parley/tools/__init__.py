"""Tool channel, argument checks and dispatch policies."""

from parley.tools.audit import ToolAuditLog, read_tool_audit, sanitize_audit_value
from parley.tools.channel import ToolChannel, ToolChannelConfig
from parley.tools.policy import ToolPolicy
from parley.tools.retry import RetryingInvoker
from parley.tools.validator import ArgumentValidator

__all__ = [
    "ArgumentValidator",
    "RetryingInvoker",
    "ToolAuditLog",
    "ToolChannel",
    "ToolChannelConfig",
    "ToolPolicy",
    "read_tool_audit",
    "sanitize_audit_value",
]
