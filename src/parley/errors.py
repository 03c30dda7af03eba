"""Application-level exception types for Parley."""

from __future__ import annotations

from enum import StrEnum


class ParleyError(Exception):
    """Base exception for Parley."""


class ConfigurationError(ParleyError):
    """Base exception for configuration and startup validation errors."""


class ApiKeyNotConfiguredError(ConfigurationError):
    """Raised when an API key is required but missing."""


class ToolServerNotConfiguredError(ConfigurationError):
    """Raised when no tool server command is configured."""


class ToolChannelError(ParleyError):
    """Base exception for tool channel failures."""


class ToolConnectError(ToolChannelError):
    """Raised when the tool server cannot be started or its catalog fetched."""


class TransportErrorKind(StrEnum):
    """Failure kinds reported by the tool transport."""

    CLOSED = "closed"
    RESET = "reset"
    BROKEN_PIPE = "broken_pipe"
    TIMEOUT = "timeout"
    NOT_CONNECTED = "not_connected"


class ToolTransportError(ToolChannelError):
    """Raised when a tool call fails because of the channel itself."""

    def __init__(self, kind: TransportErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.args[0]}"


class ToolValidationError(ParleyError):
    """Raised when tool arguments do not satisfy the tool schema."""

    def __init__(self, tool: str, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool
        self.key = key


class UnknownToolError(ToolValidationError):
    """Raised when the model asks for a tool missing from the catalog."""

    def __init__(self, tool: str, suggestions: list[str] | None = None) -> None:
        self.suggestions = list(suggestions or [])
        message = f"Unknown tool '{tool}'"
        if self.suggestions:
            message += f"; did you mean {', '.join(repr(name) for name in self.suggestions)}?"
        super().__init__(tool, message)


class RequestCancelledError(ParleyError):
    """Raised when the user aborts an in-flight request."""

    def __init__(self, message: str = "Request cancelled") -> None:
        super().__init__(message)


class MaxStepsExceededError(ParleyError):
    """Raised when the model keeps requesting tools past the step limit."""

    def __init__(self, max_steps: int) -> None:
        super().__init__(f"max_steps_reached={max_steps}")
        self.max_steps = max_steps


class ModelProviderError(ParleyError):
    """Raised when the language-model stream fails."""


class SessionStorageError(ParleyError):
    """Raised when a session directory is unsafe to use."""


class SessionCapacityError(ParleyError):
    """Raised when the multiplexer cannot admit another session."""


class QueueFullError(ParleyError):
    """Raised when an identity's inbound queue is full and the message was dropped."""

    def __init__(self, identity: str, dropped: int) -> None:
        super().__init__(f"Queue full for {identity}; dropped={dropped}")
        self.identity = identity
        self.dropped = dropped
