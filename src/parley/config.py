"""Configuration management for Parley."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from parley.errors import ApiKeyNotConfiguredError, ToolServerNotConfiguredError
from parley.tools.channel import ToolChannelConfig

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_SYSTEM_PROMPT = """You are an operations assistant with access to a set of platform tools.

Guidelines:
- Be concise and action-oriented
- When listing items, format them as readable tables or summaries
- When creating or modifying items, confirm the action and show key fields of the result
- When the user refers to an entity by name, use the list tools first to find the ID, then operate on it
- For bulk operations, confirm the count before proceeding
- If a tool reports an error, read it carefully and correct the arguments before retrying"""


class Settings(BaseSettings):
    """Application settings, built once at startup and passed explicitly."""

    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Model
    model: str = Field(default=DEFAULT_MODEL, description="Anthropic model id")
    api_key: str | None = Field(default=None, description="API key for the model provider")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    max_tokens: int = Field(default=4096, description="Maximum tokens per model response")
    max_steps: int = Field(default=25, description="Maximum model requests per user message")
    max_history_turns: int = Field(default=40, description="Maximum turns kept in history")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt for the assistant")
    home: Path = Field(default_factory=lambda: Path.home() / ".parley", description="State directory")

    # Tool server
    tool_command: str | None = Field(default=None, description="Command that starts the MCP tool server")
    tool_args: list[str] = Field(default_factory=list, description="Arguments for the tool server command")
    tool_env: dict[str, str] = Field(default_factory=dict, description="Extra tool server environment")
    allow_writes: bool = Field(default=False, description="Allow tools that mutate remote state")
    redact: bool = Field(default=False, description="Ask the tool server to redact PII in results")
    connect_timeout_seconds: float = Field(default=15.0, description="Tool server connect/list timeout")
    disconnect_timeout_seconds: float = Field(default=5.0, description="Tool server shutdown timeout")
    tool_max_retries: int = Field(default=2, description="Extra attempts for transport failures")
    tool_retry_base_delay_seconds: float = Field(default=0.5, description="First retry delay")
    max_tool_args_bytes: int = Field(default=100_000, description="Serialized tool argument ceiling")
    tool_audit: bool = Field(default=False, description="Write tool-audit.jsonl per session")
    tool_audit_detail: bool = Field(default=False, description="Include result text in the audit log")
    policy_file: Path | None = Field(default=None, description="JSON file with per-tool allow/deny rules")

    # Gateway
    session_ttl_seconds: float = Field(default=30 * 60, description="Idle time before a session is evicted")
    sweep_interval_seconds: float = Field(default=5 * 60, description="Idle sweep interval")
    max_sessions: int = Field(default=400, description="Maximum live gateway sessions")
    max_session_queue: int = Field(default=128, description="Maximum queued messages per identity")
    telegram_token: str | None = Field(default=None, description="Telegram bot token")
    telegram_allow_from: set[str] = Field(default_factory=set, description="Allowed Telegram ids or usernames")

    def resolve_home(self) -> Path:
        return self.home.expanduser()

    @property
    def sessions_dir(self) -> Path:
        return self.resolve_home() / "sessions"

    @property
    def resolved_api_key(self) -> str | None:
        return self.api_key or os.getenv("ANTHROPIC_API_KEY") or None

    def require_api_key(self) -> str:
        api_key = self.resolved_api_key
        if not api_key:
            raise ApiKeyNotConfiguredError("No API key configured. Set PARLEY_API_KEY or ANTHROPIC_API_KEY.")
        return api_key

    def tool_channel_config(self) -> ToolChannelConfig:
        if not self.tool_command:
            raise ToolServerNotConfiguredError("No tool server configured. Set PARLEY_TOOL_COMMAND.")
        return ToolChannelConfig(
            command=self.tool_command,
            args=tuple(self.tool_args),
            env=dict(self.tool_env),
            allow_writes=self.allow_writes,
            redact=self.redact,
            connect_timeout_seconds=self.connect_timeout_seconds,
            disconnect_timeout_seconds=self.disconnect_timeout_seconds,
        )


def get_settings(**overrides: object) -> Settings:
    """Build settings from the environment, `.env` and explicit overrides."""
    return Settings(**overrides)  # type: ignore[arg-type]
