"""Application runtime: builds one orchestrator per session from settings."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from parley.channels.bus import MessageBus
from parley.channels.manager import ChannelManager
from parley.config import Settings
from parley.core.hooks import ChatCallbacks, merge_callbacks
from parley.core.orchestrator import ConversationOrchestrator
from parley.core.provider import AnthropicProvider, ModelProvider
from parley.metrics import MetricsCollector
from parley.session.store import SessionStore
from parley.tools.audit import ToolAuditLog
from parley.tools.channel import ToolChannel, ToolChannelConfig
from parley.tools.policy import POLICY_FILE, ToolPolicy
from parley.tools.validator import ArgumentValidator

type ChannelFactory = Callable[[ToolChannelConfig, MetricsCollector], ToolChannel]


def _default_channel(config: ToolChannelConfig, metrics: MetricsCollector) -> ToolChannel:
    return ToolChannel(config, metrics=metrics)


class AppRuntime:
    """Owns process-wide collaborators and hands out per-session orchestrators.

    Settings are read once; a session never sees a later change to them.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        provider: ModelProvider | None = None,
        metrics: MetricsCollector | None = None,
        channel_factory: ChannelFactory = _default_channel,
        workspace: Path | None = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or MetricsCollector()
        self.workspace = (workspace or Path.cwd()).resolve()
        self._provider = provider
        self._channel_factory = channel_factory

    @property
    def provider(self) -> ModelProvider:
        if self._provider is None:
            self._provider = AnthropicProvider(self.settings.require_api_key(), base_url=self.settings.api_base)
        return self._provider

    def policy_paths(self) -> list[Path]:
        """Global policy first, then workspace, then the configured file."""
        paths = [self.settings.resolve_home() / POLICY_FILE, self.workspace / ".parley" / POLICY_FILE]
        if self.settings.policy_file is not None:
            paths.append(self.settings.policy_file.expanduser())
        return paths

    def load_policy(self) -> ToolPolicy:
        return ToolPolicy.load(self.policy_paths(), allow_writes=self.settings.allow_writes)

    def build_orchestrator(self, session_id: str) -> ConversationOrchestrator:
        settings = self.settings
        store = SessionStore(session_id, settings.sessions_dir)

        channel = None
        if settings.tool_command:
            channel = self._channel_factory(settings.tool_channel_config(), self.metrics)

        audit = None
        if settings.tool_audit:
            audit = ToolAuditLog(
                store.session_dir, session_id=store.session_id, include_result=settings.tool_audit_detail
            )
        callbacks = merge_callbacks(
            ChatCallbacks(on_tool_call_start=self.load_policy(), on_tool_call_end=audit),
            self.metrics.callbacks(),
        )

        orchestrator = ConversationOrchestrator(
            provider=self.provider,
            channel=channel,
            model=settings.model,
            system_prompt=settings.system_prompt,
            max_tokens=settings.max_tokens,
            max_steps=settings.max_steps,
            max_history_turns=settings.max_history_turns,
            validator=ArgumentValidator(max_args_bytes=settings.max_tool_args_bytes),
            max_retries=settings.tool_max_retries,
            retry_base_delay=settings.tool_retry_base_delay_seconds,
            callbacks=callbacks,
            session_id=store.session_id,
        )
        orchestrator.use_session_store(store)
        return orchestrator

    def build_channel_manager(self, bus: MessageBus) -> ChannelManager:
        settings = self.settings
        return ChannelManager(
            bus,
            self.build_orchestrator,
            session_ttl_seconds=settings.session_ttl_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            max_sessions=settings.max_sessions,
            max_queue=settings.max_session_queue,
            metrics=self.metrics,
        )
