"""Parley command line interface."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any, Iterator, NoReturn

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from parley.app.runtime import AppRuntime
from parley.channels.bus import MessageBus
from parley.channels.telegram import TelegramChannel, TelegramConfig
from parley.config import Settings, get_settings
from parley.core.cancellation import CancellationToken
from parley.core.hooks import ChatCallbacks
from parley.core.orchestrator import ConversationOrchestrator
from parley.errors import (
    ConfigurationError,
    MaxStepsExceededError,
    ModelProviderError,
    ParleyError,
    RequestCancelledError,
    SessionStorageError,
    ToolConnectError,
)
from parley.logging_utils import configure_logging
from parley.session.store import (
    SessionStore,
    cleanup_sessions,
    list_sessions,
    sanitize_session_id,
    session_storage_stats,
)
from parley.tools.channel import ToolChannel

app = typer.Typer(name="parley", help="Tool-using assistant conversations.", add_completion=False)
sessions_app = typer.Typer(help="Inspect and maintain stored sessions.")
app.add_typer(sessions_app, name="sessions")

console = Console()
EXIT_COMMANDS = {"/exit", "/quit"}
RESET_COMMANDS = {"/reset", "/clear"}


def _load_settings(**overrides: Any) -> Settings:
    try:
        return get_settings(**{key: value for key, value in overrides.items() if value is not None})
    except ValueError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(1) from exc


def _fail(message: str) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(1)


@contextmanager
def _on_interrupt(callback: Callable[[], None]) -> Iterator[None]:
    """Route Ctrl-C to ``callback`` while the block runs."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except NotImplementedError:
        # Platforms without loop signal support keep the default KeyboardInterrupt.
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _chat_callbacks() -> ChatCallbacks:
    def on_text(delta: str) -> None:
        console.print(delta, end="", markup=False, highlight=False)

    def on_tool_call(name: str, args: dict[str, Any]) -> None:
        console.print(f"\n[dim]-> {name} {args}[/dim]")

    return ChatCallbacks(on_text=on_text, on_tool_call=on_tool_call)


async def _ask(orchestrator: ConversationOrchestrator, text: str) -> None:
    token = CancellationToken()
    with _on_interrupt(lambda: token.cancel("Interrupted")):
        try:
            await orchestrator.chat(text, callbacks=_chat_callbacks(), token=token)
        except RequestCancelledError:
            console.print("\n[yellow]Request cancelled.[/yellow]")
            return
        except MaxStepsExceededError as exc:
            console.print(f"\n[yellow]Stopped after {exc.max_steps} steps.[/yellow]")
            return
        except ModelProviderError as exc:
            console.print(f"\n[red]{exc}[/red]")
            return
    console.print()


async def _chat_session(settings: Settings, session_id: str, message: str | None) -> None:
    orchestrator = AppRuntime(settings).build_orchestrator(session_id)
    try:
        try:
            await orchestrator.connect()
        except ToolConnectError as exc:
            _fail(str(exc))
        if message is not None:
            await _ask(orchestrator, message)
            return

        console.print(f"[bold]Parley[/bold] session={orchestrator.session_id} tools={len(orchestrator.tools)}")
        console.print("[dim]/reset clears history, /exit quits[/dim]")
        while True:
            try:
                text = (await asyncio.to_thread(console.input, "[bold cyan]you>[/bold cyan] ")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            if text.lower() in RESET_COMMANDS:
                orchestrator.clear_history()
                console.print("Conversation history cleared.")
                continue
            await _ask(orchestrator, text)
    finally:
        await orchestrator.disconnect()


@app.command()
def chat(
    session: str = typer.Option("default", "--session", "-s", help="Session id to resume"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model override"),
    message: str | None = typer.Option(None, "--message", "-c", help="Send one message and exit"),
) -> None:
    """Chat with the assistant in the terminal."""
    configure_logging(profile="chat")
    settings = _load_settings(model=model)
    try:
        settings.require_api_key()
    except ConfigurationError as exc:
        _fail(str(exc))
    asyncio.run(_chat_session(settings, session, message))


async def _serve(settings: Settings) -> None:
    bus = MessageBus()
    runtime = AppRuntime(settings)
    manager = runtime.build_channel_manager(bus)
    if settings.telegram_token:
        manager.register(
            TelegramChannel(bus, TelegramConfig(token=settings.telegram_token, allow_from=settings.telegram_allow_from))
        )

    stop = asyncio.Event()
    await manager.start()
    try:
        with _on_interrupt(stop.set):
            await stop.wait()
    finally:
        await manager.stop()


@app.command()
def gateway() -> None:
    """Serve chat channels, one session per sender."""
    configure_logging()
    settings = _load_settings()
    try:
        settings.require_api_key()
    except ConfigurationError as exc:
        _fail(str(exc))
    if not settings.telegram_token:
        _fail("No channels configured. Set PARLEY_TELEGRAM_TOKEN.")
    logger.info("gateway.start max_sessions={} session_ttl={}s", settings.max_sessions, settings.session_ttl_seconds)
    asyncio.run(_serve(settings))


async def _list_tools(settings: Settings) -> None:
    runtime = AppRuntime(settings)
    channel = ToolChannel(settings.tool_channel_config(), metrics=runtime.metrics)
    try:
        tools = await channel.connect()
    finally:
        await channel.disconnect()

    policy = runtime.load_policy()
    table = Table(title=f"Tools ({len(tools)})")
    table.add_column("Name", style="cyan")
    table.add_column("Policy")
    table.add_column("Description")
    for tool in sorted(tools, key=lambda item: item.name):
        decision = policy(tool.name, {})
        table.add_row(tool.name, "allow" if decision is None else "deny", tool.description.splitlines()[0] if tool.description else "")
    console.print(table)


@app.command()
def tools() -> None:
    """Connect to the tool server and list its catalog."""
    configure_logging(profile="chat")
    settings = _load_settings()
    try:
        asyncio.run(_list_tools(settings))
    except ParleyError as exc:
        _fail(str(exc))


@sessions_app.command("stats")
def sessions_stats() -> None:
    """Show storage usage across all sessions."""
    settings = _load_settings()
    stats = session_storage_stats(settings.sessions_dir)
    table = Table(title="Sessions", show_header=False)
    table.add_row("Directory", str(settings.sessions_dir))
    table.add_row("Sessions", str(stats.total_sessions))
    table.add_row("Empty", str(stats.empty_sessions))
    table.add_row("Archived", str(stats.archived_sessions))
    table.add_row("Size", f"{stats.total_bytes} bytes")
    table.add_row("Oldest", stats.oldest.isoformat() if stats.oldest else "-")
    table.add_row("Newest", stats.newest.isoformat() if stats.newest else "-")
    console.print(table)


@sessions_app.command("cleanup")
def sessions_cleanup(
    max_age_days: float = typer.Option(30, "--max-age-days", help="Only remove sessions idle this long"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without deleting"),
) -> None:
    """Remove empty sessions older than the cutoff."""
    settings = _load_settings()
    report = cleanup_sessions(settings.sessions_dir, max_age_days=max_age_days, dry_run=dry_run)
    verb = "Would remove" if dry_run else "Removed"
    console.print(f"{verb} {len(report.removed)} session(s), {report.freed_bytes} bytes.")
    for name in report.removed:
        console.print(f"  {name}")
    for error in report.errors:
        console.print(f"[yellow]{error}[/yellow]")
    if report.errors:
        raise typer.Exit(1)


@sessions_app.command("list")
def sessions_list(
    include_archived: bool = typer.Option(False, "--all", help="Include archived sessions"),
) -> None:
    """List stored sessions, most recent first."""
    settings = _load_settings()
    summaries = list_sessions(settings.sessions_dir, include_archived=include_archived)
    if not summaries:
        console.print("No sessions.")
        return
    table = Table(title="Sessions")
    table.add_column("Session", style="bold")
    table.add_column("Messages", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Tags")
    table.add_column("Updated")
    for summary in summaries:
        name = f"{summary.session_id} (archived)" if summary.archived else summary.session_id
        updated = summary.updated.isoformat(timespec="seconds") if summary.updated else "-"
        table.add_row(name, str(summary.messages), f"{summary.size_bytes} B", ", ".join(summary.tags), updated)
    console.print(table)


def _existing_store(session_id: str) -> SessionStore:
    settings = _load_settings()
    target = settings.sessions_dir / sanitize_session_id(session_id)
    if not target.is_dir():
        _fail(f'Session "{sanitize_session_id(session_id)}" not found.')
    try:
        return SessionStore(session_id, settings.sessions_dir)
    except SessionStorageError as exc:
        _fail(str(exc))


def _set_archived(session_id: str, archived: bool) -> None:
    store = _existing_store(session_id)
    try:
        store.set_archived(archived)
    except SessionStorageError as exc:
        _fail(str(exc))
    verb = "Archived" if archived else "Unarchived"
    console.print(f'{verb} session "{store.session_id}".')


@sessions_app.command("archive")
def sessions_archive(session_id: str = typer.Argument(..., help="Session to archive")) -> None:
    """Hide a session from the default listing."""
    _set_archived(session_id, True)


@sessions_app.command("unarchive")
def sessions_unarchive(session_id: str = typer.Argument(..., help="Session to restore")) -> None:
    """Return an archived session to the default listing."""
    _set_archived(session_id, False)


@sessions_app.command("tag")
def sessions_tag(
    session_id: str = typer.Argument(..., help="Session to tag"),
    tags: list[str] = typer.Argument(..., help="Tags to add"),
    remove: bool = typer.Option(False, "--remove", help="Remove the tags instead"),
) -> None:
    """Add or remove session tags."""
    store = _existing_store(session_id)
    try:
        meta = store.remove_tags(tags) if remove else store.add_tags(tags)
    except SessionStorageError as exc:
        _fail(str(exc))
    console.print(f'Tags for "{store.session_id}": {", ".join(meta.tags) or "(none)"}')
