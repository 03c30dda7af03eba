from __future__ import annotations

import importlib
from pathlib import Path

import pytest
from conftest import ScriptedProvider, reply
from typer.testing import CliRunner

from parley.app.runtime import AppRuntime
from parley.session.store import SessionStore
from parley.types import Turn

cli_module = importlib.import_module("parley.cli")
runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PARLEY_HOME", str(tmp_path / "home"))
    for name in ("ANTHROPIC_API_KEY", "PARLEY_API_KEY", "PARLEY_TOOL_COMMAND", "PARLEY_TELEGRAM_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path / "home"


def test_chat_without_api_key_fails_cleanly() -> None:
    result = runner.invoke(cli_module.app, ["chat", "--message", "hi"])

    assert result.exit_code == 1
    assert "No API key configured" in result.output


def test_chat_single_message_streams_reply(monkeypatch: pytest.MonkeyPatch, _isolated_home: Path) -> None:
    monkeypatch.setenv("PARLEY_API_KEY", "sk-test")
    provider = ScriptedProvider([reply("Hello from the assistant.")])
    monkeypatch.setattr(cli_module, "AppRuntime", lambda settings: AppRuntime(settings, provider=provider))

    result = runner.invoke(cli_module.app, ["chat", "--session", "demo", "--model", "claude-cli", "-c", "hi"])

    assert result.exit_code == 0, result.output
    assert "Hello from the assistant." in result.output
    assert provider.requests[0].model == "claude-cli"
    assert len(SessionStore("demo", _isolated_home / "sessions").load_messages()) == 2


def test_gateway_requires_a_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARLEY_API_KEY", "sk-test")

    result = runner.invoke(cli_module.app, ["gateway"])

    assert result.exit_code == 1
    assert "No channels configured" in result.output


def test_tools_requires_a_tool_server() -> None:
    result = runner.invoke(cli_module.app, ["tools"])

    assert result.exit_code == 1
    assert "No tool server configured" in result.output


def test_sessions_stats_and_cleanup(_isolated_home: Path) -> None:
    sessions = _isolated_home / "sessions"
    SessionStore("kept", sessions).append_message(Turn.user_text("hi"))
    SessionStore("empty", sessions)

    stats = runner.invoke(cli_module.app, ["sessions", "stats"])
    assert stats.exit_code == 0, stats.output
    assert "Sessions" in stats.output
    assert "Empty" in stats.output

    preview = runner.invoke(cli_module.app, ["sessions", "cleanup", "--max-age-days", "0", "--dry-run"])
    assert preview.exit_code == 0, preview.output
    assert "Would remove 1 session(s)" in preview.output
    assert (sessions / "empty").exists()

    cleanup = runner.invoke(cli_module.app, ["sessions", "cleanup", "--max-age-days", "0"])
    assert cleanup.exit_code == 0, cleanup.output
    assert "Removed 1 session(s)" in cleanup.output
    assert not (sessions / "empty").exists()
    assert (sessions / "kept").exists()


def test_sessions_archive_tag_and_list(_isolated_home: Path) -> None:
    sessions = _isolated_home / "sessions"
    SessionStore("shop", sessions).append_message(Turn.user_text("hi"))
    SessionStore("old", sessions).append_message(Turn.user_text("bye"))

    tagged = runner.invoke(cli_module.app, ["sessions", "tag", "shop", "vip", "refunds"])
    assert tagged.exit_code == 0, tagged.output
    assert 'Tags for "shop": vip, refunds' in tagged.output

    untagged = runner.invoke(cli_module.app, ["sessions", "tag", "shop", "refunds", "--remove"])
    assert 'Tags for "shop": vip' in untagged.output

    archived = runner.invoke(cli_module.app, ["sessions", "archive", "old"])
    assert archived.exit_code == 0, archived.output
    assert 'Archived session "old".' in archived.output

    listing = runner.invoke(cli_module.app, ["sessions", "list"])
    assert listing.exit_code == 0, listing.output
    assert "shop" in listing.output
    assert "old" not in listing.output

    everything = runner.invoke(cli_module.app, ["sessions", "list", "--all"])
    assert "(archived)" in everything.output

    restored = runner.invoke(cli_module.app, ["sessions", "unarchive", "old"])
    assert 'Unarchived session "old".' in restored.output
    assert not SessionStore("old", sessions).meta().archived


def test_sessions_commands_reject_unknown_sessions() -> None:
    result = runner.invoke(cli_module.app, ["sessions", "archive", "ghost"])

    assert result.exit_code == 1
    assert 'Session "ghost" not found.' in result.output
    assert "No sessions." in runner.invoke(cli_module.app, ["sessions", "list"]).output
