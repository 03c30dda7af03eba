from __future__ import annotations

import json
import os
import stat
import time
from pathlib import Path

import pytest

from parley.errors import SessionStorageError
from parley.session.store import (
    CONTEXT_FILE,
    META_FILE,
    MAX_SESSION_ID_LENGTH,
    SessionStore,
    cleanup_sessions,
    sanitize_session_id,
    list_sessions,
    read_session_meta,
    session_storage_stats,
)
from parley.types import TextBlock, ToolResultBlock, ToolUseBlock, Turn


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("telegram:42", "telegram_42"),
        ("../../etc/passwd", "____etc_passwd"),
        ("..hidden", "_hidden"),
        ("   ", "default"),
        ("ok-id_1.2", "ok-id_1.2"),
    ],
)
def test_sanitize_session_id(raw: str, expected: str) -> None:
    assert sanitize_session_id(raw) == expected


def test_sanitize_session_id_bounds_length() -> None:
    assert len(sanitize_session_id("x" * 1000)) == MAX_SESSION_ID_LENGTH


def test_messages_round_trip_with_timestamps(tmp_path: Path) -> None:
    store = SessionStore("alice", tmp_path)
    turns = [
        Turn.user_text("list orders"),
        Turn.assistant([ToolUseBlock("t1", "list_orders", {})]),
        Turn.tool_results([ToolResultBlock("t1", "[]")]),
        Turn.assistant([TextBlock("No items found.")]),
    ]
    store.append_messages(turns)

    assert store.load_messages() == turns
    assert store.message_count() == 4
    first = json.loads(store.context_path.read_text(encoding="utf-8").splitlines()[0])
    assert first["role"] == "user"
    assert "timestamp" in first


def test_load_skips_malformed_lines_and_orphans(tmp_path: Path) -> None:
    store = SessionStore("bob", tmp_path)
    store.append_message(Turn.tool_results([ToolResultBlock("ghost", "?")]))
    with store.context_path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")
        handle.write(json.dumps({"role": "system", "content": "nope"}) + "\n")
    store.append_message(Turn.user_text("hello"))

    assert store.load_messages() == [Turn.user_text("hello")]


def test_files_and_directories_are_private(tmp_path: Path) -> None:
    store = SessionStore("carol", tmp_path)
    store.append_message(Turn.user_text("hi"))
    store.append_log("user", "hi")

    assert stat.S_IMODE(store.session_dir.stat().st_mode) == 0o700
    assert stat.S_IMODE(store.context_path.stat().st_mode) == 0o600
    assert stat.S_IMODE(store.log_path.stat().st_mode) == 0o600
    assert [entry["text"] for entry in store.read_log()] == ["hi"]


def test_symlinked_session_directory_is_refused(tmp_path: Path) -> None:
    target = tmp_path / "elsewhere"
    target.mkdir()
    sessions = tmp_path / "sessions"
    sessions.mkdir()
    (sessions / "dave").symlink_to(target, target_is_directory=True)

    with pytest.raises(SessionStorageError):
        SessionStore("dave", sessions)


def test_write_failures_are_swallowed(tmp_path: Path) -> None:
    store = SessionStore("erin", tmp_path)
    store.context_path.mkdir()

    store.append_message(Turn.user_text("lost"))

    assert store.load_messages() == []


def test_clear_replaces_files_atomically(tmp_path: Path) -> None:
    store = SessionStore("frank", tmp_path)
    store.append_message(Turn.user_text("hi"))
    store.append_log("user", "hi")
    inode = store.context_path.stat().st_ino

    store.clear()

    assert store.context_path.read_text(encoding="utf-8") == ""
    assert store.log_path.read_text(encoding="utf-8") == ""
    assert store.context_path.stat().st_ino != inode
    assert sorted(path.name for path in store.session_dir.iterdir()) == ["context.jsonl", "log.jsonl"]


def _age(path: Path, days: float) -> None:
    past = time.time() - days * 24 * 60 * 60
    os.utime(path, (past, past))


def test_cleanup_removes_only_old_empty_sessions(tmp_path: Path) -> None:
    busy = SessionStore("busy", tmp_path)
    busy.append_message(Turn.user_text("keep me"))
    SessionStore("stale", tmp_path)
    SessionStore("fresh", tmp_path)
    _age(busy.session_dir, 90)
    _age(tmp_path / "stale", 90)

    preview = cleanup_sessions(tmp_path, max_age_days=30, dry_run=True)
    assert preview.removed == ["stale"]
    assert (tmp_path / "stale").exists()

    report = cleanup_sessions(tmp_path, max_age_days=30)
    assert report.removed == ["stale"]
    assert report.errors == []
    assert not (tmp_path / "stale").exists()
    assert (tmp_path / "busy").exists()
    assert (tmp_path / "fresh").exists()


def test_storage_stats(tmp_path: Path) -> None:
    full = SessionStore("full", tmp_path)
    full.append_message(Turn.user_text("hello"))
    archived = SessionStore("archived", tmp_path)
    archived.set_archived(True)

    stats = session_storage_stats(tmp_path)

    assert stats.total_sessions == 2
    assert stats.empty_sessions == 1
    assert stats.archived_sessions == 1
    assert stats.total_bytes >= (full.session_dir / CONTEXT_FILE).stat().st_size
    assert stats.oldest is not None and stats.newest is not None


def test_stats_and_cleanup_tolerate_missing_directory(tmp_path: Path) -> None:
    missing = tmp_path / "nope"

    assert session_storage_stats(missing).total_sessions == 0
    assert cleanup_sessions(missing).removed == []


def test_interrupted_clear_keeps_the_original_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = SessionStore("gina", tmp_path)
    store.append_message(Turn.user_text("keep me"))
    before = store.context_path.read_text(encoding="utf-8")

    def fail_replace(_src: object, _dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("parley.session.store.os.replace", fail_replace)
    store.clear()

    assert store.context_path.read_text(encoding="utf-8") == before
    assert store.load_messages() == [Turn.user_text("keep me")]
    assert sorted(path.name for path in store.session_dir.iterdir()) == [CONTEXT_FILE]


def test_archive_and_tags_are_written_to_meta(tmp_path: Path) -> None:
    store = SessionStore("henry", tmp_path)

    store.add_tags(["vip", " refunds ", "vip", ""])
    store.set_archived(True)
    meta = store.remove_tags(["refunds"])

    assert meta.tags == ["vip"]
    assert meta.archived
    assert read_session_meta(store.session_dir) == meta
    assert json.loads((store.session_dir / META_FILE).read_text(encoding="utf-8")) == {
        "tags": ["vip"],
        "archived": True,
    }
    assert stat.S_IMODE((store.session_dir / META_FILE).stat().st_mode) == 0o600
    assert [path.name for path in store.session_dir.iterdir() if ".tmp-" in path.name] == []

    assert not store.set_archived(False).archived


def test_unreadable_meta_falls_back_to_defaults(tmp_path: Path) -> None:
    store = SessionStore("iris", tmp_path)
    (store.session_dir / META_FILE).write_text("{broken", encoding="utf-8")

    assert store.meta().tags == []
    assert not store.meta().archived


def test_list_sessions_hides_archived_unless_asked(tmp_path: Path) -> None:
    old = SessionStore("old", tmp_path)
    old.append_message(Turn.user_text("hi"))
    old.add_tags(["vip"])
    _age(old.session_dir, 5)
    SessionStore("new", tmp_path).append_message(Turn.user_text("hey"))
    SessionStore("shelved", tmp_path).set_archived(True)

    visible = list_sessions(tmp_path)
    everything = list_sessions(tmp_path, include_archived=True)

    assert [summary.session_id for summary in visible] == ["new", "old"]
    assert visible[1].tags == ["vip"]
    assert visible[1].messages == 1
    assert visible[1].size_bytes > 0
    assert {summary.session_id for summary in everything} == {"new", "old", "shelved"}
    assert list_sessions(tmp_path / "missing") == []
