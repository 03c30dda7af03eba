"""Append-only per-session conversation storage."""

from __future__ import annotations

import json
import os
import re
import secrets
import shutil
import stat
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from parley.core.history import normalize_turns
from parley.errors import SessionStorageError
from parley.types import Role, Turn

CONTEXT_FILE = "context.jsonl"
LOG_FILE = "log.jsonl"
META_FILE = "meta.json"
MAX_SESSION_ID_LENGTH = 200
MAX_WARNINGS = 500
DEFAULT_SESSION_ID = "default"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_DOT_RUNS = re.compile(r"\.\.+")
_warned: set[str] = set()
_warned_lock = threading.Lock()


def sanitize_session_id(value: str) -> str:
    """Make ``value`` safe to use as a single path component."""
    candidate = value.strip() or DEFAULT_SESSION_ID
    candidate = _UNSAFE_CHARS.sub("_", candidate)
    candidate = _DOT_RUNS.sub("_", candidate).lstrip(".")
    candidate = candidate[:MAX_SESSION_ID_LENGTH]
    return candidate or DEFAULT_SESSION_ID


def warn_storage_issue(action: str, path: Path, error: BaseException) -> None:
    """Log a storage failure once per (action, path, message)."""
    key = f"{action}:{path}:{error}"
    with _warned_lock:
        if key in _warned:
            return
        if len(_warned) >= MAX_WARNINGS:
            _warned.clear()
        _warned.add(key)
    logger.warning("session.storage.error action={} path={} error={}", action, path, error)


def ensure_private_dir(path: Path) -> None:
    """Create ``path`` owner-only, refusing symlinks and non-directories."""
    if path.is_symlink():
        raise SessionStorageError(f"Refusing to use session directory symlink: {path}")
    if path.exists() and not path.is_dir():
        raise SessionStorageError(f"Session directory path is not a directory: {path}")
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    try:
        path.chmod(0o700)
    except OSError as exc:
        warn_storage_issue("Restrict session directory", path, exc)


def _append_lines(path: Path, lines: Iterable[str]) -> None:
    if path.is_symlink():
        raise OSError(f"Refusing to write through symlink: {path}")
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
    with os.fdopen(fd, "a", encoding="utf-8") as handle:
        for line in lines:
            handle.write(line + "\n")
    os.chmod(path, 0o600)


def _read_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as handle:
        return [line.strip() for line in handle if line.strip()]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _dir_size(path: Path) -> int:
    total = 0
    if not path.exists():
        return 0
    try:
        children = list(path.iterdir())
    except OSError as exc:
        warn_storage_issue("Read session directory", path, exc)
        return 0
    for child in children:
        try:
            if child.is_symlink():
                continue
            if child.is_file():
                total += child.stat().st_size
            elif child.is_dir():
                total += _dir_size(child)
        except OSError as exc:
            warn_storage_issue("Read session file metadata", child, exc)
    return total


def _count_messages(session_dir: Path) -> int:
    try:
        return len(_read_lines(session_dir / CONTEXT_FILE))
    except (OSError, UnicodeDecodeError) as exc:
        warn_storage_issue("Read session context", session_dir / CONTEXT_FILE, exc)
        return 0


@dataclass
class SessionMeta:
    """User-managed labels kept beside a session's turns."""

    tags: list[str] = field(default_factory=list)
    archived: bool = False

    @classmethod
    def from_payload(cls, payload: object) -> SessionMeta:
        if not isinstance(payload, dict):
            return cls()
        raw_tags = payload.get("tags")
        tags = [tag for tag in raw_tags if isinstance(tag, str)] if isinstance(raw_tags, list) else []
        return cls(tags=tags, archived=bool(payload.get("archived")))

    def to_payload(self) -> dict[str, Any]:
        return {"tags": list(self.tags), "archived": self.archived}


def read_session_meta(session_dir: Path) -> SessionMeta:
    """Read ``meta.json``; a missing or unreadable file means default metadata."""
    meta_path = session_dir / META_FILE
    if not meta_path.exists():
        return SessionMeta()
    try:
        payload = json.loads(meta_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        warn_storage_issue("Read session metadata", meta_path, exc)
        return SessionMeta()
    return SessionMeta.from_payload(payload)


def write_session_meta(session_dir: Path, meta: SessionMeta) -> None:
    """Replace ``meta.json`` atomically through a temp file in the same directory."""
    ensure_private_dir(session_dir)
    meta_path = session_dir / META_FILE
    tmp_path = meta_path.with_name(f"{META_FILE}.tmp-{secrets.token_hex(4)}")
    data = json.dumps(meta.to_payload(), ensure_ascii=False, indent=2)
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
        os.replace(tmp_path, meta_path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise SessionStorageError(f"Failed to write session metadata {meta_path}: {exc}") from exc


class SessionStore:
    """Durable turns and a human-readable activity log for one session.

    Conversation writes never raise: a persistence failure is logged and the
    conversation carries on.
    """

    def __init__(self, session_id: str, sessions_dir: Path) -> None:
        self.session_id = sanitize_session_id(session_id)
        self.session_dir = sessions_dir / self.session_id
        self.context_path = self.session_dir / CONTEXT_FILE
        self.log_path = self.session_dir / LOG_FILE
        self._lock = threading.Lock()
        ensure_private_dir(sessions_dir)
        ensure_private_dir(self.session_dir)

    def load_messages(self) -> list[Turn]:
        try:
            lines = _read_lines(self.context_path)
        except (OSError, UnicodeDecodeError) as exc:
            warn_storage_issue("Read session context", self.context_path, exc)
            return []
        turns: list[Turn] = []
        for line in lines:
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            turn = Turn.from_payload(payload)
            if turn is not None:
                turns.append(turn)
        return normalize_turns(turns)

    def append_message(self, turn: Turn) -> None:
        self.append_messages([turn])

    def append_messages(self, turns: Iterable[Turn]) -> None:
        lines = [json.dumps(self._stored(turn), ensure_ascii=False) for turn in turns]
        if not lines:
            return
        try:
            with self._lock:
                _append_lines(self.context_path, lines)
        except OSError as exc:
            warn_storage_issue("Append session messages", self.context_path, exc)

    def append_log(self, role: Role, text: str) -> None:
        line = json.dumps({"ts": _now(), "role": role, "text": text}, ensure_ascii=False)
        try:
            with self._lock:
                _append_lines(self.log_path, [line])
        except OSError as exc:
            warn_storage_issue("Append session log", self.log_path, exc)

    def read_log(self) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        try:
            lines = _read_lines(self.log_path)
        except (OSError, UnicodeDecodeError) as exc:
            warn_storage_issue("Read session log", self.log_path, exc)
            return entries
        for line in lines:
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                entries.append(payload)
        return entries

    def message_count(self) -> int:
        return _count_messages(self.session_dir)

    def meta(self) -> SessionMeta:
        return read_session_meta(self.session_dir)

    def set_archived(self, archived: bool) -> SessionMeta:
        meta = self.meta()
        meta.archived = archived
        write_session_meta(self.session_dir, meta)
        logger.info("session.meta.archived session={} archived={}", self.session_id, archived)
        return meta

    def add_tags(self, tags: Iterable[str]) -> SessionMeta:
        meta = self.meta()
        for tag in (tag.strip() for tag in tags):
            if tag and tag not in meta.tags:
                meta.tags.append(tag)
        write_session_meta(self.session_dir, meta)
        return meta

    def remove_tags(self, tags: Iterable[str]) -> SessionMeta:
        meta = self.meta()
        dropped = {tag.strip() for tag in tags}
        meta.tags = [tag for tag in meta.tags if tag not in dropped]
        write_session_meta(self.session_dir, meta)
        return meta

    def clear(self) -> None:
        """Empty both files by renaming a fresh temp file over each."""
        with self._lock:
            for path in (self.context_path, self.log_path):
                if not path.exists():
                    continue
                tmp_path = path.with_name(f"{path.name}.tmp-{secrets.token_hex(4)}")
                try:
                    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                    os.close(fd)
                    os.replace(tmp_path, path)
                except OSError as exc:
                    tmp_path.unlink(missing_ok=True)
                    warn_storage_issue("Clear session file", path, exc)

    @staticmethod
    def _stored(turn: Turn) -> dict[str, Any]:
        payload = turn.to_payload()
        payload["timestamp"] = _now()
        return payload


@dataclass
class SessionSummary:
    session_id: str
    messages: int = 0
    size_bytes: int = 0
    tags: list[str] = field(default_factory=list)
    archived: bool = False
    updated: datetime | None = None


@dataclass
class CleanupReport:
    removed: list[str] = field(default_factory=list)
    freed_bytes: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class StorageStats:
    total_sessions: int = 0
    total_bytes: int = 0
    empty_sessions: int = 0
    archived_sessions: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None


def _session_dirs(sessions_dir: Path) -> list[Path]:
    return sorted(
        child for child in sessions_dir.iterdir() if stat.S_ISDIR(child.lstat().st_mode)
    )


def cleanup_sessions(sessions_dir: Path, *, max_age_days: float = 30, dry_run: bool = False) -> CleanupReport:
    """Remove sessions with no stored turns that were last touched before the cutoff."""
    report = CleanupReport()
    if not sessions_dir.exists():
        return report

    cutoff = time.time() - max_age_days * 24 * 60 * 60
    try:
        session_dirs = _session_dirs(sessions_dir)
    except OSError as exc:
        report.errors.append(f"sessions: {exc}")
        warn_storage_issue("List sessions directory", sessions_dir, exc)
        return report

    for session_dir in session_dirs:
        if _count_messages(session_dir) > 0:
            continue
        try:
            mtime = session_dir.stat().st_mtime
        except OSError as exc:
            report.errors.append(f"{session_dir.name}: unable to read metadata ({exc})")
            continue
        if mtime > cutoff:
            continue

        size = _dir_size(session_dir)
        if not dry_run:
            try:
                shutil.rmtree(session_dir)
            except OSError as exc:
                report.errors.append(f"{session_dir.name}: {exc}")
                continue
        report.removed.append(session_dir.name)
        report.freed_bytes += size

    logger.info(
        "session.cleanup removed={} freed_bytes={} dry_run={}", len(report.removed), report.freed_bytes, dry_run
    )
    return report


def session_storage_stats(sessions_dir: Path) -> StorageStats:
    """Aggregate size, emptiness and age across all sessions."""
    stats = StorageStats()
    if not sessions_dir.exists():
        return stats
    try:
        session_dirs = _session_dirs(sessions_dir)
    except OSError as exc:
        warn_storage_issue("List sessions directory", sessions_dir, exc)
        return stats

    for session_dir in session_dirs:
        stats.total_sessions += 1
        stats.total_bytes += _dir_size(session_dir)
        if _count_messages(session_dir) == 0:
            stats.empty_sessions += 1
        if read_session_meta(session_dir).archived:
            stats.archived_sessions += 1
        try:
            mtime = datetime.fromtimestamp(session_dir.stat().st_mtime, tz=UTC)
        except OSError as exc:
            warn_storage_issue("Read session metadata", session_dir, exc)
            continue
        if stats.oldest is None or mtime < stats.oldest:
            stats.oldest = mtime
        if stats.newest is None or mtime > stats.newest:
            stats.newest = mtime
    return stats


def list_sessions(sessions_dir: Path, *, include_archived: bool = False) -> list[SessionSummary]:
    """Summaries of stored sessions, most recently touched first."""
    if not sessions_dir.exists():
        return []
    try:
        session_dirs = _session_dirs(sessions_dir)
    except OSError as exc:
        warn_storage_issue("List sessions directory", sessions_dir, exc)
        return []
    summaries = [_summarize(session_dir) for session_dir in session_dirs]
    if not include_archived:
        summaries = [summary for summary in summaries if not summary.archived]
    oldest = datetime.min.replace(tzinfo=UTC)
    return sorted(summaries, key=lambda summary: summary.updated or oldest, reverse=True)


def _summarize(session_dir: Path) -> SessionSummary:
    meta = read_session_meta(session_dir)
    try:
        updated = datetime.fromtimestamp(session_dir.stat().st_mtime, tz=UTC)
    except OSError as exc:
        warn_storage_issue("Read session metadata", session_dir, exc)
        updated = None
    return SessionSummary(
        session_id=session_dir.name,
        messages=_count_messages(session_dir),
        size_bytes=_dir_size(session_dir),
        tags=list(meta.tags),
        archived=meta.archived,
        updated=updated,
    )
