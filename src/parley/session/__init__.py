"""Session persistence and multi-tenant lifecycle."""

from parley.session.multiplexer import SessionHandle, SessionMultiplexer
from parley.session.store import (
    SessionMeta,
    SessionStore,
    cleanup_sessions,
    list_sessions,
    read_session_meta,
    sanitize_session_id,
    session_storage_stats,
    write_session_meta,
)

__all__ = [
    "SessionHandle",
    "SessionMeta",
    "SessionMultiplexer",
    "SessionStore",
    "cleanup_sessions",
    "list_sessions",
    "read_session_meta",
    "sanitize_session_id",
    "session_storage_stats",
    "write_session_meta",
]
