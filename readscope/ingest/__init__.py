"""
Session log ingestion.

Discovers Claude Code session logs, tails them, and normalizes their tool
calls into ToolUseEvents.
"""

from readscope.ingest.claude import (
    SessionInfo,
    SessionLog,
    find_latest_session,
    list_sessions,
    log_dir_for_project,
    session_log_files,
)
from readscope.ingest.events import ToolUseEvent, normalize_tool_use
from readscope.ingest.tailer import LogCursor, SessionTailer, TailBatch

__all__ = [
    "LogCursor",
    "SessionInfo",
    "SessionLog",
    "SessionTailer",
    "TailBatch",
    "ToolUseEvent",
    "find_latest_session",
    "list_sessions",
    "log_dir_for_project",
    "normalize_tool_use",
    "session_log_files",
]
