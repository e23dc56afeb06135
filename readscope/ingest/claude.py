"""
Claude Code session log discovery and record parsing.

Logs live in ``~/.claude/projects/<slug>/`` where the slug is the project's
absolute path with every character other than letters, digits and ``-``
replaced by ``-``. Each session writes ``<session-id>.jsonl``; sub-agents
write ``agent-<id>.jsonl`` either under ``<session-id>/subagents/`` or, in
older versions, flat beside the session log.
"""

import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from readscope.errors import LogFormatError, SessionNotFoundError
from readscope.ingest.events import ToolUseEvent, normalize_tool_use

logger = structlog.get_logger(__name__)

SESSIONS_INDEX = "sessions-index.json"
AGENT_LOG_PREFIX = "agent-"
LOG_SUFFIX = ".jsonl"
AGENT_RECORD_TYPE = "assistant"
OWNERSHIP_SCAN_LINES = 3

UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
SLUG_PATTERN = re.compile(r"[^A-Za-z0-9-]")


@dataclass(frozen=True)
class SessionLog:
    """One log file tracked for a session."""

    agent_id: str
    path: Path
    parent_id: str | None = None

    @property
    def is_subagent(self) -> bool:
        return self.parent_id is not None


@dataclass(frozen=True)
class SessionInfo:
    """A recorded session found in a log directory."""

    session_id: str
    path: Path
    modified: datetime
    size: int


def project_slug(project_root: Path) -> str:
    """Directory name Claude Code uses for a project's logs."""
    return SLUG_PATTERN.sub("-", str(Path(project_root).expanduser().resolve()))


def log_dir_for_project(project_root: Path, projects_dir: Path | None = None) -> Path:
    """
    Session log directory for a project.

    Args:
        project_root: Project root directory
        projects_dir: Parent of per-project log directories (~/.claude/projects)
    """
    base = projects_dir or Path.home() / ".claude" / "projects"
    return Path(base).expanduser() / project_slug(project_root)


def is_session_id(value: str) -> bool:
    return bool(UUID_PATTERN.match(value))


def list_sessions(log_dir: Path) -> list[SessionInfo]:
    """
    List non-empty session logs, most recently modified first.

    Args:
        log_dir: Project log directory

    Returns:
        Session summaries (empty when the directory does not exist)
    """
    if not log_dir.is_dir():
        return []
    sessions: list[SessionInfo] = []
    for path in log_dir.iterdir():
        if path.suffix != LOG_SUFFIX or not is_session_id(path.stem) or not path.is_file():
            continue
        stat = path.stat()
        if stat.st_size == 0:
            continue
        sessions.append(
            SessionInfo(
                session_id=path.stem,
                path=path,
                modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                size=stat.st_size,
            )
        )
    sessions.sort(key=lambda s: (s.modified, s.session_id), reverse=True)
    return sessions


def _session_from_index(log_dir: Path) -> str | None:
    """Latest non-sidechain session from sessions-index.json, if present."""
    index_path = log_dir / SESSIONS_INDEX
    if not index_path.is_file():
        return None
    try:
        data = json.loads(index_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("sessions_index_unreadable", path=str(index_path), error=str(exc))
        return None

    entries = data.get("entries") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        return None
    candidates = [
        e
        for e in entries
        if isinstance(e, dict)
        and not e.get("isSidechain", False)
        and isinstance(e.get("sessionId"), str)
    ]
    if not candidates:
        return None
    latest = max(candidates, key=lambda e: str(e.get("modified") or ""))
    return latest["sessionId"]


def find_latest_session(log_dir: Path) -> str:
    """
    Pick the session to track when none is given.

    Prefers the legacy sessions-index.json; otherwise the most recently
    modified non-empty UUID-named log.

    Raises:
        SessionNotFoundError: If the directory holds no session
    """
    session_id = _session_from_index(log_dir)
    if session_id is not None:
        return session_id
    sessions = list_sessions(log_dir)
    if not sessions:
        raise SessionNotFoundError(f"No session logs found in {log_dir}")
    return sessions[0].session_id


def agent_session_id(path: Path) -> str | None:
    """Parent session named by the first records of a flat sub-agent log, if any yet."""
    try:
        with path.open(encoding="utf-8", errors="replace") as handle:
            for _ in range(OWNERSHIP_SCAN_LINES):
                line = handle.readline()
                if not line:
                    break
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(record, dict) and isinstance(record.get("sessionId"), str):
                    return record["sessionId"]
    except OSError:
        return None
    return None


def session_log_files(
    log_dir: Path,
    session_id: str,
    rejected: set[Path] | None = None,
) -> list[SessionLog]:
    """
    All logs belonging to a session: the primary log first, then sub-agents.

    Args:
        log_dir: Project log directory
        session_id: Session to collect
        rejected: Flat sub-agent logs known to belong to other sessions. They
            are not opened again, and newly rejected logs are added.

    Returns:
        Logs in a stable order (primary, nested sub-agents, flat sub-agents)

    Raises:
        SessionNotFoundError: If the primary log does not exist
    """
    primary = log_dir / f"{session_id}{LOG_SUFFIX}"
    if not primary.is_file():
        raise SessionNotFoundError(f"Session {session_id} not found in {log_dir}")

    logs = [SessionLog(agent_id=session_id, path=primary)]
    seen: set[str] = set()

    nested_dir = log_dir / session_id / "subagents"
    if nested_dir.is_dir():
        for path in sorted(nested_dir.glob(f"{AGENT_LOG_PREFIX}*{LOG_SUFFIX}")):
            seen.add(path.stem)
            logs.append(SessionLog(agent_id=path.stem, path=path, parent_id=session_id))

    for path in sorted(log_dir.glob(f"{AGENT_LOG_PREFIX}*{LOG_SUFFIX}")):
        if path.stem in seen or (rejected is not None and path in rejected):
            continue
        owner = agent_session_id(path)
        if owner != session_id:
            # A log with no session yet is checked again on the next call.
            if owner is not None and rejected is not None:
                rejected.add(path)
            continue
        logs.append(SessionLog(agent_id=path.stem, path=path, parent_id=session_id))

    return logs


def parse_record(line: str | bytes) -> dict[str, Any]:
    """
    Parse one log line.

    Raises:
        LogFormatError: If the line is not a JSON object with a string ``type``
    """
    try:
        record = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise LogFormatError(f"Invalid JSON record: {exc}") from exc
    if not isinstance(record, dict):
        raise LogFormatError("Record is not an object")
    if not isinstance(record.get("type"), str):
        raise LogFormatError("Record has no message type")
    return record


def events_from_record(
    record: dict[str, Any],
    agent_id: str,
    line_offset: int,
) -> list[ToolUseEvent]:
    """
    Extract tool invocations from one parsed record.

    Only agent-produced (``assistant``) records carry tool calls; every other
    message kind yields nothing.
    """
    if record.get("type") != AGENT_RECORD_TYPE:
        return []
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []

    timestamp = record.get("timestamp") if isinstance(record.get("timestamp"), str) else None
    events: list[ToolUseEvent] = []
    for index, entry in enumerate(content):
        if not isinstance(entry, dict) or entry.get("type") != "tool_use":
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            continue
        events.append(
            normalize_tool_use(
                agent_id=agent_id,
                line_offset=line_offset,
                content_index=index,
                tool_name=name,
                payload=entry.get("input"),
                timestamp=timestamp,
            )
        )
    return events
