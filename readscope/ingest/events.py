"""
Normalized tool-use events.

Tool calls read from a session log are reduced to one shape regardless of
which tool produced them: who called it, on which file, over which lines,
with which pattern, plus the raw input for tool-specific resolution.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# MCP namespaces whose tools are matched by their bare name
TOOL_PREFIXES = (
    "mcp__plugin_serena_serena__",
    "mcp__serena__",
    "mcp__acp__",
)

PATH_KEYS = ("file_path", "notebook_path", "relative_path", "path")
PATTERN_KEYS = ("pattern", "substring_pattern", "name_path_pattern", "name_path", "file_mask")


def short_tool_name(name: str) -> str:
    """Strip a known MCP namespace from a tool name."""
    for prefix in TOOL_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


class ToolUseEvent(BaseModel):
    """One tool invocation by one agent."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., description="Deterministic id: <agent>:<line offset>:<content index>")
    agent_id: str = Field(..., description="Agent that issued the call")
    timestamp: str | None = Field(default=None, description="Record timestamp as logged")
    tool_name: str = Field(..., description="Tool name as logged")
    file_path: str | None = Field(default=None, description="Target file or directory")
    start_line: int | None = Field(default=None, description="First targeted line (1-based)")
    end_line: int | None = Field(default=None, description="Last targeted line (1-based, inclusive)")
    pattern: str | None = Field(default=None, description="Glob, regex or name path argument")
    payload: dict[str, Any] = Field(default_factory=dict, description="Raw tool input")

    @property
    def short_name(self) -> str:
        return short_tool_name(self.tool_name)

    def describe(self) -> str:
        """One-line human summary, e.g. ``Read src/app.py:10-20``."""
        target = self.file_path or self.pattern or ""
        if self.file_path and self.start_line is not None:
            end = f"-{self.end_line}" if self.end_line is not None else ""
            target = f"{target}:{self.start_line}{end}"
        return f"{self.short_name} {target}".strip()


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _line_range(payload: dict[str, Any]) -> tuple[int | None, int | None]:
    """
    Targeted line range from a tool input.

    ``offset``/``limit`` are 1-based (Read); ``start_line``/``end_line`` are
    0-based and inclusive (Serena read_file).
    """
    offset = _as_int(payload.get("offset"))
    limit = _as_int(payload.get("limit"))
    if offset is not None or limit is not None:
        start = max(offset or 1, 1)
        end = start + limit - 1 if limit is not None and limit > 0 else None
        return start, end

    first = _as_int(payload.get("start_line"))
    last = _as_int(payload.get("end_line"))
    if first is not None or last is not None:
        start = (first or 0) + 1
        end = last + 1 if last is not None and last >= 0 else None
        return start, end
    return None, None


def normalize_tool_use(
    agent_id: str,
    line_offset: int,
    content_index: int,
    tool_name: str,
    payload: Any,
    timestamp: str | None = None,
) -> ToolUseEvent:
    """
    Build an event from one ``tool_use`` content entry.

    Args:
        agent_id: Agent owning the log
        line_offset: Byte offset of the record's line in its log
        content_index: Position of the entry in the message content
        tool_name: Logged tool name
        payload: Logged tool input (non-mappings become an empty payload)
        timestamp: Record timestamp, if any
    """
    data = dict(payload) if isinstance(payload, dict) else {}
    file_path = next(
        (data[k] for k in PATH_KEYS if isinstance(data.get(k), str) and data[k]),
        None,
    )
    pattern = next(
        (data[k] for k in PATTERN_KEYS if isinstance(data.get(k), str) and data[k]),
        None,
    )
    start_line, end_line = _line_range(data)
    return ToolUseEvent(
        event_id=f"{agent_id}:{line_offset}:{content_index}",
        agent_id=agent_id,
        timestamp=timestamp,
        tool_name=tool_name,
        file_path=file_path,
        start_line=start_line,
        end_line=end_line,
        pattern=pattern,
        payload=data,
    )
