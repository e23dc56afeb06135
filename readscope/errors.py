"""
Error taxonomy for the coverage engine.

Per-file and per-event failures are absorbed where they occur and only show
up as diagnostic counters. Only an unreadable project root, an explicitly
requested session that does not exist, and an explicitly requested backend
whose data source is missing end a run.
"""


class ReadscopeError(Exception):
    """Base class for all engine errors."""


class ParseError(ReadscopeError):
    """A backend could not produce a symbol tree for one file."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot parse {path}: {reason}")


class LogFormatError(ReadscopeError):
    """A session log line is not a well-formed record."""


class SessionNotFoundError(ReadscopeError):
    """No session log matches the requested or auto-detected session."""


class TruncationError(ReadscopeError):
    """A session log shrank since it was last read."""

    def __init__(self, path: str, size: int, offset: int):
        self.path = path
        self.size = size
        self.offset = offset
        super().__init__(f"Log {path} shrank to {size} bytes (cursor at {offset})")


class UnresolvedEventError(ReadscopeError):
    """A tool-use event references content absent from the forest."""


class BackendUnavailableError(ReadscopeError):
    """The selected symbol backend has no data source."""


class ProjectRootError(ReadscopeError):
    """The project root does not exist or cannot be read."""


class ConfigError(ReadscopeError):
    """A configuration or policy file is invalid."""
