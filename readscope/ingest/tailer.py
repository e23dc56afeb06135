"""
Session Tailer: incremental reading of growing session logs.

One cursor per log file tracks the byte offset consumed so far and any
trailing partial line. A poll reads what was appended since the previous
poll and turns complete lines into tool-use events, in file order.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from readscope.errors import LogFormatError, SessionNotFoundError, TruncationError
from readscope.ingest.claude import SessionLog, events_from_record, parse_record, session_log_files
from readscope.ingest.events import ToolUseEvent

logger = structlog.get_logger(__name__)


@dataclass
class LogCursor:
    """Read position within one log."""

    offset: int = 0
    pending: bytes = b""

    def reset(self) -> None:
        self.offset = 0
        self.pending = b""


@dataclass(frozen=True)
class TailBatch:
    """Everything one poll produced."""

    events: tuple[ToolUseEvent, ...] = ()
    truncated: tuple[str, ...] = ()
    skipped_lines: int = 0
    agents: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.truncated and not self.skipped_lines


@dataclass
class _LogReader:
    log: SessionLog
    cursor: LogCursor = field(default_factory=LogCursor)

    def read(self) -> tuple[list[ToolUseEvent], int]:
        """
        Consume appended bytes.

        Returns:
            Events in file order and the number of skipped lines

        Raises:
            TruncationError: If the file is now shorter than the cursor
        """
        path = self.log.path
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return [], 0
        if size < self.cursor.offset:
            raise TruncationError(str(path), size, self.cursor.offset)
        if size == self.cursor.offset:
            return [], 0

        with path.open("rb") as handle:
            handle.seek(self.cursor.offset)
            chunk = handle.read(size - self.cursor.offset)

        line_start = self.cursor.offset - len(self.cursor.pending)
        data = self.cursor.pending + chunk
        self.cursor.offset += len(chunk)

        *lines, remainder = data.split(b"\n")
        self.cursor.pending = remainder

        events: list[ToolUseEvent] = []
        skipped = 0
        for line in lines:
            offset = line_start
            line_start += len(line) + 1
            text = line.rstrip(b"\r")
            if not text.strip():
                continue
            try:
                record = parse_record(text)
            except LogFormatError as exc:
                skipped += 1
                logger.debug("log_line_skipped", path=str(path), offset=offset, error=str(exc))
                continue
            events.extend(events_from_record(record, self.log.agent_id, offset))
        return events, skipped


class SessionTailer:
    """
    Follows every log of one session.

    Usage:
        tailer = SessionTailer(log_dir, session_id)
        batch = tailer.poll()

        # or in the background, delivering batches to a callback
        tailer = SessionTailer(log_dir, session_id, sink=on_batch)
        tailer.start()
        ...
        tailer.stop()
    """

    def __init__(
        self,
        log_dir: Path,
        session_id: str,
        sink: Callable[[TailBatch], None] | None = None,
        poll_interval: float = 0.25,
    ):
        """
        Initialize a tailer.

        Raises:
            SessionNotFoundError: If the session's primary log does not exist
        """
        self.log_dir = Path(log_dir)
        self.session_id = session_id
        self.sink = sink
        self.poll_interval = poll_interval
        self._readers: dict[Path, _LogReader] = {}
        self._rejected: set[Path] = set()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._discover(required=True)

    @property
    def logs(self) -> list[SessionLog]:
        return [reader.log for reader in self._readers.values()]

    def _discover(self, required: bool = False) -> None:
        """Pick up logs created since the last discovery."""
        try:
            logs = session_log_files(self.log_dir, self.session_id, self._rejected)
        except SessionNotFoundError:
            if required:
                raise
            logger.warning("session_log_missing", session=self.session_id)
            return
        for log in logs:
            if log.path not in self._readers:
                self._readers[log.path] = _LogReader(log)
                logger.info("log_tracked", agent=log.agent_id, path=str(log.path))

    def poll(self) -> TailBatch:
        """
        Read everything appended since the previous poll.

        A log that shrank is reported in ``truncated`` and re-read from its
        start within the same poll.
        """
        self._discover()
        events: list[ToolUseEvent] = []
        truncated: list[str] = []
        skipped = 0

        for reader in list(self._readers.values()):
            try:
                found, bad = reader.read()
            except TruncationError as exc:
                logger.warning(
                    "log_truncated", agent=reader.log.agent_id, size=exc.size, offset=exc.offset
                )
                truncated.append(reader.log.agent_id)
                reader.cursor.reset()
                found, bad = reader.read()
            events.extend(found)
            skipped += bad

        return TailBatch(
            events=tuple(events),
            truncated=tuple(truncated),
            skipped_lines=skipped,
            agents=tuple(reader.log.agent_id for reader in self._readers.values()),
        )

    def start(self) -> None:
        """Poll on a background thread, passing non-empty batches to the sink."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"tailer-{self.session_id[:8]}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop polling; the current read, if any, completes first."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                batch = self.poll()
            except OSError as exc:
                logger.warning("log_read_failed", session=self.session_id, error=str(exc))
            else:
                if self.sink is not None and not batch.is_empty:
                    self.sink(batch)
            self._stop.wait(self.poll_interval)
