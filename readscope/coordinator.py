"""
Coordinator: the single writer of the forest and the read-state store.

Producers (the session tailer thread and the file watcher thread) never touch
engine state. They put messages on one queue; the coordinator applies the
messages strictly one at a time in arrival order and, after each one,
publishes an immutable snapshot for consumers.
"""

import queue
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

import structlog

from readscope.backends import SymbolBackend, create_backend
from readscope.backends.serena import SerenaBackend
from readscope.config import EngineConfig
from readscope.correlation.correlator import CorrelationStatus, EventCorrelator
from readscope.correlation.policy import DepthPolicy, PolicyLoader
from readscope.errors import SessionNotFoundError
from readscope.ingest.claude import find_latest_session, log_dir_for_project
from readscope.ingest.tailer import SessionTailer, TailBatch
from readscope.scanner import ProjectScanner
from readscope.symbols.forest import SymbolForest, build_forest
from readscope.symbols.matcher import ReconcileOutcome, ReconcileStatus, TreeMatcher
from readscope.symbols.models import FileTree, Symbol
from readscope.tracking.depth import ReadDepth
from readscope.tracking.store import ReadState, ReadStateStore, aggregate_states
from readscope.watcher import FileWatcher

logger = structlog.get_logger(__name__)


# Inputs


@dataclass(frozen=True)
class FileChanged:
    """A source file changed; ``path=None`` means the symbol source itself changed."""

    path: str | None
    deleted: bool = False


@dataclass(frozen=True)
class SessionEvents:
    """A tailer batch, tagged with the session generation that produced it."""

    generation: int
    batch: TailBatch


@dataclass(frozen=True)
class SwitchSession:
    """Track a different session (latest when ``session_id`` is None)."""

    session_id: str | None = None


Message = FileChanged | SessionEvents | SwitchSession


@dataclass(frozen=True)
class Diagnostics:
    """Counters for absorbed failures and engine activity."""

    parse_failures: int = 0
    unresolved_events: int = 0
    untracked_events: int = 0
    skipped_log_lines: int = 0
    truncations: int = 0
    reconciliations: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "parse_failures": self.parse_failures,
            "unresolved_events": self.unresolved_events,
            "untracked_events": self.untracked_events,
            "skipped_log_lines": self.skipped_log_lines,
            "truncations": self.truncations,
            "reconciliations": self.reconciliations,
        }


UNSEEN = ReadState()


@dataclass(frozen=True)
class Snapshot:
    """Immutable view of forest, read states and diagnostics."""

    revision: int
    session_id: str | None
    files: Mapping[str, FileTree]
    read_states: Mapping[str, Mapping[str, ReadState]]
    agents: tuple[str, ...]
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    def state_of(self, symbol_id: str, agent: str | None = None) -> ReadState:
        """One agent's state, or the aggregate over all agents when ``agent`` is None."""
        per_agent = self.read_states.get(symbol_id, {})
        if agent is not None:
            return per_agent.get(agent, UNSEEN)
        return aggregate_states(per_agent)

    def depth_of(self, symbol_id: str, agent: str | None = None) -> ReadDepth:
        return self.state_of(symbol_id, agent).depth

    def is_stale(self, symbol_id: str, agent: str | None = None) -> bool:
        return self.state_of(symbol_id, agent).stale

    def iter_symbols(self, path: str | None = None) -> Iterator[Symbol]:
        """Real symbols of one file, or of every file in path order."""
        paths = [path] if path is not None else sorted(self.files)
        for file_path in paths:
            tree = self.files.get(file_path)
            if tree is not None:
                yield from tree.symbols()

    def find_symbol(self, symbol_id: str) -> Symbol | None:
        tree = self.files.get(symbol_id.split("::", 1)[0])
        return tree.get(symbol_id) if tree is not None else None


SnapshotCallback = Callable[[Snapshot], None]


class Coordinator:
    """
    Owns the engine state and serializes every change to it.

    Usage:
        coordinator = Coordinator.build(config)
        snapshot = coordinator.catch_up()          # one-shot

        coordinator.subscribe(render)              # live
        coordinator.start()
        ...
        coordinator.stop()
    """

    def __init__(
        self,
        config: EngineConfig,
        backend: SymbolBackend,
        scanner: ProjectScanner,
        forest: SymbolForest,
        policy: DepthPolicy | None = None,
        parse_failures: int = 0,
    ):
        self.config = config
        self.backend = backend
        self.scanner = scanner
        self.forest = forest
        self.store = ReadStateStore()
        self.matcher = TreeMatcher(config.project_root, backend, forest, self.store, scanner)
        self.correlator = EventCorrelator(
            config.project_root, forest, self.store, self.matcher, policy
        )
        self.log_dir = config.log_dir or log_dir_for_project(
            config.project_root, config.projects_dir
        )

        self._diagnostics = Diagnostics(parse_failures=parse_failures)
        self._queue: queue.Queue[Message | None] = queue.Queue()
        self._subscribers: list[SnapshotCallback] = []
        self._generation = 0
        self._session_id: str | None = None
        self._tailer: SessionTailer | None = None
        self._watcher: FileWatcher | None = None
        self._thread: threading.Thread | None = None
        self._revision = 0
        self._latest = self._snapshot()

    @classmethod
    def build(cls, config: EngineConfig) -> "Coordinator":
        """
        Scan the project and build the initial forest.

        Raises:
            ProjectRootError: If the project root cannot be read
            BackendUnavailableError: If the configured backend has no data source
            ConfigError: If the policy file is invalid
        """
        scanner = ProjectScanner(config.project_root, config.ignore_patterns)
        backend = create_backend(config)
        policy = PolicyLoader.from_yaml(config.policy_file) if config.policy_file else None
        forest, failures = build_forest(scanner, backend)
        return cls(config, backend, scanner, forest, policy, parse_failures=failures)

    # Snapshots

    @property
    def latest(self) -> Snapshot:
        """Most recently published snapshot."""
        return self._latest

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def subscribe(self, callback: SnapshotCallback) -> None:
        self._subscribers.append(callback)

    def _snapshot(self) -> Snapshot:
        states = self.store.export()
        return Snapshot(
            revision=self._revision,
            session_id=self._session_id,
            files=MappingProxyType(self.forest.files()),
            read_states=MappingProxyType(
                {sid: MappingProxyType(per_agent) for sid, per_agent in states.items()}
            ),
            agents=self.store.agents(),
            diagnostics=self._diagnostics,
        )

    def _publish(self) -> Snapshot:
        self._revision += 1
        snapshot = self._snapshot()
        self._latest = snapshot
        for callback in list(self._subscribers):
            callback(snapshot)
        return snapshot

    def _count(self, **increments: int) -> None:
        values = {
            name: getattr(self._diagnostics, name) + amount for name, amount in increments.items()
        }
        self._diagnostics = replace(self._diagnostics, **values)

    # Applying inputs

    def apply(self, message: Message) -> Snapshot:
        """
        Apply one input and publish the resulting snapshot.

        Must only be called from one thread at a time: the coordinator thread
        when running, or the caller in one-shot use.
        """
        if isinstance(message, FileChanged):
            self._apply_file_changed(message)
        elif isinstance(message, SessionEvents):
            if message.generation != self._generation:
                logger.debug("stale_batch_dropped", generation=message.generation)
                return self._latest
            self._apply_batch(message.batch)
        elif isinstance(message, SwitchSession):
            self._apply_switch(message.session_id, required=message.session_id is not None)
        return self._publish()

    def _apply_file_changed(self, message: FileChanged) -> None:
        if message.path is None:
            if isinstance(self.backend, SerenaBackend):
                self.backend.reload()
            outcomes = self.matcher.reconcile_all()
        else:
            logger.debug("file_changed", path=message.path, deleted=message.deleted)
            outcomes = [self.matcher.reconcile(message.path)]
        self._record_outcomes(outcomes)

    def _record_outcomes(self, outcomes: list[ReconcileOutcome]) -> None:
        failures = sum(1 for o in outcomes if o.status == ReconcileStatus.PARSE_FAILED)
        done = sum(1 for o in outcomes if o.changed)
        self._count(parse_failures=failures, reconciliations=done)

    def _apply_batch(self, batch: TailBatch) -> None:
        for agent_id in batch.truncated:
            self.store.discard_agent(agent_id)
        for agent_id in batch.agents:
            self.store.register_agent(agent_id)
        self._count(truncations=len(batch.truncated), skipped_log_lines=batch.skipped_lines)

        unresolved = 0
        untracked = 0
        for event in batch.events:
            result = self.correlator.apply(event)
            self._record_outcomes(list(result.reconciled))
            if result.status == CorrelationStatus.UNRESOLVED:
                unresolved += 1
            elif result.status == CorrelationStatus.UNTRACKED:
                untracked += 1
        self._count(unresolved_events=unresolved, untracked_events=untracked)

    def _apply_switch(self, session_id: str | None, required: bool) -> None:
        """
        Replace the tracked session.

        The old tailer is stopped first and its generation retired, so no
        batch it produced can be applied afterwards.

        Raises:
            SessionNotFoundError: If a requested session does not exist
        """
        running = self._thread is not None
        self._stop_tailer()
        self._generation += 1
        self.store.clear()
        self._session_id = None

        try:
            target = session_id or find_latest_session(self.log_dir)
            tailer = SessionTailer(
                self.log_dir,
                target,
                sink=self._sink_for(self._generation),
                poll_interval=self.config.poll_interval_seconds,
            )
        except SessionNotFoundError as exc:
            if required:
                raise
            logger.warning("no_session", log_dir=str(self.log_dir), reason=str(exc))
            return

        self._tailer = tailer
        self._session_id = target
        logger.info("session_selected", session=target, logs=len(tailer.logs))
        if running:
            tailer.start()

    def _sink_for(self, generation: int) -> Callable[[TailBatch], None]:
        def sink(batch: TailBatch) -> None:
            self.submit(SessionEvents(generation, batch))

        return sink

    def _stop_tailer(self) -> None:
        if self._tailer is not None:
            self._tailer.stop()
            self._tailer = None

    # One-shot use

    def open_session(self, session_id: str | None = None) -> Snapshot:
        """
        Select the session to track without starting any thread.

        Raises:
            SessionNotFoundError: If an explicitly requested session does not exist
        """
        return self.apply(SwitchSession(session_id))

    def catch_up(self) -> Snapshot:
        """Read everything currently in the session logs and apply it."""
        if self._tailer is None:
            return self._latest
        return self.apply(SessionEvents(self._generation, self._tailer.poll()))

    # Live operation

    def submit(self, message: Message) -> None:
        """Queue an input for the coordinator thread (safe from any thread)."""
        self._queue.put(message)

    def start(self, watch_files: bool = True) -> None:
        """Start the coordinator thread, the tailer thread and the file watcher."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="coordinator", daemon=True)
        self._thread.start()
        if self._tailer is not None:
            self._tailer.start()
        if watch_files:
            cache_dir = self.backend.cache_dir if isinstance(self.backend, SerenaBackend) else None
            self._watcher = FileWatcher(
                self.scanner,
                lambda path, deleted: self.submit(FileChanged(path, deleted)),
                self.backend.supports_path,
                cache_dir=cache_dir,
            )
            self._watcher.start()
        logger.info("coordinator_started", session=self._session_id)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop producers first, then drain the queue and stop the coordinator thread."""
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        if self._tailer is not None:
            self._tailer.stop()
        if self._thread is not None:
            self._queue.put(None)
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while True:
            message = self._queue.get()
            if message is None:
                break
            try:
                self.apply(message)
            except SessionNotFoundError as exc:
                logger.error("session_switch_failed", error=str(exc))
                self._publish()
