"""
Event Correlator.

Resolves one tool-use event at a time to target symbols and the depth each
one receives, then merges those depths into the Read-State Store. Resolution
depends only on the event and the current forest: files are visited in
sorted order and symbols in pre-order, so replaying a log reproduces the
same state.
"""

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pathspec import GitIgnoreSpec

from readscope.correlation.policy import CallShape, DepthPolicy, PolicyLoader
from readscope.errors import UnresolvedEventError
from readscope.ingest.events import ToolUseEvent
from readscope.scanner import relative_to_root
from readscope.symbols.forest import SymbolForest
from readscope.symbols.matcher import ReconcileOutcome, ReconcileStatus, TreeMatcher
from readscope.symbols.models import FileTree, Symbol
from readscope.tracking.depth import ReadDepth
from readscope.tracking.store import ReadStateStore

logger = structlog.get_logger(__name__)

# (start_line, end_line), 1-based inclusive
LineRange = tuple[int, int]


class CorrelationStatus(str, Enum):
    """Outcome of applying one event."""

    APPLIED = "applied"
    UNRESOLVED = "unresolved"
    UNTRACKED = "untracked"


@dataclass(frozen=True)
class CorrelationResult:
    """What one event did to the store."""

    event_id: str
    agent_id: str
    status: CorrelationStatus
    shape: CallShape | None = None
    targets: dict[str, ReadDepth] = field(default_factory=dict)
    changed: int = 0
    reconciled: tuple[ReconcileOutcome, ...] = ()
    reason: str | None = None


class _Targets:
    """Accumulates per-symbol contributions, keeping the deepest."""

    def __init__(self) -> None:
        self.depths: dict[str, ReadDepth] = {}

    def add(self, symbol: Symbol, depth: ReadDepth) -> None:
        if symbol.is_root or depth <= ReadDepth.UNSEEN:
            return
        current = self.depths.get(symbol.id)
        if current is None or depth > current:
            self.depths[symbol.id] = depth

    def add_all(self, symbols: Iterable[Symbol], depth: ReadDepth) -> None:
        for symbol in symbols:
            self.add(symbol, depth)


class EventCorrelator:
    """
    Maps tool-use events onto the read-state lattice.

    Usage:
        correlator = EventCorrelator(root, forest, store, matcher)
        result = correlator.apply(event)
    """

    def __init__(
        self,
        root: Path,
        forest: SymbolForest,
        store: ReadStateStore,
        matcher: TreeMatcher,
        policy: DepthPolicy | None = None,
    ):
        self.root = Path(root)
        self.forest = forest
        self.store = store
        self.matcher = matcher
        self.policy = policy or PolicyLoader.defaults()

    def apply(self, event: ToolUseEvent) -> CorrelationResult:
        """
        Resolve an event and merge its contributions.

        Args:
            event: Normalized tool-use event

        Returns:
            Result listing targets, changed states and any reconciliation
        """
        self.store.register_agent(event.agent_id)
        shape = self.policy.shape_for(event.tool_name)
        if shape is None:
            logger.debug("event_untracked", event_id=event.event_id, tool=event.tool_name)
            return CorrelationResult(
                event_id=event.event_id,
                agent_id=event.agent_id,
                status=CorrelationStatus.UNTRACKED,
            )

        reconciled: list[ReconcileOutcome] = []
        targets = _Targets()
        try:
            self._resolve(shape, event, targets, reconciled)
            touched = any(o.status != ReconcileStatus.SKIPPED for o in reconciled)
            if not targets.depths and not touched:
                raise UnresolvedEventError(f"No symbols matched {event.describe()}")
        except UnresolvedEventError as exc:
            logger.debug("event_unresolved", event_id=event.event_id, reason=str(exc))
            return CorrelationResult(
                event_id=event.event_id,
                agent_id=event.agent_id,
                status=CorrelationStatus.UNRESOLVED,
                shape=shape,
                reconciled=tuple(reconciled),
                reason=str(exc),
            )

        changed = 0
        for symbol_id, depth in targets.depths.items():
            if self.store.observe(symbol_id, event.agent_id, depth, event.event_id):
                changed += 1

        logger.debug(
            "event_applied",
            event_id=event.event_id,
            shape=shape.value,
            targets=len(targets.depths),
            changed=changed,
        )
        return CorrelationResult(
            event_id=event.event_id,
            agent_id=event.agent_id,
            status=CorrelationStatus.APPLIED,
            shape=shape,
            targets=dict(targets.depths),
            changed=changed,
            reconciled=tuple(reconciled),
        )

    def _resolve(
        self,
        shape: CallShape,
        event: ToolUseEvent,
        targets: _Targets,
        reconciled: list[ReconcileOutcome],
    ) -> None:
        depth = self.policy.depth_for(shape)
        if shape == CallShape.ENUMERATE:
            for tree in self._enumerated_files(event):
                targets.add_all(tree.symbols(), depth)
        elif shape == CallShape.SEARCH:
            self._resolve_search(event, targets, depth)
        elif shape == CallShape.OUTLINE:
            for tree in self._files_in_scope(event.file_path):
                targets.add_all(tree.top_level, depth)
        elif shape == CallShape.READ:
            tree = self._require_file(event.file_path)
            start = event.start_line or 1
            end = event.end_line if event.end_line is not None else tree.line_count
            self._cover_ranges(tree, [(start, end)], depth, targets)
        elif shape == CallShape.MODIFY:
            self._resolve_modify(event, targets, depth, reconciled)
        elif shape == CallShape.SYMBOL_LOOKUP:
            self._resolve_lookup(event, targets)
        elif shape == CallShape.SYMBOL_REFERENCES:
            targets.add_all(self._named_symbols(event, self._name_path(event)), depth)
        elif shape == CallShape.SYMBOL_EDIT:
            self._resolve_symbol_edit(event, targets, depth, reconciled)

    # Paths and scopes

    def _relative(self, path: str | None) -> str:
        if path is None:
            return ""
        rel = relative_to_root(self.root, path)
        if rel is None:
            raise UnresolvedEventError(f"Path outside project root: {path}")
        return rel

    def _require_file(self, path: str | None) -> FileTree:
        if not path:
            raise UnresolvedEventError("Event names no file")
        rel = self._relative(path)
        tree = self.forest.get_tree(rel) if rel else None
        if tree is None:
            raise UnresolvedEventError(f"File not tracked: {path}")
        return tree

    def _files_in_scope(self, path: str | None, recursive: bool = True) -> Iterator[FileTree]:
        """Trees for a file path, or for files under a directory (root when None)."""
        rel = self._relative(path)
        if rel and rel in self.forest:
            yield self.forest.get_tree(rel)
            return
        prefix = f"{rel}/" if rel else ""
        for candidate in self.forest.paths():
            if not candidate.startswith(prefix):
                continue
            if not recursive and "/" in candidate[len(prefix):]:
                continue
            yield self.forest.get_tree(candidate)

    def _enumerated_files(self, event: ToolUseEvent) -> list[FileTree]:
        payload = event.payload
        glob = payload.get("pattern")
        mask = payload.get("file_mask")
        rel_dir = self._relative(event.file_path)
        if rel_dir and rel_dir in self.forest:
            return [self.forest.get_tree(rel_dir)]

        if isinstance(mask, str) and mask:
            spec = GitIgnoreSpec.from_lines([mask])
        elif isinstance(glob, str) and glob:
            spec = GitIgnoreSpec.from_lines([_anchor(glob)])
        else:
            recursive = bool(payload.get("recursive", False))
            return list(self._files_in_scope(event.file_path, recursive=recursive))

        prefix = f"{rel_dir}/" if rel_dir else ""
        return [
            self.forest.get_tree(path)
            for path in self.forest.paths()
            if path.startswith(prefix) and spec.match_file(path[len(prefix):])
        ]

    # Shapes

    def _resolve_search(self, event: ToolUseEvent, targets: _Targets, depth: ReadDepth) -> None:
        pattern = event.payload.get("pattern") or event.payload.get("substring_pattern")
        if not isinstance(pattern, str) or not pattern:
            raise UnresolvedEventError("Search without a pattern")
        matcher = _compile_search(pattern, bool(event.payload.get("-i", False)))

        include = event.payload.get("glob") or event.payload.get("paths_include_glob")
        include_spec = (
            GitIgnoreSpec.from_lines([include]) if isinstance(include, str) and include else None
        )
        rel_dir = self._relative(event.file_path)
        prefix = f"{rel_dir}/" if rel_dir and rel_dir not in self.forest else ""

        for tree in self._files_in_scope(event.file_path):
            if include_spec is not None and not include_spec.match_file(tree.path[len(prefix):]):
                continue
            lines = [
                number
                for number, text in enumerate(tree.source.split("\n"), start=1)
                if matcher.search(text)
            ]
            for line in lines:
                targets.add_all(
                    (s for s in tree.symbols() if s.span.contains_line(line)),
                    depth,
                )

    def _cover_ranges(
        self,
        tree: FileTree,
        ranges: list[LineRange],
        depth: ReadDepth,
        targets: _Targets,
    ) -> None:
        """Symbols inside a range get ``depth``; partly covered ones the partial depth."""
        partial = self.policy.partial_depth
        for first, last in ranges:
            for symbol in tree.symbols():
                if symbol.span.within_lines(first, last):
                    targets.add(symbol, depth)
                elif symbol.span.overlaps_lines(first, last):
                    targets.add(symbol, partial)

    def _resolve_modify(
        self,
        event: ToolUseEvent,
        targets: _Targets,
        depth: ReadDepth,
        reconciled: list[ReconcileOutcome],
    ) -> None:
        if not event.file_path:
            raise UnresolvedEventError("Edit names no file")
        rel = self._relative(event.file_path)
        if not rel:
            raise UnresolvedEventError(f"Edit target is not a file: {event.file_path}")

        before = self.forest.get_tree(rel)
        reconciled.append(self.matcher.reconcile(rel))
        tree = self.forest.get_tree(rel)
        if tree is None:
            return

        if _writes_whole_file(event):
            self._cover_ranges(tree, [(1, tree.line_count)], depth, targets)
            return
        replacements = _replacements(event.payload)
        ranges = _replayed_ranges(before.source, tree.source, replacements) if before else None
        if ranges is None:
            ranges = _unambiguous_ranges(tree.source, replacements)
        self._cover_ranges(tree, ranges, depth, targets)

    def _resolve_lookup(self, event: ToolUseEvent, targets: _Targets) -> None:
        include_body = bool(event.payload.get("include_body", False))
        depth = self.policy.body_depth if include_body else self.policy.depth_for(CallShape.SYMBOL_LOOKUP)
        levels = event.payload.get("depth", 0)
        levels = levels if isinstance(levels, int) and not isinstance(levels, bool) else 0
        substring = bool(event.payload.get("substring_matching", False))

        for symbol in self._named_symbols(event, self._name_path(event), substring):
            targets.add(symbol, depth)
            for descendant, distance in _descendants(symbol):
                if distance <= levels:
                    targets.add(descendant, self.policy.descendant_depth)

    def _resolve_symbol_edit(
        self,
        event: ToolUseEvent,
        targets: _Targets,
        depth: ReadDepth,
        reconciled: list[ReconcileOutcome],
    ) -> None:
        name_path = self._name_path(event)
        rel = self._relative(event.file_path) if event.file_path else ""
        if rel:
            reconciled.append(self.matcher.reconcile(rel))

        new_name = event.payload.get("new_name")
        found = list(self._named_symbols(event, name_path))
        if not found and isinstance(new_name, str) and new_name:
            renamed = "/".join([*name_path.rstrip("/").split("/")[:-1], new_name])
            found = list(self._named_symbols(event, renamed))
        targets.add_all(found, depth)

    # Name paths

    def _name_path(self, event: ToolUseEvent) -> str:
        for key in ("name_path_pattern", "name_path"):
            value = event.payload.get(key)
            if isinstance(value, str) and value.strip("/"):
                return value
        raise UnresolvedEventError("Symbol call without a name path")

    def _named_symbols(
        self,
        event: ToolUseEvent,
        name_path: str,
        substring: bool = False,
    ) -> Iterator[Symbol]:
        absolute = name_path.startswith("/")
        wanted = [part for part in name_path.strip("/").split("/") if part]
        for tree in self._files_in_scope(event.file_path):
            for symbol in tree.symbols():
                if _name_path_matches(symbol.name_path, wanted, absolute, substring):
                    yield symbol


def _anchor(glob: str) -> str:
    """Anchor a glob to the searched directory, as shell globs are."""
    return glob if glob.startswith("/") else f"/{glob}"


def _compile_search(pattern: str, ignore_case: bool) -> re.Pattern[str]:
    flags = re.IGNORECASE if ignore_case else 0
    try:
        return re.compile(pattern, flags)
    except re.error:
        return re.compile(re.escape(pattern), flags)


def _writes_whole_file(event: ToolUseEvent) -> bool:
    payload = event.payload
    return isinstance(payload.get("content"), str) and "new_string" not in payload and "edits" not in payload


@dataclass(frozen=True)
class _Replacement:
    """One text replacement carried by an edit call."""

    old: str
    new: str
    every: bool = False
    regex: bool = False


def _replacements(payload: dict[str, Any]) -> list[_Replacement]:
    """Replacements of an edit call, in the order they were applied."""
    found: list[_Replacement] = []
    edits = payload.get("edits")
    if isinstance(edits, list):
        for edit in edits:
            if isinstance(edit, dict) and isinstance(edit.get("new_string"), str):
                found.append(
                    _Replacement(
                        str(edit.get("old_string") or ""),
                        edit["new_string"],
                        bool(edit.get("replace_all", False)),
                    )
                )
    elif isinstance(payload.get("new_string"), str):
        found.append(
            _Replacement(
                str(payload.get("old_string") or ""),
                payload["new_string"],
                bool(payload.get("replace_all", False)),
            )
        )
    elif isinstance(payload.get("repl"), str):
        found.append(
            _Replacement(
                str(payload.get("needle") or ""),
                payload["repl"],
                bool(payload.get("allow_multiple_occurrences", False)),
                regex=payload.get("mode") == "regex",
            )
        )
    return found


def _occurrences(text: str, replacement: _Replacement) -> list[tuple[int, int, str]]:
    """(start, end, inserted text) for every place the replacement applies."""
    if not replacement.old:
        return []
    if not replacement.regex:
        hits = []
        start = text.find(replacement.old)
        while start != -1:
            hits.append((start, start + len(replacement.old), replacement.new))
            start = text.find(replacement.old, start + len(replacement.old))
        return hits
    try:
        matches = list(re.finditer(replacement.old, text, re.MULTILINE | re.DOTALL))
    except re.error:
        return []
    hits = []
    for match in matches:
        try:
            inserted = match.expand(replacement.new)
        except (re.error, IndexError):
            inserted = replacement.new
        hits.append((match.start(), match.end(), inserted))
    return hits


def _shift(offset: int, start: int, end: int, inserted: int) -> int:
    if offset <= start:
        return offset
    if offset >= end:
        return offset + inserted - (end - start)
    return start + inserted


def _replayed_ranges(
    before: str, after: str, replacements: list[_Replacement]
) -> list[LineRange] | None:
    """
    Replay the replacements on the previous text and return the edited lines.

    Edit calls name a unique old string unless they replace every occurrence,
    so each replacement must apply exactly once (or at least once when
    ``every`` is set). Returns None when a replacement does not apply that
    way or the replayed text differs from ``after``.
    """
    if not replacements:
        return None
    text = before
    spans: list[tuple[int, int]] = []
    for replacement in replacements:
        hits = _occurrences(text, replacement)
        if not hits or (len(hits) > 1 and not replacement.every):
            return None
        for start, end, inserted in reversed(hits):
            size = len(inserted)
            spans = [(_shift(a, start, end, size), _shift(b, start, end, size)) for a, b in spans]
            text = text[:start] + inserted + text[end:]
            spans.append((start, start + size))
    if text != after:
        return None
    return [_line_range(text, start, end) for start, end in spans]


def _unambiguous_ranges(source: str, replacements: list[_Replacement]) -> list[LineRange]:
    """Lines of inserted text found once in the current source (every hit for replace-all)."""
    ranges: list[LineRange] = []
    for replacement in replacements:
        if not replacement.new or replacement.regex:
            continue
        hits = _occurrences(source, _Replacement(replacement.new, replacement.new))
        if len(hits) == 1 or (hits and replacement.every):
            ranges.extend(_line_range(source, start, end) for start, end, _ in hits)
    return ranges


def _line_range(text: str, start: int, end: int) -> LineRange:
    first_line = text.count("\n", 0, start) + 1
    last_line = text.count("\n", 0, max(start, end - 1)) + 1
    return first_line, last_line


def _descendants(symbol: Symbol, distance: int = 1) -> Iterator[tuple[Symbol, int]]:
    for child in symbol.children:
        yield child, distance
        yield from _descendants(child, distance + 1)


def _name_path_matches(
    name_path: tuple[str, ...],
    wanted: list[str],
    absolute: bool,
    substring: bool,
) -> bool:
    """
    Check a symbol's name path against a requested pattern.

    A relative pattern matches any suffix of the name path; an absolute one
    (leading ``/``) must match it entirely. With substring matching the last
    segment only needs to contain the requested name.
    """
    if not wanted or len(wanted) > len(name_path):
        return False
    if absolute and len(wanted) != len(name_path):
        return False
    tail = name_path[len(name_path) - len(wanted):]
    if tuple(tail[:-1]) != tuple(wanted[:-1]):
        return False
    if substring:
        return wanted[-1] in tail[-1]
    return tail[-1] == wanted[-1]
