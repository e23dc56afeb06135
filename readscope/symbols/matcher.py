"""
Tree Matcher: reconciles one file's symbol tree across re-parses.

Matching rules, applied in order:

1. Exact pass. A qualified name path that occurs exactly once in both the
   old and the new tree pairs those two symbols.
2. Structural pass, one nesting level at a time from the top. A new symbol's
   candidates are the unmatched old symbols whose parent is matched to its
   parent. First, candidates with the same leaf name and kind; then,
   candidates with the same kind, the same sibling ordinal and more than half
   their lines overlapping. A pair is accepted only when each side is the
   other's sole candidate.
3. Everything left over is a deletion plus an insertion.

Matched symbols keep their id and read state. If the file text changed they
are marked stale for every agent that had seen them.
"""

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from readscope.backends.base import SymbolBackend, SymbolRecord
from readscope.errors import ParseError
from readscope.scanner import ProjectScanner
from readscope.symbols.forest import (
    SymbolForest,
    build_file_tree,
    empty_tree,
    extract_records,
    read_source,
    records_of,
)
from readscope.symbols.models import FileTree, Symbol
from readscope.tracking.store import ReadStateStore

logger = structlog.get_logger(__name__)

OVERLAP_THRESHOLD = 0.5


class ReconcileStatus(str, Enum):
    """What a reconciliation did to a file."""

    UNCHANGED = "unchanged"
    UPDATED = "updated"
    ADDED = "added"
    REMOVED = "removed"
    PARSE_FAILED = "parse_failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReconcileOutcome:
    """Summary of one file reconciliation."""

    path: str
    status: ReconcileStatus
    matched: int = 0
    created: int = 0
    retired: int = 0
    staled: int = 0

    @property
    def changed(self) -> bool:
        return self.status not in (ReconcileStatus.UNCHANGED, ReconcileStatus.SKIPPED)


def match_symbols(old: FileTree, new_records: list[SymbolRecord]) -> dict[int, str]:
    """
    Pair new records with symbols of the old tree.

    Args:
        old: Current tree for the file
        new_records: Normalized records from the re-parse

    Returns:
        Map of new record index to the old symbol id it continues
    """
    old_symbols = list(old.symbols())
    old_parent: dict[str, str | None] = {}
    old_ordinal: dict[str, int] = {}
    for symbol in old.root.walk():
        for ordinal, child in enumerate(symbol.children):
            old_parent[child.id] = None if symbol.is_root else symbol.id
            old_ordinal[child.id] = ordinal

    matches: dict[int, str] = {}
    matched_old: set[str] = set()

    old_counts = Counter(s.name_path for s in old_symbols)
    new_counts = Counter(r.name_path for r in new_records)
    old_by_path = {s.name_path: s for s in old_symbols if old_counts[s.name_path] == 1}
    for index, record in enumerate(new_records):
        if new_counts[record.name_path] != 1:
            continue
        symbol = old_by_path.get(record.name_path)
        if symbol is not None:
            matches[index] = symbol.id
            matched_old.add(symbol.id)

    def same_name(record: SymbolRecord, symbol: Symbol) -> bool:
        return symbol.name == record.name and symbol.kind == record.kind

    def same_shape(record: SymbolRecord, symbol: Symbol) -> bool:
        return (
            symbol.kind == record.kind
            and old_ordinal[symbol.id] == record.ordinal
            and record.span.line_overlap_ratio(symbol.span) > OVERLAP_THRESHOLD
        )

    max_depth = max((r.depth for r in new_records), default=0)
    for depth in range(1, max_depth + 1):
        for accepts in (same_name, same_shape):
            _match_level(
                depth, new_records, old_symbols, old_parent, matches, matched_old, accepts
            )
    return matches


def _match_level(
    depth: int,
    new_records: list[SymbolRecord],
    old_symbols: list[Symbol],
    old_parent: dict[str, str | None],
    matches: dict[int, str],
    matched_old: set[str],
    accepts: Callable[[SymbolRecord, Symbol], bool],
) -> None:
    """Accept mutually unique candidate pairs at one nesting level."""
    candidates: dict[int, list[str]] = {}
    claimed: dict[str, list[int]] = {}
    unmatched_old = [s for s in old_symbols if s.id not in matched_old]

    for index, record in enumerate(new_records):
        if record.depth != depth or index in matches:
            continue
        if record.parent_index is None:
            parent_id = None
        elif record.parent_index in matches:
            parent_id = matches[record.parent_index]
        else:
            continue

        found = [
            s.id
            for s in unmatched_old
            if old_parent[s.id] == parent_id and accepts(record, s)
        ]
        if found:
            candidates[index] = found
            for symbol_id in found:
                claimed.setdefault(symbol_id, []).append(index)

    for index, found in candidates.items():
        if len(found) == 1 and len(claimed[found[0]]) == 1:
            matches[index] = found[0]
            matched_old.add(found[0])


class TreeMatcher:
    """
    Re-parses changed files and folds the result into the forest.

    Usage:
        matcher = TreeMatcher(root, backend, forest, store, scanner)
        outcome = matcher.reconcile("src/app.py")
    """

    def __init__(
        self,
        root: Path,
        backend: SymbolBackend,
        forest: SymbolForest,
        store: ReadStateStore,
        scanner: ProjectScanner | None = None,
    ):
        self.root = Path(root)
        self.backend = backend
        self.forest = forest
        self.store = store
        self.scanner = scanner

    def reconcile(self, path: str) -> ReconcileOutcome:
        """
        Bring one file's tree in line with its content on disk.

        Args:
            path: Project-relative POSIX path

        Returns:
            Outcome describing what changed
        """
        old = self.forest.get_tree(path)
        absolute = self.root / path

        if not absolute.is_file():
            if old is None:
                return ReconcileOutcome(path, ReconcileStatus.SKIPPED)
            return self._remove(old)

        if old is None and not self._is_tracked_path(path):
            return ReconcileOutcome(path, ReconcileStatus.SKIPPED)

        source = None
        try:
            source = read_source(absolute, path)
            records = extract_records(self.backend, path, source)
        except FileNotFoundError:
            return self._remove(old) if old is not None else ReconcileOutcome(path, ReconcileStatus.SKIPPED)
        except (ParseError, OSError) as exc:
            return self._parse_failed(path, old, source, exc)

        if old is None:
            tree = build_file_tree(path, source, records)
            self.forest.set_tree(tree)
            logger.debug("file_added", path=path, symbols=tree.symbol_count)
            return ReconcileOutcome(path, ReconcileStatus.ADDED, created=tree.symbol_count)

        text_changed = source != old.source
        if not text_changed and records == records_of(old):
            return ReconcileOutcome(path, ReconcileStatus.UNCHANGED)

        matches = match_symbols(old, records)
        ids = [matches.get(i) for i in range(len(records))]
        tree = build_file_tree(path, source, records, ids)
        self.forest.set_tree(tree)

        kept = set(matches.values())
        retired = [s.id for s in old.symbols() if s.id not in kept]
        self.store.retire(retired)

        staled = 0
        if text_changed:
            for symbol_id in sorted(kept):
                staled += self.store.mark_stale(symbol_id)

        outcome = ReconcileOutcome(
            path,
            ReconcileStatus.UPDATED,
            matched=len(kept),
            created=len(records) - len(kept),
            retired=len(retired),
            staled=staled,
        )
        logger.debug(
            "file_reconciled",
            path=path,
            matched=outcome.matched,
            created=outcome.created,
            retired=outcome.retired,
            staled=outcome.staled,
        )
        return outcome

    def reconcile_all(self) -> list[ReconcileOutcome]:
        """Reconcile every tracked file plus any newly discoverable one."""
        paths = set(self.forest.paths())
        if self.scanner is not None:
            paths.update(self.scanner.iter_files(self.backend.supports_path))
        return [self.reconcile(path) for path in sorted(paths)]

    def _is_tracked_path(self, path: str) -> bool:
        if self.scanner is not None and self.scanner.is_ignored(path):
            return False
        return self.backend.supports_path(path)

    def _remove(self, old: FileTree) -> ReconcileOutcome:
        retired = old.symbol_ids()
        self.store.retire(retired)
        self.forest.remove(old.path)
        logger.debug("file_removed", path=old.path, retired=len(retired))
        return ReconcileOutcome(old.path, ReconcileStatus.REMOVED, retired=len(retired))

    def _parse_failed(
        self,
        path: str,
        old: FileTree | None,
        source: str | None,
        exc: Exception,
    ) -> ReconcileOutcome:
        logger.warning("reparse_failed", path=path, error=str(exc))
        if old is None:
            self.forest.set_tree(empty_tree(path, source or ""))
            return ReconcileOutcome(path, ReconcileStatus.PARSE_FAILED)
        staled = sum(self.store.mark_stale(symbol_id) for symbol_id in old.symbol_ids())
        return ReconcileOutcome(path, ReconcileStatus.PARSE_FAILED, staled=staled)
