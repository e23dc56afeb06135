"""
Symbol Forest: the project-wide collection of per-file symbol trees.
"""

from collections.abc import Iterator, Sequence
from pathlib import Path

import structlog

from readscope.backends.base import SymbolBackend, SymbolRecord, normalize_symbols
from readscope.errors import ParseError
from readscope.scanner import ProjectScanner
from readscope.symbols.models import (
    FileTree,
    Symbol,
    SymbolKind,
    content_hash,
    root_span,
)

logger = structlog.get_logger(__name__)

ID_SEPARATOR = "::"


def file_of(symbol_id: str) -> str:
    """File path encoded in a symbol id."""
    return symbol_id.split(ID_SEPARATOR, 1)[0]


def read_source(path: Path, rel_path: str) -> str:
    """
    Read a source file as UTF-8 text.

    Raises:
        FileNotFoundError: If the file no longer exists
        ParseError: If the bytes are not valid UTF-8
    """
    data = path.read_bytes()
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(rel_path, f"not valid UTF-8 ({exc.reason})") from exc


def extract_records(backend: SymbolBackend, rel_path: str, source: str) -> list[SymbolRecord]:
    """Run a backend on one file and normalize its output."""
    return normalize_symbols(rel_path, backend.extract(rel_path, source))


def allocate_id(path: str, name_path: Sequence[str], taken: set[str]) -> str:
    """First free id for a new symbol, adding ~N on collision."""
    base = f"{path}{ID_SEPARATOR}{'/'.join(name_path)}"
    candidate = base
    counter = 2
    while candidate in taken:
        candidate = f"{base}~{counter}"
        counter += 1
    return candidate


def build_file_tree(
    path: str,
    source: str,
    records: Sequence[SymbolRecord],
    ids: Sequence[str | None] | None = None,
) -> FileTree:
    """
    Assemble a file tree from normalized records.

    Args:
        path: Project-relative file path
        source: File contents the records were extracted from
        records: Normalized records in canonical order
        ids: Id to keep for each record, or None to allocate a fresh one

    Returns:
        Immutable tree with a synthetic FILE root
    """
    kept = list(ids) if ids is not None else [None] * len(records)
    taken = {i for i in kept if i is not None}
    assigned: list[str] = []
    for record, existing in zip(records, kept, strict=True):
        if existing is None:
            existing = allocate_id(path, record.name_path, taken)
            taken.add(existing)
        assigned.append(existing)

    child_indices: dict[int | None, list[int]] = {}
    for index, record in enumerate(records):
        child_indices.setdefault(record.parent_index, []).append(index)

    built: dict[int, Symbol] = {}
    # Children always follow their parent, so build back to front.
    for index in range(len(records) - 1, -1, -1):
        record = records[index]
        parent_id = assigned[record.parent_index] if record.parent_index is not None else path
        built[index] = Symbol(
            id=assigned[index],
            name_path=record.name_path,
            kind=record.kind,
            file_path=path,
            span=record.span,
            parent_id=parent_id,
            children=tuple(built[i] for i in child_indices.get(index, [])),
        )

    root = Symbol(
        id=path,
        name_path=(),
        kind=SymbolKind.FILE,
        file_path=path,
        span=root_span(source),
        children=tuple(built[i] for i in child_indices.get(None, [])),
    )
    return FileTree(path=path, root=root, source=source, content_hash=content_hash(source))


def empty_tree(path: str, source: str = "") -> FileTree:
    """Tree with only the synthetic root, used when a file cannot be parsed."""
    return build_file_tree(path, source, [])


def records_of(tree: FileTree) -> list[SymbolRecord]:
    """Recover normalized records (canonical order) from a built tree."""
    records: list[SymbolRecord] = []

    def visit(symbol: Symbol, parent_index: int | None) -> None:
        for ordinal, child in enumerate(symbol.children):
            records.append(
                SymbolRecord(
                    name=child.name,
                    kind=child.kind,
                    span=child.span,
                    name_path=child.name_path,
                    parent_index=parent_index,
                    ordinal=ordinal,
                )
            )
            visit(child, len(records) - 1)

    visit(tree.root, None)
    return records


class SymbolForest:
    """
    Mutable map of file path to symbol tree.

    Only the coordinator mutates a forest; consumers see copies of the
    (immutable) trees through snapshots.
    """

    def __init__(self, files: dict[str, FileTree] | None = None):
        self._files: dict[str, FileTree] = dict(files or {})

    def __contains__(self, path: object) -> bool:
        return path in self._files

    def __len__(self) -> int:
        return len(self._files)

    def paths(self) -> list[str]:
        return sorted(self._files)

    def get_tree(self, path: str) -> FileTree | None:
        return self._files.get(path)

    def set_tree(self, tree: FileTree) -> None:
        self._files[tree.path] = tree

    def remove(self, path: str) -> FileTree | None:
        return self._files.pop(path, None)

    def get_symbol(self, symbol_id: str) -> Symbol | None:
        tree = self._files.get(file_of(symbol_id))
        return tree.get(symbol_id) if tree is not None else None

    def iter_symbols(self) -> Iterator[Symbol]:
        """Every real symbol, files in sorted order, symbols in pre-order."""
        for path in self.paths():
            yield from self._files[path].symbols()

    def symbol_count(self) -> int:
        return sum(tree.symbol_count for tree in self._files.values())

    def files(self) -> dict[str, FileTree]:
        """Shallow copy of the path -> tree map."""
        return dict(self._files)


def build_forest(
    scanner: ProjectScanner,
    backend: SymbolBackend,
) -> tuple[SymbolForest, int]:
    """
    Build the initial forest from a full project scan.

    Files the backend cannot parse are kept with an empty tree.

    Args:
        scanner: Scanner for the project root
        backend: Selected symbol backend

    Returns:
        The forest and the number of files that failed to parse
    """
    forest = SymbolForest()
    failures = 0
    for rel_path in scanner.iter_files(backend.supports_path):
        source = ""
        try:
            source = read_source(scanner.root / rel_path, rel_path)
            records = extract_records(backend, rel_path, source)
        except ParseError as exc:
            logger.warning("parse_failed", path=rel_path, reason=exc.reason)
            forest.set_tree(empty_tree(rel_path, source))
            failures += 1
            continue
        except OSError as exc:
            logger.warning("file_unreadable", path=rel_path, error=str(exc))
            continue
        forest.set_tree(build_file_tree(rel_path, source, records))

    logger.info(
        "forest_built",
        backend=backend.name,
        files=len(forest),
        symbols=forest.symbol_count(),
        parse_failures=failures,
    )
    return forest, failures
