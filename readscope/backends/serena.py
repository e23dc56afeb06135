"""
Symbol extraction from Serena's LSP symbol cache.

Serena keeps per-language pickles under ``.serena/cache/<language>/``:

- ``raw_document_symbols.pkl``: {"obj": {path: (hash, [symbol dicts])}}
- ``document_symbols.pkl``: {"obj": {path: (hash, DocumentSymbols state)}}

Symbol dicts follow the LSP DocumentSymbol shape (name, kind, range,
children). The cache is unpickled with a restricted unpickler that never
imports foreign classes; instances come back as opaque state holders.
"""

import pickle
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

import structlog

from readscope.backends.base import LineIndex, RawSymbol, span_from_points
from readscope.errors import BackendUnavailableError, ParseError
from readscope.symbols.models import SymbolKind

logger = structlog.get_logger(__name__)

RAW_CACHE_NAME = "raw_document_symbols.pkl"
DOCUMENT_CACHE_NAME = "document_symbols.pkl"

# LSP SymbolKind numbers
LSP_KINDS: dict[int, SymbolKind] = {
    2: SymbolKind.MODULE,
    3: SymbolKind.MODULE,
    4: SymbolKind.MODULE,
    5: SymbolKind.CLASS,
    6: SymbolKind.METHOD,
    7: SymbolKind.FIELD,
    8: SymbolKind.FIELD,
    9: SymbolKind.METHOD,
    10: SymbolKind.ENUM,
    11: SymbolKind.INTERFACE,
    12: SymbolKind.FUNCTION,
    13: SymbolKind.VARIABLE,
    14: SymbolKind.CONSTANT,
    19: SymbolKind.IMPL,
    22: SymbolKind.CONSTANT,
    23: SymbolKind.STRUCT,
    26: SymbolKind.TYPE_ALIAS,
}

SAFE_MODULES = frozenset({"builtins", "collections", "copyreg", "datetime"})


class OpaqueObject:
    """Stand-in for a class the cache references but this process does not import."""

    def __init__(self, *args: Any, **kwargs: Any):
        self.args = args
        self.state: Any = kwargs or None

    def __setstate__(self, state: Any) -> None:
        self.state = state


class _CacheUnpickler(pickle.Unpickler):
    def find_class(self, module: str, name: str) -> Any:
        if module in SAFE_MODULES:
            return super().find_class(module, name)
        return type(name, (OpaqueObject,), {"__module__": module})


@dataclass
class _CacheFile:
    path: Path
    mtime_ns: int


def find_serena_caches(cache_dir: Path) -> list[Path]:
    """
    List the cache pickles under a Serena cache directory.

    Prefers the raw symbol pickle over the document pickle per language.
    """
    if not cache_dir.is_dir():
        return []
    found: list[Path] = []
    for lang_dir in sorted(p for p in cache_dir.iterdir() if p.is_dir()):
        raw = lang_dir / RAW_CACHE_NAME
        doc = lang_dir / DOCUMENT_CACHE_NAME
        if raw.is_file():
            found.append(raw)
        elif doc.is_file():
            found.append(doc)
    return found


def load_cache_file(path: Path) -> dict[str, list[dict[str, Any]]]:
    """
    Load one cache pickle into {relative path: [symbol dicts]}.

    Raises:
        ValueError: If the pickle does not have the expected layout
    """
    with path.open("rb") as handle:
        data = _CacheUnpickler(handle).load()

    entries = _state(data).get("obj") if isinstance(_state(data), dict) else None
    if not isinstance(entries, dict):
        raise ValueError(f"Missing 'obj' mapping in {path}")

    result: dict[str, list[dict[str, Any]]] = {}
    for key, value in entries.items():
        if not isinstance(key, str):
            continue
        items = value if isinstance(value, (tuple, list)) else ()
        if len(items) < 2:
            continue
        symbols = _symbol_list(items[1])
        if symbols is None:
            logger.debug("serena_entry_skipped", cache=str(path), file=key)
            continue
        result[PurePosixPath(key.replace("\\", "/")).as_posix()] = symbols
    return result


def _state(value: Any) -> Any:
    return value.state if isinstance(value, OpaqueObject) else value


def _symbol_list(value: Any) -> list[dict[str, Any]] | None:
    value = _state(value)
    if isinstance(value, list):
        return [s for s in (_state(v) for v in value) if isinstance(s, dict)]
    if isinstance(value, dict) and "root_symbols" in value:
        return _symbol_list(value["root_symbols"])
    return None


class SerenaBackend:
    """
    Symbol extraction backed by Serena's cached LSP document symbols.

    The cache is read at construction and reloaded whenever one of its
    pickle files changes on disk.
    """

    name = "serena"

    def __init__(self, project_root: Path, cache_dir: Path | None = None):
        """
        Initialize from a project's Serena cache.

        Args:
            project_root: Project root directory
            cache_dir: Alternate cache directory (defaults to <root>/.serena/cache)

        Raises:
            BackendUnavailableError: If no cache pickle exists
        """
        self.project_root = project_root
        self.cache_dir = cache_dir or project_root / ".serena" / "cache"
        self._files: list[_CacheFile] = []
        self._symbols: dict[str, list[dict[str, Any]]] = {}
        if not find_serena_caches(self.cache_dir):
            raise BackendUnavailableError(f"No Serena cache found at {self.cache_dir}")
        self.reload()

    def watch_paths(self) -> list[Path]:
        """Cache files whose modification should trigger a re-read."""
        return [entry.path for entry in self._files]

    def reload(self) -> None:
        """Re-read every cache pickle."""
        symbols: dict[str, list[dict[str, Any]]] = {}
        files: list[_CacheFile] = []
        for path in find_serena_caches(self.cache_dir):
            try:
                symbols.update(load_cache_file(path))
            except (OSError, ValueError, pickle.UnpicklingError, EOFError) as exc:
                logger.warning("serena_cache_unreadable", cache=str(path), error=str(exc))
                continue
            files.append(_CacheFile(path=path, mtime_ns=path.stat().st_mtime_ns))
        self._symbols = symbols
        self._files = files
        logger.info("serena_cache_loaded", files=len(symbols), caches=len(files))

    def _refresh_if_changed(self) -> None:
        current = find_serena_caches(self.cache_dir)
        known = {entry.path: entry.mtime_ns for entry in self._files}
        for path in current:
            try:
                mtime = path.stat().st_mtime_ns
            except OSError:
                continue
            if known.get(path) != mtime:
                self.reload()
                return

    def cached_paths(self) -> list[str]:
        self._refresh_if_changed()
        return sorted(self._symbols)

    def supports_path(self, rel_path: str) -> bool:
        return rel_path in self._symbols

    def extract(self, rel_path: str, source: str) -> list[RawSymbol]:
        """
        Convert a file's cached LSP symbols into raw symbols.

        Raises:
            ParseError: If the cache has no entry for the file
        """
        self._refresh_if_changed()
        entries = self._symbols.get(rel_path)
        if entries is None:
            raise ParseError(rel_path, "file not present in Serena symbol cache")

        index = LineIndex(source)
        out: list[RawSymbol] = []
        for entry in entries:
            self._convert(entry, index, out)
        return out

    def _convert(self, entry: dict[str, Any], index: LineIndex, out: list[RawSymbol]) -> None:
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            return
        kind_number = entry.get("kind")
        kind = LSP_KINDS.get(kind_number, SymbolKind.FUNCTION) if isinstance(kind_number, int) else SymbolKind.FUNCTION

        start_line, start_char, end_line, end_char = _extract_range(entry)
        start_byte = index.byte_offset(start_line, start_char)
        end_byte = index.byte_offset(end_line, end_char)
        if end_byte <= start_byte:
            end_byte = index.byte_offset(end_line + 1, 0)
        out.append(
            RawSymbol(
                name=name,
                kind=kind,
                span=span_from_points(
                    start_byte=start_byte,
                    end_byte=end_byte,
                    start_row=start_line,
                    end_row=max(end_line, start_line),
                    end_column=end_char,
                ),
            )
        )

        for child in entry.get("children") or []:
            child = _state(child)
            if isinstance(child, dict):
                self._convert(child, index, out)


def _extract_range(entry: dict[str, Any]) -> tuple[int, int, int, int]:
    """(start_line, start_char, end_line, end_char), all 0-based."""
    range_ = entry.get("range")
    if not isinstance(range_, dict):
        location = entry.get("location")
        range_ = location.get("range") if isinstance(location, dict) else None
    if not isinstance(range_, dict):
        return (0, 0, 0, 0)

    def point(key: str) -> tuple[int, int]:
        value = range_.get(key)
        if not isinstance(value, dict):
            return (0, 0)
        return (int(value.get("line", 0) or 0), int(value.get("character", 0) or 0))

    start = point("start")
    end = point("end")
    return (start[0], start[1], end[0], end[1])
