"""
Canonical symbol model.

A project is a forest of per-file trees. Every tree has one synthetic root of
kind FILE covering the whole file; real symbols hang below it in start-offset
order, with child spans nested inside their parent and disjoint from their
siblings. Everything here is immutable so published snapshots can share it.
"""

import hashlib
import math
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum


# Rough size of a code token in bytes.
BYTES_PER_TOKEN = 3.5


def estimate_tokens(size: int) -> int:
    """Approximate tokens an agent spends reading ``size`` bytes of code."""
    return math.ceil(max(size, 0) / BYTES_PER_TOKEN)


class SymbolKind(str, Enum):
    """Kinds of named code constructs."""

    FILE = "file"
    MODULE = "module"
    CLASS = "class"
    STRUCT = "struct"
    ENUM = "enum"
    INTERFACE = "interface"
    IMPL = "impl"
    FUNCTION = "function"
    METHOD = "method"
    CONSTANT = "constant"
    VARIABLE = "variable"
    TYPE_ALIAS = "type_alias"
    MACRO = "macro"
    FIELD = "field"


@dataclass(frozen=True)
class Span:
    """Byte range (half-open) and line range (1-based, inclusive) of a construct."""

    start_byte: int
    end_byte: int
    start_line: int
    end_line: int

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def overlaps_lines(self, first: int, last: int) -> bool:
        """Check if any line of this span lies within [first, last]."""
        return self.start_line <= last and first <= self.end_line

    def within_lines(self, first: int, last: int) -> bool:
        """Check if every line of this span lies within [first, last]."""
        return first <= self.start_line and self.end_line <= last

    def contains_line(self, line: int) -> bool:
        return self.start_line <= line <= self.end_line

    def line_overlap_ratio(self, other: "Span") -> float:
        """Shared lines divided by the longer of the two spans."""
        shared = min(self.end_line, other.end_line) - max(self.start_line, other.start_line) + 1
        if shared <= 0:
            return 0.0
        return shared / max(self.line_count, other.line_count)


@dataclass(frozen=True)
class Symbol:
    """A named, range-bounded construct in one file."""

    id: str
    name_path: tuple[str, ...]
    kind: SymbolKind
    file_path: str
    span: Span
    parent_id: str | None = None
    children: tuple["Symbol", ...] = ()

    @property
    def name(self) -> str:
        """Leaf name (the file path for the synthetic root)."""
        if not self.name_path:
            return self.file_path
        return self.name_path[-1]

    @property
    def qualified_name(self) -> str:
        return "/".join(self.name_path)

    @property
    def is_root(self) -> bool:
        return self.kind == SymbolKind.FILE

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.span.end_byte - self.span.start_byte)

    def walk(self) -> Iterator["Symbol"]:
        """Yield this symbol and all descendants in pre-order."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class FileTree:
    """
    One file's symbol tree plus the source text it was built from.

    The source is kept so pattern-match calls can be resolved to lines, and
    so a re-parse can tell whether content actually changed.
    """

    path: str
    root: Symbol
    source: str
    content_hash: str
    _by_id: dict[str, Symbol] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", {s.id: s for s in self.root.walk()})

    @property
    def top_level(self) -> tuple[Symbol, ...]:
        return self.root.children

    def symbols(self) -> Iterator[Symbol]:
        """Yield every real symbol (root excluded) in pre-order."""
        for child in self.root.children:
            yield from child.walk()

    def get(self, symbol_id: str) -> Symbol | None:
        return self._by_id.get(symbol_id)

    def symbol_ids(self) -> list[str]:
        return [s.id for s in self.symbols()]

    @property
    def symbol_count(self) -> int:
        return len(self._by_id) - 1

    @property
    def line_count(self) -> int:
        return self.root.span.end_line


def content_hash(source: str) -> str:
    """Stable digest of a file's source text."""
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


def root_span(source: str) -> Span:
    """Span covering a whole file."""
    encoded = source.encode("utf-8")
    lines = source.count("\n") + (0 if source.endswith("\n") or not source else 1)
    return Span(start_byte=0, end_byte=len(encoded), start_line=1, end_line=max(lines, 1))
