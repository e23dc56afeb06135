"""
Backend adapter contract and normalization.

A backend turns one file into a flat list of raw symbols. Normalization is
shared by every backend: it orders the list depth-first by start offset,
drops duplicate spans, rebuilds nesting from the spans, and derives each
symbol's qualified name path and sibling ordinal.
"""

import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog

from readscope.symbols.models import Span, SymbolKind

logger = structlog.get_logger(__name__)

# Line breaks as LSP counts them: \n, \r\n and a lone \r.
LINE_BREAK = re.compile(r"(?<=\r\n)|(?<=\n)|(?<=\r)(?!\n)")


@dataclass(frozen=True)
class RawSymbol:
    """A symbol as reported by a backend, before nesting is known."""

    name: str
    kind: SymbolKind
    span: Span


@dataclass(frozen=True)
class SymbolRecord:
    """A normalized symbol in canonical depth-first order."""

    name: str
    kind: SymbolKind
    span: Span
    name_path: tuple[str, ...]
    parent_index: int | None
    ordinal: int

    @property
    def depth(self) -> int:
        return len(self.name_path)


@runtime_checkable
class SymbolBackend(Protocol):
    """
    Capability to extract symbols from a file.

    Implementations are chosen once at startup and never mixed mid-run.
    """

    name: str

    def supports_path(self, rel_path: str) -> bool:
        """Return True when the backend can produce symbols for the path."""
        ...

    def extract(self, rel_path: str, source: str) -> list[RawSymbol]:
        """
        Extract raw symbols from a file.

        Raises:
            ParseError: If no tree can be produced for the file
        """
        ...


def normalize_symbols(path: str, raw: list[RawSymbol]) -> list[SymbolRecord]:
    """
    Normalize raw backend output into canonical records.

    Args:
        path: File path, used only for diagnostics
        raw: Raw symbols in any order

    Returns:
        Records ordered depth-first by start offset, with no duplicate spans
        and with every child nested inside its parent
    """
    ordered = sorted(
        (s for s in raw if s.name.strip() and s.span.end_byte > s.span.start_byte),
        key=lambda s: (s.span.start_byte, -s.span.end_byte, s.name, s.kind.value),
    )

    records: list[SymbolRecord] = []
    seen_spans: set[tuple[int, int]] = set()
    stack: list[int] = []
    child_counts: dict[int | None, int] = {}

    for symbol in ordered:
        key = (symbol.span.start_byte, symbol.span.end_byte)
        if key in seen_spans:
            logger.debug("duplicate_span_dropped", path=path, name=symbol.name, span=key)
            continue

        while stack and records[stack[-1]].span.end_byte <= symbol.span.start_byte:
            stack.pop()

        parent_index = stack[-1] if stack else None
        if parent_index is not None and symbol.span.end_byte > records[parent_index].span.end_byte:
            logger.debug("overlapping_span_dropped", path=path, name=symbol.name, span=key)
            continue

        seen_spans.add(key)
        parent_path = records[parent_index].name_path if parent_index is not None else ()
        ordinal = child_counts.get(parent_index, 0)
        child_counts[parent_index] = ordinal + 1

        records.append(
            SymbolRecord(
                name=symbol.name.strip(),
                kind=symbol.kind,
                span=symbol.span,
                name_path=(*parent_path, symbol.name.strip()),
                parent_index=parent_index,
                ordinal=ordinal,
            )
        )
        stack.append(len(records) - 1)

    return records


class LineIndex:
    """Maps between byte offsets, line numbers, and (line, character) positions."""

    def __init__(self, source: str):
        self._lines = [line for line in LINE_BREAK.split(source) if line] or [""]
        self._starts: list[int] = []
        offset = 0
        for line in self._lines:
            self._starts.append(offset)
            offset += len(line.encode("utf-8"))
        self._size = offset

    @property
    def line_count(self) -> int:
        return len(self._lines)

    def byte_offset(self, line: int, character: int) -> int:
        """Byte offset of a 0-based (line, character) position, clamped to the file."""
        if line < 0:
            return 0
        if line >= len(self._lines):
            return self._size
        text = self._lines[line]
        prefix = text[: max(character, 0)]
        return self._starts[line] + len(prefix.encode("utf-8"))

    def line_of_char(self, char_offset: int, source: str) -> int:
        """1-based line containing a character offset into ``source``."""
        return source.count("\n", 0, max(char_offset, 0)) + 1


def span_from_points(
    start_byte: int,
    end_byte: int,
    start_row: int,
    end_row: int,
    end_column: int,
) -> Span:
    """
    Build a span from 0-based row positions.

    A construct whose end point sits at column 0 of a later row ends on the
    previous line.
    """
    end_line = end_row if end_column == 0 and end_row > start_row else end_row + 1
    return Span(
        start_byte=start_byte,
        end_byte=end_byte,
        start_line=start_row + 1,
        end_line=end_line,
    )
