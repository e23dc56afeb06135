"""
Symbol model, forest and reconciliation.
"""

from readscope.symbols.models import FileTree, Span, Symbol, SymbolKind

__all__ = [
    "FileTree",
    "Span",
    "Symbol",
    "SymbolKind",
]
