"""
Symbol extraction backends.

Exactly one backend is chosen at startup; the engine never falls back from
one to the other mid-run.
"""

from readscope.backends.base import (
    LineIndex,
    RawSymbol,
    SymbolBackend,
    SymbolRecord,
    normalize_symbols,
)
from readscope.backends.serena import SerenaBackend
from readscope.backends.treesitter import TreeSitterBackend
from readscope.config import BackendKind, EngineConfig


def create_backend(config: EngineConfig) -> SymbolBackend:
    """
    Build the backend selected by the configuration.

    Raises:
        BackendUnavailableError: If Serena is selected and has no cache
    """
    if config.backend == BackendKind.SERENA:
        return SerenaBackend(config.project_root, config.resolved_cache_dir())
    return TreeSitterBackend()


__all__ = [
    "LineIndex",
    "RawSymbol",
    "SerenaBackend",
    "SymbolBackend",
    "SymbolRecord",
    "TreeSitterBackend",
    "create_backend",
    "normalize_symbols",
]
