"""
Shared fixtures for readscope tests.
"""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from readscope.backends.treesitter import TreeSitterBackend
from readscope.correlation.correlator import EventCorrelator
from readscope.ingest.events import ToolUseEvent, normalize_tool_use
from readscope.scanner import ProjectScanner
from readscope.symbols.forest import SymbolForest, build_forest
from readscope.symbols.matcher import TreeMatcher
from readscope.tracking.store import ReadStateStore

SESSION_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"

TEN_LINE_FUNCTION = """def f(x):
    a = 1
    b = 2
    c = 3
    d = 4
    e = 5
    g = 6
    h = 7
    i = 8
    return x
"""


class Engine:
    """Forest, store, matcher and correlator wired over one project directory."""

    def __init__(self, root: Path):
        self.root = root
        self.backend = TreeSitterBackend()
        self.scanner = ProjectScanner(root)
        self.forest: SymbolForest
        self.forest, self.parse_failures = build_forest(self.scanner, self.backend)
        self.store = ReadStateStore()
        self.matcher = TreeMatcher(root, self.backend, self.forest, self.store, self.scanner)
        self.correlator = EventCorrelator(root, self.forest, self.store, self.matcher)
        self._counter = 0

    def event(self, tool: str, agent: str = "main", **payload: Any) -> ToolUseEvent:
        """Build an event; ``file_path``/``path`` values are made absolute."""
        for key in ("file_path", "path"):
            if key in payload and not Path(payload[key]).is_absolute():
                payload[key] = str(self.root / payload[key])
        self._counter += 1
        return normalize_tool_use(agent, self._counter * 100, 0, tool, payload)

    def apply(self, tool: str, agent: str = "main", **payload: Any):
        return self.correlator.apply(self.event(tool, agent, **payload))

    def symbol_id(self, path: str, name_path: str) -> str:
        tree = self.forest.get_tree(path)
        assert tree is not None
        for symbol in tree.symbols():
            if symbol.qualified_name == name_path:
                return symbol.id
        raise AssertionError(f"{name_path} not found in {path}")


@pytest.fixture
def write_files(tmp_path: Path) -> Callable[[dict[str, str]], Path]:
    """Write a mapping of relative path -> content under a project root."""

    def write(files: dict[str, str]) -> Path:
        root = tmp_path / "project"
        for rel_path, content in files.items():
            target = root / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        root.mkdir(exist_ok=True)
        return root

    return write


@pytest.fixture
def make_engine(write_files: Callable[[dict[str, str]], Path]) -> Callable[[dict[str, str]], Engine]:
    """Create an Engine over freshly written files."""

    def make(files: dict[str, str]) -> Engine:
        return Engine(write_files(files))

    return make


def assistant_record(session_id: str, tools: list[tuple[str, dict[str, Any]]]) -> str:
    """One assistant log line carrying tool_use entries."""
    content: list[dict[str, Any]] = [{"type": "text", "text": "Working on it."}]
    for index, (name, tool_input) in enumerate(tools):
        content.append({"type": "tool_use", "id": f"toolu_{index}", "name": name, "input": tool_input})
    return json.dumps(
        {
            "type": "assistant",
            "sessionId": session_id,
            "timestamp": "2026-01-01T00:00:00Z",
            "message": {"role": "assistant", "content": content},
        }
    )


def user_record(session_id: str) -> str:
    return json.dumps(
        {
            "type": "user",
            "sessionId": session_id,
            "message": {"role": "user", "content": [{"type": "tool_result", "content": "ok"}]},
        }
    )
