"""
Project file discovery.

Walks the project root and lists files a backend can extract symbols from,
skipping hidden entries, build output, dependency trees and anything matched
by the root ``.gitignore`` or configured ignore patterns.
"""

import os
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

import structlog
from pathspec import GitIgnoreSpec

from readscope.errors import ProjectRootError

logger = structlog.get_logger(__name__)

EXCLUDED_DIRS = frozenset({"target", "node_modules", "__pycache__"})


class ProjectScanner:
    """
    Lists source files under a project root.

    Usage:
        scanner = ProjectScanner(Path("."), ignore_patterns=["*.gen.py"])
        for rel_path in scanner.iter_files(backend.supports_path):
            ...
    """

    def __init__(self, root: Path, ignore_patterns: Iterable[str] = ()):
        """
        Initialize a scanner.

        Args:
            root: Project root directory
            ignore_patterns: Extra gitignore-style patterns

        Raises:
            ProjectRootError: If the root is missing or not a directory
        """
        self.root = Path(root)
        if not self.root.is_dir():
            raise ProjectRootError(f"Project root is not a readable directory: {self.root}")
        lines = list(self._gitignore_lines()) + list(ignore_patterns)
        self._spec = GitIgnoreSpec.from_lines(lines)

    def _gitignore_lines(self) -> list[str]:
        gitignore = self.root / ".gitignore"
        if not gitignore.is_file():
            return []
        try:
            return gitignore.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as exc:
            logger.warning("gitignore_unreadable", path=str(gitignore), error=str(exc))
            return []

    def is_ignored(self, rel_path: str, is_dir: bool = False) -> bool:
        """Check a project-relative POSIX path against every exclusion rule."""
        parts = rel_path.split("/")
        for part in parts:
            if part.startswith(".") or part in EXCLUDED_DIRS:
                return True
        candidate = f"{rel_path}/" if is_dir else rel_path
        return self._spec.match_file(candidate)

    def iter_files(self, supports: Callable[[str], bool] | None = None) -> Iterator[str]:
        """
        Yield project-relative POSIX paths in sorted order.

        Args:
            supports: Optional filter, usually a backend's supports_path
        """
        if not os.access(self.root, os.R_OK | os.X_OK):
            raise ProjectRootError(f"Cannot read project root {self.root}")

        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"
            dirnames[:] = sorted(
                d for d in dirnames if not self.is_ignored(f"{prefix}{d}", is_dir=True)
            )
            for filename in filenames:
                rel_path = f"{prefix}{filename}"
                if self.is_ignored(rel_path):
                    continue
                if supports is not None and not supports(rel_path):
                    continue
                found.append(rel_path)
        yield from sorted(found)

    def relative(self, path: str | Path) -> str | None:
        return relative_to_root(self.root, path)


def relative_to_root(root: Path, path: str | Path) -> str | None:
    """
    Project-relative POSIX form of a path.

    Relative inputs are taken as already relative to the root. The root
    itself maps to an empty string.

    Returns:
        The relative path, or None if it lies outside the root
    """
    candidate = Path(path)
    if not candidate.is_absolute():
        parts = [p for p in candidate.as_posix().split("/") if p not in ("", ".")]
        if ".." in parts:
            return None
        return "/".join(parts)
    for base, target in ((root, candidate), (root.resolve(), candidate.resolve())):
        try:
            rel = target.relative_to(base).as_posix()
        except ValueError:
            continue
        return "" if rel == "." else rel
    return None
