"""
File Watcher: turns filesystem notifications into reconciliation requests.
"""

from collections.abc import Callable
from pathlib import Path

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from readscope.scanner import ProjectScanner, relative_to_root

logger = structlog.get_logger(__name__)

# (relative path or None for "symbol cache changed", deleted)
ChangeCallback = Callable[[str | None, bool], None]

CACHE_SUFFIX = ".pkl"


class ProjectEventHandler(FileSystemEventHandler):
    """Filters watchdog events down to tracked source files and cache pickles."""

    def __init__(
        self,
        scanner: ProjectScanner,
        on_change: ChangeCallback,
        supports: Callable[[str], bool],
        cache_dir: Path | None = None,
    ):
        super().__init__()
        self.scanner = scanner
        self.on_change = on_change
        self.supports = supports
        self.cache_dir = cache_dir.resolve() if cache_dir is not None else None

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._notify(event.src_path, deleted=False)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._notify(event.src_path, deleted=False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._notify(event.src_path, deleted=True)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._notify(event.src_path, deleted=True)
        self._notify(event.dest_path, deleted=False)

    def _notify(self, raw_path: str | bytes, deleted: bool) -> None:
        path = Path(raw_path.decode() if isinstance(raw_path, bytes) else raw_path)
        if self._is_cache_file(path):
            logger.debug("symbol_cache_changed", path=str(path))
            self.on_change(None, False)
            return

        rel = relative_to_root(self.scanner.root, path)
        if not rel or self.scanner.is_ignored(rel) or not self.supports(rel):
            return
        logger.debug("source_changed", path=rel, deleted=deleted)
        self.on_change(rel, deleted)

    def _is_cache_file(self, path: Path) -> bool:
        if self.cache_dir is None or path.suffix != CACHE_SUFFIX:
            return False
        try:
            path.resolve().relative_to(self.cache_dir)
        except ValueError:
            return False
        return True


class FileWatcher:
    """
    Watches the project tree (and optionally a symbol cache directory).

    Usage:
        watcher = FileWatcher(scanner, on_change, backend.supports_path)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        scanner: ProjectScanner,
        on_change: ChangeCallback,
        supports: Callable[[str], bool],
        cache_dir: Path | None = None,
    ):
        self.scanner = scanner
        self.cache_dir = cache_dir
        self.handler = ProjectEventHandler(scanner, on_change, supports, cache_dir)
        self._observer: Observer | None = None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        root = self.scanner.root.resolve()
        observer.schedule(self.handler, str(root), recursive=True)
        if self.cache_dir is not None and self.cache_dir.is_dir():
            cache = self.cache_dir.resolve()
            if cache != root and root not in cache.parents:
                observer.schedule(self.handler, str(cache), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("watcher_started", root=str(root))

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
