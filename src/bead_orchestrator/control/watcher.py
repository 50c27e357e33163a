"""Wake the control plane when the database file changes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

_SQLITE_SUFFIXES = ("", "-wal", "-journal")


class DatabaseChangeHandler(FileSystemEventHandler):
    """Watchdog handler that fires on writes to the database or its WAL."""

    def __init__(self, *, db_path: Path, on_change: Callable[[], None]) -> None:
        super().__init__()
        self.names = frozenset(f"{db_path.name}{suffix}" for suffix in _SQLITE_SUFFIXES)
        self.on_change = on_change

    def on_created(self, event: FileSystemEvent) -> None:
        self._notify(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._notify(event)

    def _notify(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if Path(str(event.src_path)).name in self.names:
            self.on_change()


class DatabaseChangeWatcher:
    """Sets ``wakeup`` whenever another process writes to the database."""

    def __init__(self, db_path: Path, *, wakeup: threading.Event) -> None:
        self.db_path = db_path
        self.wakeup = wakeup
        self._observer: Observer | None = None

    def start(self) -> None:
        if self._observer is not None:
            return
        directory = self.db_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(
            DatabaseChangeHandler(db_path=self.db_path, on_change=self.wakeup.set),
            str(directory),
            recursive=False,
        )
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug("Watching %s for database changes", directory)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None

    def __enter__(self) -> DatabaseChangeWatcher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
