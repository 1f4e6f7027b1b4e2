"""Filesystem watching with per-path debouncing."""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..utils import DEFAULT_DEBOUNCE
from .ignore import PathMatcher

logger = logging.getLogger(__name__)


class Debouncer:
    """Collects paths and releases each one after a quiet period.

    Every new event for a path pushes its deadline back by ``window``
    seconds, so a file being written in many small steps is only acted on
    once it stopped changing.
    """

    def __init__(
        self,
        window: float = DEFAULT_DEBOUNCE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self._clock = clock
        self._deadlines: dict[str, float] = {}
        self._lock = threading.Lock()

    def touch(self, path: str, delay: Optional[float] = None) -> None:
        """Arm (or re-arm) the deadline of ``path``."""
        deadline = self._clock() + (self.window if delay is None else delay)
        with self._lock:
            self._deadlines[path] = deadline

    def due(self) -> list[str]:
        """Remove and return all paths whose quiet period is over."""
        now = self._clock()
        with self._lock:
            ready = sorted(p for p, d in self._deadlines.items() if d <= now)
            for path in ready:
                del self._deadlines[path]
        return ready

    def next_deadline(self) -> Optional[float]:
        """Earliest pending deadline (clock time), if any."""
        with self._lock:
            return min(self._deadlines.values(), default=None)

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._deadlines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._deadlines)


class _ChangeHandler(FileSystemEventHandler):
    """Translates watchdog events into relative paths of a watch root."""

    def __init__(
        self, root: Path, matcher: PathMatcher, on_change: Callable[[str], None]
    ):
        self.root = root
        self.matcher = matcher
        self.on_change = on_change

    def _relative(self, raw_path) -> Optional[str]:
        if isinstance(raw_path, bytes):
            raw_path = os.fsdecode(raw_path)
        try:
            rel = Path(raw_path).relative_to(self.root).as_posix()
        except ValueError:
            return None
        if rel in ("", "."):
            return None
        return rel

    def _report(self, raw_path, is_dir: bool) -> None:
        rel = self._relative(raw_path)
        if rel is None or self.matcher.matches(rel, is_dir=is_dir):
            return
        self.on_change(rel)

    def on_created(self, event: FileSystemEvent) -> None:
        self._report(event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtime churn carries no information about its files
        if event.is_directory:
            return
        self._report(event.src_path, False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._report(event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._report(event.src_path, event.is_directory)
        self._report(event.dest_path, event.is_directory)

    def on_closed(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._report(event.src_path, False)


class LocalWatcher:
    """Watches a local root recursively and reports changed relative paths.

    Examples:
        >>> debouncer = Debouncer(0.5)
        >>> watcher = LocalWatcher(root, matcher, debouncer.touch)  # doctest: +SKIP
        >>> watcher.start()  # doctest: +SKIP
    """

    def __init__(
        self,
        root: Path,
        matcher: PathMatcher,
        on_change: Callable[[str], None],
    ):
        """Initialize the watcher.

        Args:
            root: Directory to watch
            matcher: Ignore rules; ignored paths are never reported
            on_change: Called from the observer thread with each relative path
        """
        self.root = Path(root)
        self.handler = _ChangeHandler(self.root, matcher, on_change)
        self._observer: Optional[Observer] = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(self.handler, str(self.root), recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug(f"Watching {self.root}")

    def stop(self, timeout: float = 5.0) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=timeout)
        self._observer = None
        logger.debug(f"Stopped watching {self.root}")
