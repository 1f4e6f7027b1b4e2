"""Shared fixtures for the fileswatch tests."""

import os
import threading
import time
from collections import defaultdict
from pathlib import Path, PurePosixPath
from typing import Optional

import pytest

from fileswatch.config import ConflictSettings, SyncSettings
from fileswatch.exceptions import RemoteNotFoundError
from fileswatch.models import RemoteEntry
from fileswatch.sync.engine import SyncEngine
from fileswatch.sync.models import SyncConfig
from fileswatch.sync.modes import SyncDirection
from fileswatch.utils import hash_bytes

REMOTE_ROOT = "/remote"


class MemoryRemoteStore:
    """In-memory remote store.

    Every stored file gets a fresh revision. ``errors`` holds exceptions to
    raise, in order, for calls of ``(operation, path)``; ``gate`` blocks
    uploads until it is set.
    """

    def __init__(self):
        self.files: dict[str, tuple[bytes, RemoteEntry]] = {}
        self.folders: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.errors: dict[tuple[str, str], list[Exception]] = defaultdict(list)
        self.list_error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.active: dict[str, int] = defaultdict(int)
        self.max_active: dict[str, int] = defaultdict(int)
        self.closed = False
        self._revision = 0
        self._lock = threading.Lock()

    def put(
        self, remote_path: str, data: bytes, mtime: Optional[float] = None
    ) -> RemoteEntry:
        """Store a file as if it was changed by another client."""
        with self._lock:
            self._revision += 1
            entry = RemoteEntry(
                path=remote_path,
                size=len(data),
                modified_time=time.time() if mtime is None else mtime,
                revision=f"rev-{self._revision}",
                content_hash=hash_bytes(data),
            )
            self.files[remote_path] = (data, entry)
            self.folders.update(str(p) for p in PurePosixPath(remote_path).parents)
            return entry

    def content(self, remote_path: str) -> bytes:
        return self.files[remote_path][0]

    def _record(self, operation: str, remote_path: str) -> None:
        with self._lock:
            self.calls.append((operation, remote_path))
            pending = self.errors.get((operation, remote_path))
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def upload(self, remote_path: str, data: bytes) -> RemoteEntry:
        with self._lock:
            self.active[remote_path] += 1
            self.max_active[remote_path] = max(
                self.max_active[remote_path], self.active[remote_path]
            )
        try:
            self._record("upload", remote_path)
            if self.gate is not None:
                self.gate.wait(10)
            return self.put(remote_path, data)
        finally:
            with self._lock:
                self.active[remote_path] -= 1

    def download(self, remote_path: str) -> tuple[bytes, RemoteEntry]:
        self._record("download", remote_path)
        with self._lock:
            if remote_path not in self.files:
                raise RemoteNotFoundError(f"Not found: {remote_path}")
            return self.files[remote_path]

    def list(self, remote_path: str) -> list[RemoteEntry]:
        self._record("list", remote_path)
        if self.list_error is not None:
            raise self.list_error
        base = PurePosixPath("/" + remote_path.strip("/"))
        with self._lock:
            if str(base) != "/" and str(base) not in self.folders:
                raise RemoteNotFoundError(f"Not found: {remote_path}")
            entries = [
                entry
                for path, (_data, entry) in sorted(self.files.items())
                if base in PurePosixPath(path).parents
            ]
            entries.extend(
                RemoteEntry(path=folder, is_dir=True)
                for folder in sorted(self.folders)
                if base in PurePosixPath(folder).parents
            )
        return entries

    def delete(self, remote_path: str) -> None:
        self._record("delete", remote_path)
        with self._lock:
            if remote_path not in self.files:
                raise RemoteNotFoundError(f"Not found: {remote_path}")
            del self.files[remote_path]

    def close(self) -> None:
        self.closed = True


def write_file(path: Path, data: bytes, mtime: Optional[float] = None) -> Path:
    """Write a file, creating parents, optionally with a fixed mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def remote():
    """Provide an empty in-memory remote store."""
    return MemoryRemoteStore()


@pytest.fixture
def local_dir(tmp_path):
    """Provide an empty local watch root."""
    path = tmp_path / "local"
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def fast_settings():
    """Sync settings with short delays for tests."""
    return SyncSettings(
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        debounce_secs=0.05,
        shutdown_grace_secs=2.0,
    )


@pytest.fixture
def make_engine(local_dir, remote, state_dir, fast_settings):
    """Factory for engines of the ``local_dir`` <-> ``/remote`` pair."""
    engines: list[SyncEngine] = []

    def factory(
        direction: str = "up",
        resolution: str = "newest",
        backup: bool = True,
        ignore: tuple[str, ...] = (),
        settings: Optional[SyncSettings] = None,
        poll_interval: float = 60.0,
    ) -> SyncEngine:
        config = SyncConfig(
            local_path=local_dir,
            remote_path=REMOTE_ROOT,
            direction=SyncDirection(direction),
            ignore_patterns=tuple(ignore),
            poll_interval=poll_interval,
        )
        engine = SyncEngine(
            config,
            remote,
            settings=settings or fast_settings,
            conflict=ConflictSettings(resolution=resolution, backup=backup),
            state_dir=state_dir,
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.stop()
        if engine.scheduler is not None:
            engine.scheduler.shutdown(1.0)
