"""Change detection for watch pairs.

Both sides are compared against the stored :class:`FileState` of each path.
Local files whose size and mtime match the stored values are skipped
without reading them; anything else is hashed, and a hash equal to the
stored one only refreshes the stored metadata.
"""

import logging
import os
import stat
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional

from ..exceptions import LocalIoError, RemoteNotFoundError
from ..models import RemoteEntry
from ..utils import DEFAULT_CHUNK_SIZE, hash_file, relative_remote
from .ignore import PathMatcher
from .models import ChangeEvent, ChangeKind, ChangeOrigin, FileSnapshot, SyncConfig
from .remote import RemoteStore
from .state import StateStore

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Finds local and remote changes since the last successful sync."""

    def __init__(
        self,
        matcher: PathMatcher,
        remote: RemoteStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """Initialize the detector.

        Args:
            matcher: Ignore rules of the watch pair
            remote: Remote store used for listings
            chunk_size: Read size used while hashing local files
        """
        self.matcher = matcher
        self.remote = remote
        self.chunk_size = chunk_size

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------

    def scan_local(
        self,
        config: SyncConfig,
        store: StateStore,
        paths: Optional[Iterable[str]] = None,
        full: bool = False,
    ) -> list[ChangeEvent]:
        """Detect local changes.

        Args:
            config: Watch pair configuration
            store: State store of the watch pair
            paths: Restrict the scan to these relative paths (directories are
                expanded); None scans the whole tree
            full: Re-hash every file even if size and mtime are unchanged

        Returns:
            Change events with origin ``local``, sorted by path
        """
        root = config.local_path
        seen: set[str] = set()
        events: list[ChangeEvent] = []

        if paths is None:
            candidates = self._walk(root, "")
            scope: Optional[list[str]] = None
        else:
            scope = sorted({p.strip("/") for p in paths if p.strip("/")})
            candidates = []
            for rel in scope:
                if self.matcher.matches(rel):
                    continue
                abs_path = root / rel
                if abs_path.is_dir() and not abs_path.is_symlink():
                    if not self.matcher.matches(rel, is_dir=True):
                        candidates.extend(self._walk(abs_path, rel))
                else:
                    candidates.append(rel)

        for rel in candidates:
            if rel in seen:
                continue
            try:
                event = self._check_local_file(root, rel, store, full)
            except LocalIoError as e:
                logger.warning(f"Skipping {rel} for this pass: {e}")
                seen.add(rel)
                continue
            if event is None and not os.path.lexists(root / rel):
                continue
            seen.add(rel)
            if event is not None:
                events.append(event)

        for rel in store.paths():
            if rel in seen or self.matcher.matches(rel):
                continue
            if scope is not None and not _in_scope(rel, scope):
                continue
            if _exists_as_file(root / rel):
                # Present but unreadable or not a regular file this pass
                continue
            logger.debug(f"Local deletion detected: {rel}")
            events.append(ChangeEvent(rel, ChangeKind.DELETED, ChangeOrigin.LOCAL))

        events.sort(key=lambda e: e.path)
        return events

    def _walk(self, directory: Path, prefix: str) -> list[str]:
        """List regular files below ``directory``, pruning ignored dirs."""
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(directory, followlinks=False):
            rel_dir = os.path.relpath(dirpath, directory)
            base = prefix if rel_dir == "." else _join(prefix, Path(rel_dir).as_posix())

            kept = []
            for name in sorted(dirnames):
                rel = _join(base, name)
                if os.path.islink(os.path.join(dirpath, name)):
                    logger.debug(f"Skipping symlinked directory: {rel}")
                    continue
                if self.matcher.matches(rel, is_dir=True):
                    logger.debug(f"Ignoring directory: {rel}")
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                rel = _join(base, name)
                if self.matcher.matches(rel):
                    continue
                found.append(rel)
        return found

    def _check_local_file(
        self, root: Path, rel: str, store: StateStore, full: bool
    ) -> Optional[ChangeEvent]:
        abs_path = root / rel
        try:
            st = os.lstat(abs_path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LocalIoError(f"Cannot stat {abs_path}: {e}", path=rel) from e

        if not stat.S_ISREG(st.st_mode):
            logger.debug(f"Skipping non-regular file: {rel}")
            return None

        stored = store.get(rel)
        if (
            stored is not None
            and not full
            and stored.size == st.st_size
            and stored.modified_time == st.st_mtime
        ):
            return None

        try:
            content_hash = hash_file(abs_path, self.chunk_size)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LocalIoError(f"Cannot read {abs_path}: {e}", path=rel) from e

        if stored is not None and stored.content_hash == content_hash:
            if stored.modified_time != st.st_mtime or stored.size != st.st_size:
                logger.debug(f"Metadata-only change, refreshing state: {rel}")
                store.upsert(
                    rel, replace(stored, size=st.st_size, modified_time=st.st_mtime)
                )
            return None

        snapshot = FileSnapshot(
            size=st.st_size, modified_time=st.st_mtime, content_hash=content_hash
        )
        kind = ChangeKind.CREATED if stored is None else ChangeKind.MODIFIED
        logger.debug(f"Local {kind.value}: {rel}")
        return ChangeEvent(rel, kind, ChangeOrigin.LOCAL, snapshot)

    # ------------------------------------------------------------------
    # Remote side
    # ------------------------------------------------------------------

    def scan_remote(
        self, config: SyncConfig, store: StateStore, full: bool = False
    ) -> list[ChangeEvent]:
        """Detect remote changes.

        Args:
            config: Watch pair configuration
            store: State store of the watch pair
            full: Skip the revision shortcut and compare by content hash
                wherever the remote reports one

        Returns:
            Change events with origin ``remote``, sorted by path

        Raises:
            RemoteError: If the remote tree cannot be listed
        """
        try:
            entries = self.remote.list(config.remote_path)
        except RemoteNotFoundError:
            if store.paths():
                raise
            logger.debug(f"Remote folder {config.remote_path} does not exist yet")
            entries = []

        seen: set[str] = set()
        events: list[ChangeEvent] = []

        for entry in entries:
            if entry.is_dir:
                continue
            rel = relative_remote(config.remote_path, entry.path)
            if rel is None or self.matcher.matches(rel):
                continue
            seen.add(rel)
            event = self._check_remote_entry(rel, entry, store, full)
            if event is not None:
                events.append(event)

        for rel in store.paths():
            if rel in seen or self.matcher.matches(rel):
                continue
            logger.debug(f"Remote deletion detected: {rel}")
            events.append(ChangeEvent(rel, ChangeKind.DELETED, ChangeOrigin.REMOTE))

        events.sort(key=lambda e: e.path)
        return events

    def _check_remote_entry(
        self, rel: str, entry: RemoteEntry, store: StateStore, full: bool
    ) -> Optional[ChangeEvent]:
        stored = store.get(rel)
        snapshot = FileSnapshot(
            size=entry.size,
            modified_time=entry.modified_time,
            content_hash=entry.content_hash,
            revision=entry.revision,
        )
        if stored is None:
            logger.debug(f"Remote created: {rel}")
            return ChangeEvent(rel, ChangeKind.CREATED, ChangeOrigin.REMOTE, snapshot)

        if not full and entry.size == stored.size:
            if entry.revision is not None and stored.remote_revision is not None:
                if entry.revision == stored.remote_revision:
                    return None
            elif (
                entry.modified_time is not None
                and entry.modified_time == stored.remote_modified_time
            ):
                return None

        if entry.content_hash is not None and entry.size == stored.size:
            if entry.content_hash == stored.content_hash:
                if (
                    entry.revision != stored.remote_revision
                    or entry.modified_time != stored.remote_modified_time
                ):
                    logger.debug(f"Remote metadata-only change: {rel}")
                    store.upsert(
                        rel,
                        replace(
                            stored,
                            remote_revision=entry.revision,
                            remote_modified_time=entry.modified_time,
                        ),
                    )
                return None
        elif full and entry.content_hash is None and entry.size == stored.size:
            # Nothing better than metadata to compare against
            if (
                entry.revision is not None
                and entry.revision == stored.remote_revision
            ) or (
                entry.modified_time is not None
                and entry.modified_time == stored.remote_modified_time
            ):
                return None

        logger.debug(f"Remote modified: {rel}")
        return ChangeEvent(rel, ChangeKind.MODIFIED, ChangeOrigin.REMOTE, snapshot)


def _join(prefix: str, name: str) -> str:
    return f"{prefix}/{name}" if prefix else name


def _in_scope(rel: str, scope: list[str]) -> bool:
    return any(rel == s or rel.startswith(s + "/") for s in scope)


def _exists_as_file(path: Path) -> bool:
    try:
        os.lstat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return not path.is_dir() or path.is_symlink()
