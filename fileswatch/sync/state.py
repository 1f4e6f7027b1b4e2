"""Persistent sync state of a watch pair.

The state remembers, per relative path, the size, mtime and content hash of
the last successful transfer. Comparing the current local and remote trees
against it is what lets the engine tell edits from deletions and detect
conflicting changes on both sides.
"""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..exceptions import StateCorrupt
from ..utils import utc_now_iso, write_json_atomic
from .models import ChangeOrigin, ConflictCase, FileState

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class SyncState:
    """Everything persisted for one watch pair."""

    local_path: str
    """Local directory root"""

    remote_path: str
    """Remote folder root"""

    files: dict[str, FileState] = field(default_factory=dict)
    """Last synced state per relative path"""

    conflicts: dict[str, ConflictCase] = field(default_factory=dict)
    """Conflicts waiting for an operator decision"""

    errors: dict[str, str] = field(default_factory=dict)
    """Transfers that failed permanently, with the last error message"""

    last_sync: Optional[str] = None
    """ISO timestamp of the last successful transfer"""

    last_scan: Optional[str] = None
    """ISO timestamp of the last completed scan"""

    def to_dict(self) -> dict:
        """Convert state to dictionary for JSON serialization."""
        return {
            "version": STATE_VERSION,
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "last_sync": self.last_sync,
            "last_scan": self.last_scan,
            "files": {
                path: state.to_dict() for path, state in sorted(self.files.items())
            },
            "conflicts": {
                path: case.to_dict() for path, case in sorted(self.conflicts.items())
            },
            "errors": dict(sorted(self.errors.items())),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncState":
        """Create SyncState from dictionary.

        Raises:
            KeyError, TypeError, ValueError, AttributeError: If the
                structure is malformed
        """
        if not isinstance(data, dict):
            raise TypeError("state document must be a JSON object")
        return cls(
            local_path=data.get("local_path", ""),
            remote_path=data.get("remote_path", ""),
            files={
                path: FileState.from_dict(path, entry)
                for path, entry in data.get("files", {}).items()
            },
            conflicts={
                path: ConflictCase.from_dict(path, entry)
                for path, entry in data.get("conflicts", {}).items()
            },
            errors={str(k): str(v) for k, v in data.get("errors", {}).items()},
            last_sync=data.get("last_sync"),
            last_scan=data.get("last_scan"),
        )


def state_key(local_path: Path, remote_path: str) -> str:
    """Generate a unique key for a watch pair.

    Args:
        local_path: Local directory path
        remote_path: Remote path

    Returns:
        Hash-based key for the watch pair
    """
    # Use absolute path for consistency
    local_abs = str(Path(local_path).resolve())
    combined = f"{local_abs}:{remote_path}"
    return hashlib.sha256(combined.encode()).hexdigest()[:16]


class StateStore:
    """Keeps the :class:`SyncState` of one watch pair in memory and on disk.

    The state file lives in ``<state_dir>/<key>.json`` where ``key`` is
    derived from the local and remote roots. Writes only reach disk on
    :meth:`flush`, which replaces the file atomically. The store is shared by
    the engine thread and the completion callbacks of its scheduler, so all
    access goes through an internal lock.
    """

    def __init__(self, local_path: Path, remote_path: str, state_dir: Path):
        self.local_path = Path(local_path)
        self.remote_path = remote_path
        self.state_dir = Path(state_dir)
        self.key = state_key(self.local_path, remote_path)
        self.state_file = self.state_dir / f"{self.key}.json"
        self.resolutions_file = self.state_dir / f"{self.key}.resolutions.json"
        self._lock = threading.RLock()
        self._state = self._empty_state()
        self._dirty = False

    def _empty_state(self) -> SyncState:
        return SyncState(
            local_path=str(self.local_path.resolve()), remote_path=self.remote_path
        )

    @property
    def lock(self) -> threading.RLock:
        """Lock guarding the in-memory state."""
        return self._lock

    def load(self) -> SyncState:
        """Load the persisted state.

        A missing file yields an empty state.

        Returns:
            The loaded state

        Raises:
            StateCorrupt: If the file exists but cannot be parsed
        """
        with self._lock:
            if not self.state_file.exists():
                logger.debug(f"No sync state found at {self.state_file}")
                self._state = self._empty_state()
                self._dirty = False
                return self._state

            try:
                with open(self.state_file, encoding="utf-8") as f:
                    data = json.load(f)
                state = SyncState.from_dict(data)
            except OSError as e:
                raise StateCorrupt(
                    f"Cannot read sync state {self.state_file}: {e}",
                    path=str(self.state_file),
                ) from e
            except (
                json.JSONDecodeError,
                UnicodeDecodeError,
                KeyError,
                TypeError,
                ValueError,
                AttributeError,
            ) as e:
                raise StateCorrupt(
                    f"Sync state {self.state_file} is corrupt: {e}",
                    path=str(self.state_file),
                ) from e

            self._state = state
            self._dirty = False
            logger.debug(
                f"Loaded sync state with {len(state.files)} files "
                f"from {state.last_sync}"
            )
            return state

    @property
    def state(self) -> SyncState:
        return self._state

    def get(self, path: str) -> Optional[FileState]:
        with self._lock:
            return self._state.files.get(path)

    def paths(self) -> list[str]:
        """All relative paths with a recorded state."""
        with self._lock:
            return sorted(self._state.files)

    def upsert(self, path: str, file_state: FileState) -> None:
        """Insert or replace the state of a path."""
        with self._lock:
            self._state.files[path] = file_state
            if file_state.last_sync_time:
                self._state.last_sync = file_state.last_sync_time
            self._dirty = True

    def remove(self, path: str) -> bool:
        """Forget a path.

        Returns:
            True if the path had a state
        """
        with self._lock:
            existed = self._state.files.pop(path, None) is not None
            if existed:
                self._dirty = True
            return existed

    def add_conflict(self, case: ConflictCase) -> None:
        """Record or update a pending conflict."""
        with self._lock:
            self._state.conflicts[case.path] = case
            self._dirty = True

    def get_conflict(self, path: str) -> Optional[ConflictCase]:
        with self._lock:
            return self._state.conflicts.get(path)

    def pop_conflict(self, path: str) -> Optional[ConflictCase]:
        with self._lock:
            case = self._state.conflicts.pop(path, None)
            if case is not None:
                self._dirty = True
            return case

    def conflicts(self) -> list[ConflictCase]:
        with self._lock:
            return [self._state.conflicts[p] for p in sorted(self._state.conflicts)]

    def set_error(self, path: str, message: str) -> None:
        """Record a transfer that failed permanently."""
        with self._lock:
            self._state.errors[path] = message
            self._dirty = True

    def clear_error(self, path: str) -> None:
        with self._lock:
            if self._state.errors.pop(path, None) is not None:
                self._dirty = True

    def errors(self) -> dict[str, str]:
        with self._lock:
            return dict(self._state.errors)

    def mark_scanned(self) -> None:
        with self._lock:
            self._state.last_scan = utc_now_iso()
            self._dirty = True

    def flush(self, force: bool = False) -> bool:
        """Persist the state atomically if it changed.

        Args:
            force: Write even when nothing changed

        Returns:
            True if the file was written
        """
        with self._lock:
            if not (self._dirty or force):
                return False
            write_json_atomic(self.state_file, self._state.to_dict())
            self._dirty = False
            logger.debug(
                f"Saved sync state with {len(self._state.files)} files "
                f"to {self.state_file}"
            )
            return True

    def clear(self) -> bool:
        """Delete the persisted state of this watch pair.

        Returns:
            True if a state file was removed
        """
        with self._lock:
            self._state = self._empty_state()
            self._dirty = False
            removed = False
            for path in (self.state_file, self.resolutions_file):
                if path.exists():
                    path.unlink()
                    removed = True
            if removed:
                logger.debug(f"Cleared sync state at {self.state_file}")
            return removed

    def request_resolution(self, path: str, choice: ChangeOrigin) -> None:
        """Queue an operator decision for a pending conflict.

        Requests are kept in a side file so another process (the CLI) can
        hand them to a running engine.
        """
        with self._lock:
            requests = self._read_requests()
            requests[path] = choice.value
            write_json_atomic(self.resolutions_file, requests)
            logger.debug(f"Queued resolution {choice.value} for {path}")

    def has_resolution_requests(self) -> bool:
        return self.resolutions_file.exists()

    def take_resolution_requests(self) -> dict[str, ChangeOrigin]:
        """Return and remove all queued operator decisions."""
        with self._lock:
            if not self.resolutions_file.exists():
                return {}
            requests = self._read_requests()
            self.resolutions_file.unlink()

        taken: dict[str, ChangeOrigin] = {}
        for path, value in requests.items():
            try:
                taken[path] = ChangeOrigin(value)
            except ValueError:
                logger.warning(f"Ignoring invalid resolution '{value}' for {path}")
        return taken

    def _read_requests(self) -> dict[str, str]:
        if not self.resolutions_file.exists():
            return {}
        try:
            with open(self.resolutions_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Discarding unreadable {self.resolutions_file}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}
