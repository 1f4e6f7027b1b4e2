"""Data types shared by the sync engine components."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .modes import SyncDirection


class ChangeKind(str, Enum):
    """Kind of change observed for a path."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class ChangeOrigin(str, Enum):
    """Side on which a change was observed."""

    LOCAL = "local"
    REMOTE = "remote"


class TransferKind(str, Enum):
    """Operations the transfer scheduler can execute."""

    UPLOAD = "upload"
    """Upload local file to remote"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    DELETE_LOCAL = "delete_local"
    """Delete local file"""

    DELETE_REMOTE = "delete_remote"
    """Delete remote file"""


class Resolution(str, Enum):
    """Conflict resolution policies and the pending state."""

    NEWEST = "newest"
    LARGEST = "largest"
    MANUAL = "manual"
    UNRESOLVED = "unresolved"

    @classmethod
    def from_policy(cls, value: str) -> "Resolution":
        """Parse a configured resolution policy.

        Raises:
            ValueError: If the value is not newest, largest or manual
        """
        normalized = value.strip().lower()
        if normalized not in ("newest", "largest", "manual"):
            raise ValueError(f"Invalid conflict resolution: {value}")
        return cls(normalized)


@dataclass(frozen=True)
class SyncConfig:
    """Immutable configuration of one watch pair."""

    local_path: Path
    """Local directory root"""

    remote_path: str
    """Remote folder root"""

    direction: SyncDirection = SyncDirection.UP

    ignore_patterns: tuple[str, ...] = ()
    """Ignore patterns in precedence order (later patterns override earlier)"""

    poll_interval: float = 60.0
    """Seconds between remote polls for down/both pairs"""


@dataclass(frozen=True)
class FileSnapshot:
    """Metadata observed for one side of a path at scan time."""

    size: int
    modified_time: Optional[float] = None
    content_hash: Optional[str] = None
    revision: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "modified_time": self.modified_time,
            "content_hash": self.content_hash,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileSnapshot":
        return cls(
            size=int(data["size"]),
            modified_time=data.get("modified_time"),
            content_hash=data.get("content_hash"),
            revision=data.get("revision"),
        )


@dataclass
class FileState:
    """Last known synced state of one path of a watch pair.

    Only updated after a transfer has durably completed, so
    ``content_hash`` always describes content that was actually transferred.
    """

    relative_path: str
    """Relative path (forward slashes), unique within a watch pair"""

    size: int
    """Size in bytes of the synced content"""

    modified_time: float
    """Local modification time (Unix timestamp) after the sync"""

    content_hash: str
    """sha256 hex digest of the synced content"""

    last_sync_time: str
    """ISO timestamp of the last successful transfer"""

    last_direction_synced: str
    """Direction of the last transfer ("up" or "down")"""

    remote_revision: Optional[str] = None
    """Revision marker reported by the remote store after the sync"""

    remote_modified_time: Optional[float] = None
    """Remote modification time (Unix timestamp) after the sync"""

    def to_dict(self) -> dict:
        """Convert state to dictionary for JSON serialization."""
        return {
            "size": self.size,
            "modified_time": self.modified_time,
            "content_hash": self.content_hash,
            "last_sync_time": self.last_sync_time,
            "direction": self.last_direction_synced,
            "remote_revision": self.remote_revision,
            "remote_modified_time": self.remote_modified_time,
        }

    @classmethod
    def from_dict(cls, relative_path: str, data: dict) -> "FileState":
        """Create FileState from dictionary.

        Raises:
            KeyError: If a required field is missing
            TypeError, ValueError: If a field has the wrong type
        """
        return cls(
            relative_path=relative_path,
            size=int(data["size"]),
            modified_time=float(data["modified_time"]),
            content_hash=str(data["content_hash"]),
            last_sync_time=str(data["last_sync_time"]),
            last_direction_synced=str(data["direction"]),
            remote_revision=data.get("remote_revision"),
            remote_modified_time=data.get("remote_modified_time"),
        )


@dataclass(frozen=True)
class ChangeEvent:
    """A change detected on one side of a watch pair."""

    path: str
    kind: ChangeKind
    origin: ChangeOrigin
    observed: Optional[FileSnapshot] = None
    """Observed metadata (None for deletions)"""


@dataclass
class ConflictCase:
    """A path changed independently on both sides since its last sync."""

    path: str
    local: FileSnapshot
    remote: FileSnapshot
    resolution: Resolution = Resolution.UNRESOLVED
    winner: Optional[ChangeOrigin] = None
    chosen: Optional[ChangeOrigin] = None
    """Side picked by an operator for a manual conflict"""

    detected_at: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not Resolution.UNRESOLVED

    def to_dict(self) -> dict:
        return {
            "local": self.local.to_dict(),
            "remote": self.remote.to_dict(),
            "resolution": self.resolution.value,
            "winner": self.winner.value if self.winner else None,
            "chosen": self.chosen.value if self.chosen else None,
            "detected_at": self.detected_at,
        }

    @classmethod
    def from_dict(cls, path: str, data: dict) -> "ConflictCase":
        winner = data.get("winner")
        chosen = data.get("chosen")
        return cls(
            path=path,
            local=FileSnapshot.from_dict(data["local"]),
            remote=FileSnapshot.from_dict(data["remote"]),
            resolution=Resolution(data.get("resolution", "unresolved")),
            winner=ChangeOrigin(winner) if winner else None,
            chosen=ChangeOrigin(chosen) if chosen else None,
            detected_at=data.get("detected_at", ""),
        )


@dataclass
class TransferTask:
    """One scheduled upload, download or delete for a single path."""

    path: str
    kind: TransferKind
    attempt_count: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)
    backup_first: bool = False
    """Keep a backup copy of the content about to be overwritten or deleted"""

    reason: str = ""


@dataclass
class TransferOutcome:
    """Result of an executed transfer task."""

    state: Optional[FileState] = None
    """New state of the path after an upload or download"""

    removed: bool = False
    """The path no longer exists on either side"""

    details: dict[str, Any] = field(default_factory=dict)
