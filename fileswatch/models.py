"""Data models for remote store entries."""

from dataclasses import dataclass
from typing import Any, Optional

from .utils import parse_iso_timestamp


@dataclass
class RemoteEntry:
    """A file or folder reported by the remote store."""

    path: str
    """Full remote path with a leading slash"""

    size: int = 0
    """File size in bytes"""

    modified_time: Optional[float] = None
    """Last modification time (Unix timestamp)"""

    revision: Optional[str] = None
    """Marker that changes whenever the remote content is replaced"""

    content_hash: Optional[str] = None
    """sha256 hex digest, when the store computes one"""

    is_dir: bool = False

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "RemoteEntry":
        """Create a RemoteEntry from a Files.com file entity.

        Args:
            data: JSON object returned by the files/folders endpoints

        Returns:
            RemoteEntry instance
        """
        path = data.get("path") or ""
        if not path.startswith("/"):
            path = "/" + path
        mtime_str = data.get("provided_mtime") or data.get("mtime")
        modified_time = parse_iso_timestamp(mtime_str)

        # md5 identifies the stored content; mtime is the fallback marker
        revision = data.get("md5") or data.get("crc32") or data.get("mtime")

        return cls(
            path=path,
            size=int(data.get("size") or 0),
            modified_time=modified_time,
            revision=revision,
            content_hash=data.get("sha256") or None,
            is_dir=data.get("type") == "directory",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "modified_time": self.modified_time,
            "revision": self.revision,
            "content_hash": self.content_hash,
            "is_dir": self.is_dir,
        }
