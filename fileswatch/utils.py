"""Utility functions for fileswatch."""

import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Optional

# =============================================================================
# Constants for file operations
# =============================================================================

# Chunk size for streaming reads and downloads (64 KB)
DEFAULT_CHUNK_SIZE: int = 64 * 1024

# Remote poll interval for down/both watch pairs
DEFAULT_CHECK_INTERVAL: int = 60

# Maximum number of concurrent transfers per watch pair
DEFAULT_CONCURRENT_UPLOADS: int = 5

# Retry configuration for transient errors
DEFAULT_MAX_ATTEMPTS: int = 5
DEFAULT_RETRY_DELAY: float = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY: float = 60.0  # seconds

# Quiet period before acting on a burst of local events for one path
DEFAULT_DEBOUNCE: float = 0.5  # seconds

# Time running transfers get to finish on shutdown
DEFAULT_SHUTDOWN_GRACE: float = 10.0  # seconds

# Marker inserted into the name of conflict backup copies
CONFLICT_MARKER: str = ".conflict-"

# Suffix of temporary files written while a download is in progress
PARTIAL_SUFFIX: str = ".fileswatch-partial"


# =============================================================================
# Timestamp utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[float]:
    """Parse an ISO format timestamp from the Files.com API.

    Args:
        timestamp_str: ISO format timestamp string (e.g., "2025-01-15T10:30:00Z")

    Returns:
        Unix timestamp or None if parsing fails
    """
    if not timestamp_str:
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"

        dt = datetime.fromisoformat(timestamp_str)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except (ValueError, AttributeError):
        return None


def utc_now_iso() -> str:
    """Return the current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def format_timestamp(value: Optional[str]) -> str:
    """Format a stored ISO timestamp for display.

    Args:
        value: ISO-8601 timestamp or None

    Returns:
        Local time as "YYYY-MM-DD HH:MM:SS", or "Never"
    """
    if not value:
        return "Never"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return value
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def hash_bytes(data: bytes) -> str:
    """Return the sha256 hex digest of a byte string."""
    return hashlib.sha256(data).hexdigest()


def hash_file(file_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Calculate the sha256 digest of a file by streaming it in chunks.

    Args:
        file_path: File to hash
        chunk_size: Number of bytes read per iteration

    Returns:
        Hex digest of the file content

    Raises:
        OSError: If the file cannot be read

    Examples:
        >>> hash_file(Path("empty.txt"))  # doctest: +SKIP
        'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


# =============================================================================
# Path utilities
# =============================================================================


def join_remote(base: str, relative_path: str) -> str:
    """Build a full remote path from the watch pair root and a relative path.

    Examples:
        >>> join_remote("/docs/", "a/b.txt")
        '/docs/a/b.txt'
        >>> join_remote("/", "b.txt")
        '/b.txt'
    """
    base = "/" + base.strip("/") if base.strip("/") else ""
    return f"{base}/{relative_path.lstrip('/')}"


def relative_remote(base: str, remote_path: str) -> Optional[str]:
    """Strip the watch pair root from a full remote path.

    Returns:
        Relative path with forward slashes, or None if the path is not
        below ``base``
    """
    base_parts = PurePosixPath("/" + base.strip("/")).parts
    parts = PurePosixPath("/" + remote_path.strip("/")).parts
    if len(parts) <= len(base_parts) or parts[: len(base_parts)] != base_parts:
        return None
    return "/".join(parts[len(base_parts) :])


def backup_name(relative_path: str, when: Optional[datetime] = None) -> str:
    """Name of the backup copy kept for the losing side of a conflict.

    Examples:
        >>> backup_name("docs/report.txt", datetime(2026, 1, 2, 3, 4, 5))
        'docs/report.conflict-20260102-030405.txt'
    """
    when = when or datetime.now()
    path = PurePosixPath(relative_path)
    stamp = when.strftime("%Y%m%d-%H%M%S")
    name = f"{path.stem}{CONFLICT_MARKER}{stamp}{path.suffix}"
    return str(path.with_name(name))


# =============================================================================
# File utilities
# =============================================================================


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON through a temp file in the same directory, then rename.

    Readers see either the old or the new document, never a partial one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
