"""Sync directions for watch pairs."""

from enum import Enum


class SyncDirection(str, Enum):
    """Direction in which a watch pair propagates changes."""

    UP = "up"
    """Local changes are mirrored to the remote"""

    DOWN = "down"
    """Remote changes are mirrored to the local directory"""

    BOTH = "both"
    """Changes are mirrored in both directions, conflicts are resolved"""

    @classmethod
    def from_string(cls, value: str) -> "SyncDirection":
        """Parse a direction name.

        Args:
            value: "up", "down" or "both" (case-insensitive)

        Returns:
            SyncDirection

        Raises:
            ValueError: If the value is not a known direction
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid direction '{value}'. Must be 'up', 'down', or 'both'"
            ) from None

    @property
    def scans_local(self) -> bool:
        """Whether local changes are detected for this direction."""
        return self in (SyncDirection.UP, SyncDirection.BOTH)

    @property
    def scans_remote(self) -> bool:
        """Whether the remote tree is polled for this direction."""
        return self in (SyncDirection.DOWN, SyncDirection.BOTH)

    @property
    def allows_upload(self) -> bool:
        return self.scans_local

    @property
    def allows_download(self) -> bool:
        return self.scans_remote

    @property
    def resolves_conflicts(self) -> bool:
        return self is SyncDirection.BOTH
