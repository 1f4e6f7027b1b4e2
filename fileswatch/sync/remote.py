"""Remote store interface consumed by the sync engine."""

from typing import Protocol, runtime_checkable

from ..models import RemoteEntry


@runtime_checkable
class RemoteStore(Protocol):
    """Storage backend holding the remote side of a watch pair.

    Implementations perform the network calls; the sync engine never builds
    requests itself. Failures must be raised as
    :class:`~fileswatch.exceptions.RemoteError` subclasses whose
    ``retryable`` flag tells the scheduler whether to try again.
    """

    def upload(self, remote_path: str, data: bytes) -> RemoteEntry:
        """Store ``data`` at ``remote_path`` and return the new entry."""
        ...

    def download(self, remote_path: str) -> tuple[bytes, RemoteEntry]:
        """Return the content and metadata of ``remote_path``."""
        ...

    def list(self, remote_path: str) -> list[RemoteEntry]:
        """Recursively list every entry below ``remote_path``."""
        ...

    def delete(self, remote_path: str) -> None:
        """Delete the file at ``remote_path``."""
        ...
