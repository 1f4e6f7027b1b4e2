"""Execution of single transfer tasks against the local tree and the remote."""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from send2trash import send2trash

from ..exceptions import LocalIoError, RemoteNotFoundError
from ..models import RemoteEntry
from ..utils import (
    DEFAULT_CHUNK_SIZE,
    PARTIAL_SUFFIX,
    backup_name,
    hash_bytes,
    join_remote,
    utc_now_iso,
)
from .models import FileState, SyncConfig, TransferKind, TransferOutcome, TransferTask
from .remote import RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class LocalContent:
    """Bytes read from a local file and the stat taken while reading."""

    data: bytes
    size: int
    modified_time: float


class SyncOperations:
    """Unified operations for upload/download/delete of one watch pair.

    Every method raises :class:`LocalIoError` for local filesystem failures
    and lets :class:`RemoteError` from the remote store propagate, so the
    scheduler can decide whether to retry.
    """

    def __init__(
        self,
        config: SyncConfig,
        remote: RemoteStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        use_trash: bool = False,
    ):
        """Initialize sync operations.

        Args:
            config: Watch pair configuration
            remote: Remote store
            chunk_size: Read size for local files
            use_trash: Move deleted local files to the system trash
        """
        self.config = config
        self.remote = remote
        self.chunk_size = chunk_size
        self.use_trash = use_trash

    def local_path(self, relative_path: str) -> Path:
        return self.config.local_path / relative_path

    def remote_path(self, relative_path: str) -> str:
        return join_remote(self.config.remote_path, relative_path)

    def execute(self, task: TransferTask) -> TransferOutcome:
        """Run one task.

        Returns:
            Outcome carrying the new FileState, or ``removed=True`` for
            deletions
        """
        if task.kind is TransferKind.UPLOAD:
            return self.upload(task)
        if task.kind is TransferKind.DOWNLOAD:
            return self.download(task)
        if task.kind is TransferKind.DELETE_LOCAL:
            return self.delete_local(task)
        if task.kind is TransferKind.DELETE_REMOTE:
            return self.delete_remote(task)
        raise ValueError(f"Unknown transfer kind: {task.kind}")

    def read_local(self, relative_path: str) -> Optional[LocalContent]:
        """Read a local file in chunks.

        Returns:
            The content, or None if the file no longer exists

        Raises:
            LocalIoError: If the file cannot be read
        """
        path = self.local_path(relative_path)
        chunks = []
        try:
            with open(path, "rb") as f:
                st = os.fstat(f.fileno())
                while True:
                    chunk = f.read(self.chunk_size)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LocalIoError(f"Cannot read {path}: {e}", path=relative_path) from e

        data = b"".join(chunks)
        return LocalContent(data=data, size=len(data), modified_time=st.st_mtime)

    def upload(self, task: TransferTask) -> TransferOutcome:
        """Upload a local file, replacing the remote copy."""
        content = self.read_local(task.path)
        if content is None:
            logger.info(f"Skipping upload of {task.path}: local file is gone")
            return TransferOutcome(details={"skipped": "missing"})

        remote_path = self.remote_path(task.path)
        details: dict = {}
        if task.backup_first:
            backup = self.backup_remote(task.path)
            task.backup_first = False
            if backup:
                details["backup"] = backup

        logger.info(f"Uploading {task.path} ({content.size} bytes)")
        entry = self.remote.upload(remote_path, content.data)

        state = FileState(
            relative_path=task.path,
            size=content.size,
            modified_time=content.modified_time,
            content_hash=hash_bytes(content.data),
            last_sync_time=utc_now_iso(),
            last_direction_synced="up",
            remote_revision=entry.revision,
            remote_modified_time=entry.modified_time,
        )
        return TransferOutcome(state=state, details=details)

    def download(self, task: TransferTask) -> TransferOutcome:
        """Download a remote file, replacing the local copy atomically."""
        remote_path = self.remote_path(task.path)
        data, entry = self.remote.download(remote_path)

        details: dict = {}
        if task.backup_first:
            backup = self.backup_local(task.path)
            task.backup_first = False
            if backup:
                details["backup"] = backup

        logger.info(f"Downloading {task.path} ({len(data)} bytes)")
        local = self.local_path(task.path)
        modified_time = self._write_local(task.path, local, data, entry)

        state = FileState(
            relative_path=task.path,
            size=len(data),
            modified_time=modified_time,
            content_hash=hash_bytes(data),
            last_sync_time=utc_now_iso(),
            last_direction_synced="down",
            remote_revision=entry.revision,
            remote_modified_time=entry.modified_time,
        )
        return TransferOutcome(state=state, details=details)

    def _write_local(
        self, relative_path: str, local: Path, data: bytes, entry: RemoteEntry
    ) -> float:
        """Write ``data`` through a temp file and return the final mtime."""
        try:
            local.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{local.name}.", suffix=PARTIAL_SUFFIX, dir=local.parent
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, local)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

            if entry.modified_time is not None:
                os.utime(local, (entry.modified_time, entry.modified_time))
            return os.stat(local).st_mtime
        except OSError as e:
            raise LocalIoError(
                f"Cannot write {local}: {e}", path=relative_path
            ) from e

    def delete_local(self, task: TransferTask) -> TransferOutcome:
        """Delete a local file (already missing counts as success)."""
        path = self.local_path(task.path)
        if not os.path.lexists(path):
            logger.debug(f"Local file already gone: {task.path}")
            return TransferOutcome(removed=True)

        logger.info(f"Deleting local file {task.path}")
        try:
            if self.use_trash:
                send2trash(str(path))
            else:
                path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LocalIoError(f"Cannot delete {path}: {e}", path=task.path) from e
        return TransferOutcome(removed=True)

    def delete_remote(self, task: TransferTask) -> TransferOutcome:
        """Delete a remote file (already missing counts as success)."""
        logger.info(f"Deleting remote file {task.path}")
        try:
            self.remote.delete(self.remote_path(task.path))
        except RemoteNotFoundError:
            logger.debug(f"Remote file already gone: {task.path}")
        return TransferOutcome(removed=True)

    def backup_local(
        self, relative_path: str, when: Optional[datetime] = None
    ) -> Optional[str]:
        """Copy the local file aside before it is overwritten.

        Returns:
            Relative path of the backup, or None if there was nothing to copy
        """
        source = self.local_path(relative_path)
        if not source.is_file():
            return None
        target_rel = backup_name(relative_path, when)
        target = self.local_path(target_rel)
        try:
            shutil.copy2(source, target)
        except OSError as e:
            raise LocalIoError(
                f"Cannot back up {source}: {e}", path=relative_path
            ) from e
        logger.info(f"Backed up local {relative_path} to {target_rel}")
        return target_rel

    def backup_remote(
        self, relative_path: str, when: Optional[datetime] = None
    ) -> Optional[str]:
        """Copy the remote file aside before it is overwritten.

        Returns:
            Relative path of the backup, or None if the remote file is missing
        """
        try:
            data, _entry = self.remote.download(self.remote_path(relative_path))
        except RemoteNotFoundError:
            return None
        target_rel = backup_name(relative_path, when)
        self.remote.upload(self.remote_path(target_rel), data)
        logger.info(f"Backed up remote {relative_path} to {target_rel}")
        return target_rel
