"""Tests for the execution of single transfer tasks."""

import os
from datetime import datetime

import pytest
from conftest import REMOTE_ROOT, write_file

from fileswatch.exceptions import LocalIoError, RemoteNetworkError
from fileswatch.sync.models import SyncConfig, TransferKind, TransferTask
from fileswatch.sync.modes import SyncDirection
from fileswatch.sync.operations import SyncOperations
from fileswatch.utils import hash_bytes

T0 = 1_700_000_000.0
WHEN = datetime(2026, 1, 2, 3, 4, 5)


@pytest.fixture
def ops(local_dir, remote):
    config = SyncConfig(
        local_path=local_dir, remote_path=REMOTE_ROOT, direction=SyncDirection.BOTH
    )
    return SyncOperations(config, remote, chunk_size=4)


class TestUpload:
    def test_upload_records_state(self, ops, remote, local_dir):
        write_file(local_dir / "sub" / "a.txt", b"hello world", mtime=T0)

        outcome = ops.execute(TransferTask("sub/a.txt", TransferKind.UPLOAD))

        assert remote.content("/remote/sub/a.txt") == b"hello world"
        state = outcome.state
        assert state.size == 11
        assert state.modified_time == pytest.approx(T0)
        assert state.content_hash == hash_bytes(b"hello world")
        assert state.last_direction_synced == "up"
        assert state.remote_revision == remote.files["/remote/sub/a.txt"][1].revision

    def test_missing_local_file_is_skipped(self, ops, remote):
        outcome = ops.execute(TransferTask("gone.txt", TransferKind.UPLOAD))

        assert outcome.state is None
        assert not outcome.removed
        assert outcome.details == {"skipped": "missing"}
        assert remote.count("upload") == 0

    def test_backup_of_remote_before_overwrite(self, ops, remote, local_dir):
        remote.put("/remote/a.txt", b"theirs")
        write_file(local_dir / "a.txt", b"mine")
        task = TransferTask("a.txt", TransferKind.UPLOAD, backup_first=True)

        outcome = ops.execute(task)

        backup = outcome.details["backup"]
        assert backup.startswith("a.conflict-")
        assert remote.content(f"/remote/{backup}") == b"theirs"
        assert remote.content("/remote/a.txt") == b"mine"
        # A retry must not back up the new content again
        assert not task.backup_first

    def test_remote_errors_propagate(self, ops, remote, local_dir):
        write_file(local_dir / "a.txt", b"x")
        remote.errors[("upload", "/remote/a.txt")].append(RemoteNetworkError("down"))

        with pytest.raises(RemoteNetworkError):
            ops.execute(TransferTask("a.txt", TransferKind.UPLOAD))

    def test_unreadable_file_raises_local_io_error(self, ops, local_dir):
        (local_dir / "dir.txt").mkdir()

        with pytest.raises(LocalIoError) as exc_info:
            ops.execute(TransferTask("dir.txt", TransferKind.UPLOAD))
        assert exc_info.value.path == "dir.txt"


class TestDownload:
    def test_download_writes_file_with_remote_mtime(self, ops, remote, local_dir):
        remote.put("/remote/deep/b.txt", b"remote data", mtime=T0)

        outcome = ops.execute(TransferTask("deep/b.txt", TransferKind.DOWNLOAD))

        target = local_dir / "deep" / "b.txt"
        assert target.read_bytes() == b"remote data"
        assert os.stat(target).st_mtime == pytest.approx(T0)
        assert outcome.state.last_direction_synced == "down"
        assert outcome.state.remote_modified_time == T0
        assert sorted(os.listdir(local_dir / "deep")) == ["b.txt"]

    def test_backup_of_local_before_overwrite(self, ops, remote, local_dir):
        remote.put("/remote/a.txt", b"theirs")
        write_file(local_dir / "a.txt", b"mine")

        outcome = ops.execute(
            TransferTask("a.txt", TransferKind.DOWNLOAD, backup_first=True)
        )

        backup = outcome.details["backup"]
        assert (local_dir / backup).read_bytes() == b"mine"
        assert (local_dir / "a.txt").read_bytes() == b"theirs"


class TestDelete:
    def test_delete_local(self, ops, local_dir):
        write_file(local_dir / "a.txt", b"x")

        outcome = ops.execute(TransferTask("a.txt", TransferKind.DELETE_LOCAL))

        assert outcome.removed
        assert not (local_dir / "a.txt").exists()

    def test_delete_local_missing_is_success(self, ops):
        outcome = ops.execute(TransferTask("gone.txt", TransferKind.DELETE_LOCAL))

        assert outcome.removed

    def test_delete_local_to_trash(self, ops, local_dir, monkeypatch):
        trashed = []
        monkeypatch.setattr(
            "fileswatch.sync.operations.send2trash", lambda path: trashed.append(path)
        )
        ops.use_trash = True
        write_file(local_dir / "a.txt", b"x")

        ops.execute(TransferTask("a.txt", TransferKind.DELETE_LOCAL))

        assert trashed == [str(local_dir / "a.txt")]

    def test_delete_remote(self, ops, remote):
        remote.put("/remote/a.txt", b"x")

        outcome = ops.execute(TransferTask("a.txt", TransferKind.DELETE_REMOTE))

        assert outcome.removed
        assert "/remote/a.txt" not in remote.files

    def test_delete_remote_missing_is_success(self, ops):
        outcome = ops.execute(TransferTask("gone.txt", TransferKind.DELETE_REMOTE))

        assert outcome.removed


class TestBackups:
    def test_backup_names_keep_the_extension(self, ops, local_dir):
        write_file(local_dir / "docs" / "report.txt", b"x")

        assert ops.backup_local("docs/report.txt", WHEN) == (
            "docs/report.conflict-20260102-030405.txt"
        )

    def test_nothing_to_back_up(self, ops):
        assert ops.backup_local("gone.txt", WHEN) is None
        assert ops.backup_remote("gone.txt", WHEN) is None
