"""Tests for the persisted sync state."""

import json

import pytest

from fileswatch.exceptions import StateCorrupt
from fileswatch.sync.models import (
    ChangeOrigin,
    ConflictCase,
    FileSnapshot,
    FileState,
)
from fileswatch.sync.state import StateStore, SyncState, state_key


def file_state(path: str, size: int = 3) -> FileState:
    return FileState(
        relative_path=path,
        size=size,
        modified_time=1_700_000_000.0,
        content_hash="abc",
        last_sync_time="2026-01-01T00:00:00+00:00",
        last_direction_synced="up",
        remote_revision="rev-1",
    )


@pytest.fixture
def store(tmp_path):
    local = tmp_path / "local"
    local.mkdir()
    return StateStore(local, "/remote", tmp_path / "state")


class TestStateKey:
    def test_key_is_stable(self, tmp_path):
        assert state_key(tmp_path, "/remote") == state_key(tmp_path, "/remote")
        assert len(state_key(tmp_path, "/remote")) == 16

    def test_key_differs_per_pair(self, tmp_path):
        assert state_key(tmp_path, "/a") != state_key(tmp_path, "/b")
        assert state_key(tmp_path / "x", "/a") != state_key(tmp_path, "/a")

    def test_relative_and_absolute_paths_share_a_key(self, tmp_path, monkeypatch):
        (tmp_path / "dir").mkdir()
        monkeypatch.chdir(tmp_path)
        assert state_key("dir", "/r") == state_key(tmp_path / "dir", "/r")


class TestStateStore:
    def test_missing_file_loads_empty_state(self, store):
        state = store.load()

        assert state.files == {}
        assert state.conflicts == {}
        assert state.last_sync is None

    def test_flush_and_reload(self, store):
        store.load()
        store.upsert("a.txt", file_state("a.txt"))
        store.set_error("b.txt", "Permission denied")
        store.mark_scanned()

        assert store.flush()

        reloaded = StateStore(store.local_path, "/remote", store.state_dir)
        state = reloaded.load()
        assert state.files["a.txt"] == file_state("a.txt")
        assert state.errors == {"b.txt": "Permission denied"}
        assert state.last_sync == "2026-01-01T00:00:00+00:00"
        assert state.last_scan is not None

    def test_flush_skips_clean_state(self, store):
        store.load()
        assert not store.flush()
        assert not store.state_file.exists()
        assert store.flush(force=True)
        assert store.state_file.exists()

    def test_remove_and_errors(self, store):
        store.load()
        store.upsert("a.txt", file_state("a.txt"))
        store.flush()

        assert store.remove("a.txt")
        assert not store.remove("a.txt")
        store.set_error("a.txt", "boom")
        store.clear_error("a.txt")
        assert store.errors() == {}
        assert store.paths() == []

    def test_conflicts_round_trip(self, store):
        store.load()
        case = ConflictCase(
            path="doc.txt",
            local=FileSnapshot(size=1, modified_time=1.0, content_hash="l"),
            remote=FileSnapshot(size=2, modified_time=2.0, revision="rev-2"),
            detected_at="2026-01-01T00:00:00+00:00",
        )
        store.add_conflict(case)
        store.flush()

        reloaded = StateStore(store.local_path, "/remote", store.state_dir)
        reloaded.load()
        assert reloaded.get_conflict("doc.txt") == case
        assert reloaded.pop_conflict("doc.txt") == case
        assert reloaded.conflicts() == []

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            "[]",
            json.dumps({"files": {"a.txt": {"size": 1}}}),
            json.dumps({"files": {"a.txt": {"size": "big"}}}),
        ],
    )
    def test_corrupt_file_raises(self, store, content):
        store.state_dir.mkdir(parents=True)
        store.state_file.write_text(content)

        with pytest.raises(StateCorrupt) as exc_info:
            store.load()
        assert exc_info.value.path == str(store.state_file)
        # The corrupt file is left for the operator
        assert store.state_file.read_text() == content

    def test_clear_removes_state_and_requests(self, store):
        store.load()
        store.upsert("a.txt", file_state("a.txt"))
        store.flush()
        store.request_resolution("a.txt", ChangeOrigin.LOCAL)

        assert store.clear()
        assert not store.state_file.exists()
        assert not store.resolutions_file.exists()
        assert store.paths() == []
        assert not store.clear()

    def test_state_document_layout(self, store):
        store.load()
        store.upsert("b.txt", file_state("b.txt"))
        store.upsert("a.txt", file_state("a.txt"))
        store.flush()

        data = json.loads(store.state_file.read_text())
        assert data["version"] == 1
        assert data["remote_path"] == "/remote"
        assert list(data["files"]) == ["a.txt", "b.txt"]
        assert data["files"]["a.txt"]["direction"] == "up"

    def test_from_dict_rejects_non_objects(self):
        with pytest.raises(TypeError):
            SyncState.from_dict(["files"])


class TestResolutionRequests:
    def test_requests_are_taken_once(self, store):
        store.request_resolution("a.txt", ChangeOrigin.LOCAL)
        store.request_resolution("b.txt", ChangeOrigin.REMOTE)

        assert store.has_resolution_requests()
        assert store.take_resolution_requests() == {
            "a.txt": ChangeOrigin.LOCAL,
            "b.txt": ChangeOrigin.REMOTE,
        }
        assert not store.has_resolution_requests()
        assert store.take_resolution_requests() == {}

    def test_later_request_overrides(self, store):
        store.request_resolution("a.txt", ChangeOrigin.LOCAL)
        store.request_resolution("a.txt", ChangeOrigin.REMOTE)

        assert store.take_resolution_requests() == {"a.txt": ChangeOrigin.REMOTE}

    def test_invalid_values_are_dropped(self, store):
        store.state_dir.mkdir(parents=True)
        store.resolutions_file.write_text(
            json.dumps({"a.txt": "local", "b.txt": "sideways"})
        )

        assert store.take_resolution_requests() == {"a.txt": ChangeOrigin.LOCAL}

    def test_unreadable_file_is_discarded(self, store):
        store.state_dir.mkdir(parents=True)
        store.resolutions_file.write_text("{oops")

        assert store.take_resolution_requests() == {}
        assert not store.resolutions_file.exists()
