"""Unit tests for the CLI commands."""

import json

import pytest
from click.testing import CliRunner
from conftest import write_file

from fileswatch.cli import main
from fileswatch.config import Config
from fileswatch.sync.models import ChangeOrigin, ConflictCase, FileSnapshot
from fileswatch.sync.multiplexer import STATUS_FILE_NAME
from fileswatch.sync.state import StateStore


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / "config"


@pytest.fixture
def fake_client(monkeypatch, remote):
    """Route every FilesClient the CLI creates to the in-memory store."""
    created = []

    def factory(**kwargs):
        created.append(kwargs)
        return remote

    monkeypatch.setattr("fileswatch.cli.FilesClient", factory)
    return created


@pytest.fixture
def invoke(runner, config_dir):
    def run(*args, api_key="test_key"):
        return runner.invoke(
            main,
            ["--config-dir", str(config_dir), *args],
            env={"FILES_API_KEY": api_key, "FILES_API_URL": None},
        )

    return run


@pytest.fixture
def watched(invoke, local_dir):
    result = invoke("init", str(local_dir), "--remote", "/backup")
    assert result.exit_code == 0, result.output
    return local_dir


def store_for(config_dir, local_dir):
    store = StateStore(local_dir, "/backup", config_dir / "state")
    store.load()
    return store


class TestMain:
    """Tests for the command group."""

    def test_main_help(self, runner):
        """Test that all commands are listed."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("init", "list", "remove", "sync", "start", "status"):
            assert command in result.output


class TestInit:
    """Tests for the init command."""

    def test_init_writes_config(self, invoke, local_dir, config_dir):
        """Test that init stores a normalized watch pair."""
        result = invoke(
            "--json",
            "init",
            str(local_dir),
            "-r",
            "Backup/Docs/",
            "-d",
            "BOTH",
            "-i",
            "*.tmp",
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["remote_path"] == "/Backup/Docs"
        assert data["direction"] == "both"
        assert data["ignore_patterns"] == ["*.tmp"]

        config = Config.load(config_dir / "config.toml")
        assert [w.local_path for w in config.watch] == [str(local_dir)]

    def test_init_duplicate_fails(self, invoke, watched):
        result = invoke("init", str(watched), "-r", "/other")

        assert result.exit_code == 1
        assert "already configured" in result.output

    def test_init_missing_directory(self, invoke, tmp_path):
        result = invoke("init", str(tmp_path / "nope"), "-r", "/backup")

        assert result.exit_code == 2

    def test_init_requires_remote(self, invoke, local_dir):
        result = invoke("init", str(local_dir))

        assert result.exit_code == 2


class TestListAndRemove:
    """Tests for the list and remove commands."""

    def test_list_empty(self, invoke):
        result = invoke("--json", "list")

        assert result.exit_code == 0
        assert json.loads(result.output) == []

    def test_list(self, invoke, watched):
        result = invoke("--json", "list")

        assert result.exit_code == 0
        assert [w["local_path"] for w in json.loads(result.output)] == [str(watched)]

    def test_list_table(self, invoke, watched):
        result = invoke("list")

        assert result.exit_code == 0
        assert "/backup" in result.output

    def test_remove_clears_state(self, invoke, watched, config_dir):
        store = store_for(config_dir, watched)
        store.flush(force=True)

        result = invoke("--json", "remove", str(watched))

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["removed"]["remote_path"] == "/backup"
        assert data["state_removed"] is True
        assert not store.state_file.exists()
        assert json.loads(invoke("--json", "list").output) == []

    def test_remove_keep_state(self, invoke, watched, config_dir):
        store = store_for(config_dir, watched)
        store.flush(force=True)

        result = invoke("remove", str(watched), "--keep-state")

        assert result.exit_code == 0
        assert store.state_file.exists()

    def test_remove_unknown_pair(self, invoke, tmp_path):
        result = invoke("remove", str(tmp_path / "unknown"))

        assert result.exit_code == 1
        assert "No watch configuration found" in result.output


class TestSync:
    """Tests for the one-shot sync command."""

    def test_sync_uploads(self, invoke, watched, remote, fake_client):
        write_file(watched / "a.txt", b"alpha")
        write_file(watched / "sub" / "b.txt", b"beta")

        result = invoke("--json", "sync", str(watched))

        assert result.exit_code == 0, result.output
        stats = json.loads(result.output)
        assert stats["uploads"] == 2
        assert stats["failed"] == 0
        assert stats["errors"] == {}
        assert stats["conflict_paths"] == []
        assert remote.content("/backup/sub/b.txt") == b"beta"
        assert fake_client[0]["api_key"] == "test_key"
        assert remote.closed

    def test_sync_direction_override(self, invoke, watched, remote, fake_client):
        remote.put("/backup/remote.txt", b"from remote")

        result = invoke("--json", "sync", str(watched), "--direction", "down")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["downloads"] == 1
        assert (watched / "remote.txt").read_bytes() == b"from remote"

    def test_sync_text_output(self, invoke, watched, fake_client):
        write_file(watched / "a.txt", b"alpha")

        result = invoke("sync", str(watched))

        assert result.exit_code == 0, result.output
        assert "1 uploaded" in result.output

    def test_sync_unknown_pair(self, invoke, tmp_path, fake_client):
        result = invoke("sync", str(tmp_path / "unknown"))

        assert result.exit_code == 1

    def test_sync_without_api_key(self, invoke, watched):
        result = invoke("sync", str(watched), api_key=None)

        assert result.exit_code == 1
        assert "API key not configured" in result.output


class TestStatus:
    """Tests for the status command."""

    def test_status_after_sync(self, invoke, watched, fake_client):
        write_file(watched / "a.txt", b"alpha")
        assert invoke("sync", str(watched)).exit_code == 0

        result = invoke("--json", "status")

        assert result.exit_code == 0, result.output
        (row,) = json.loads(result.output)
        assert row["state"] == "stopped"
        assert row["files"] == 1
        assert row["last_sync"] is not None
        assert row["conflicts"] == []

    def test_status_corrupt_state(self, invoke, watched, config_dir):
        store = StateStore(watched, "/backup", config_dir / "state")
        write_file(store.state_file, b"{broken")

        result = invoke("--json", "status", str(watched))

        assert result.exit_code == 1
        (row,) = json.loads(result.output)
        assert row["state"] == "corrupt"

    def test_broken_table_only_affects_its_row(self, invoke, watched, config_dir):
        config_file = config_dir / "config.toml"
        with open(config_file, "a") as f:
            f.write('\n[[watch]]\nlocal_path = "/srv/broken"\n')

        result = invoke("--json", "status")

        assert result.exit_code == 1
        good, broken = json.loads(result.output)
        assert good["local_path"] == str(watched)
        assert good["state"] == "stopped"
        assert broken["state"] == "invalid"
        assert "remote_path" in broken["message"]
        assert invoke("list").exit_code == 0

    def test_status_no_watches(self, invoke):
        result = invoke("--json", "status")

        assert result.exit_code == 0
        assert json.loads(result.output) == []


class TestResolve:
    """Tests for the resolve command."""

    def test_resolve_queues_decision(self, invoke, watched, config_dir):
        store = store_for(config_dir, watched)
        store.add_conflict(
            ConflictCase(
                path="notes/todo.txt",
                local=FileSnapshot(size=1),
                remote=FileSnapshot(size=2),
            )
        )
        store.flush()

        result = invoke(
            "--json", "resolve", str(watched), "/notes/todo.txt", "--keep", "LOCAL"
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"path": "notes/todo.txt", "keep": "local"}
        assert store.take_resolution_requests() == {
            "notes/todo.txt": ChangeOrigin.LOCAL
        }

    def test_resolve_without_conflict(self, invoke, watched):
        result = invoke("resolve", str(watched), "a.txt", "--keep", "remote")

        assert result.exit_code == 1
        assert "No pending conflict" in result.output

    def test_resolve_requires_keep(self, invoke, watched):
        result = invoke("resolve", str(watched), "a.txt")

        assert result.exit_code == 2


class TestStart:
    """Tests for the start command."""

    def test_start_without_watches(self, invoke, fake_client):
        result = invoke("start")

        assert result.exit_code == 1
        assert "No watch configurations" in result.output

    def test_daemon_rejects_path(self, invoke, watched, fake_client):
        result = invoke("start", str(watched), "--daemon")

        assert result.exit_code == 1

    def test_failed_pair_exits_with_error(
        self, invoke, watched, config_dir, fake_client
    ):
        watched.rmdir()

        result = invoke("start", "--daemon")

        assert result.exit_code == 1
        assert "does not exist" in result.output
        assert (config_dir / STATUS_FILE_NAME).exists()
