"""Unit tests for utility functions."""

import json
import os
from datetime import datetime, timezone

import pytest

from fileswatch.utils import (
    backup_name,
    format_size,
    format_timestamp,
    hash_bytes,
    hash_file,
    join_remote,
    parse_iso_timestamp,
    relative_remote,
    write_json_atomic,
)


class TestParseIsoTimestamp:
    """Tests for parse_iso_timestamp function."""

    def test_zulu_suffix(self):
        """Test parsing a UTC timestamp with Z suffix."""
        expected = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc).timestamp()
        assert parse_iso_timestamp("2025-01-15T10:30:00Z") == expected

    def test_naive_timestamp_is_utc(self):
        """Test that timestamps without offset are treated as UTC."""
        assert parse_iso_timestamp("2025-01-15T10:30:00") == parse_iso_timestamp(
            "2025-01-15T10:30:00+00:00"
        )

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_invalid_values(self, value):
        """Test that missing or malformed timestamps return None."""
        assert parse_iso_timestamp(value) is None


class TestFormatting:
    """Tests for size and timestamp formatting."""

    @pytest.mark.parametrize(
        "size, expected",
        [
            (0, "0 B"),
            (1023, "1023 B"),
            (1536, "1.5 KB"),
            (5 * 1024 * 1024, "5.0 MB"),
            (3 * 1024**3, "3.0 GB"),
        ],
    )
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

    def test_format_missing_timestamp(self):
        assert format_timestamp(None) == "Never"

    def test_format_unparseable_timestamp_is_returned(self):
        assert format_timestamp("soon") == "soon"


class TestHashing:
    """Tests for content hashing."""

    def test_hash_file_matches_hash_bytes(self, tmp_path):
        """Test that chunked file hashing gives the same digest."""
        path = tmp_path / "data.bin"
        data = os.urandom(10_000)
        path.write_bytes(data)

        assert hash_file(path, chunk_size=7) == hash_bytes(data)

    def test_empty_content(self):
        assert hash_bytes(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )


class TestRemotePaths:
    """Tests for remote path helpers."""

    @pytest.mark.parametrize(
        "base, rel, expected",
        [
            ("/docs", "a.txt", "/docs/a.txt"),
            ("/docs/", "a/b.txt", "/docs/a/b.txt"),
            ("docs", "/a.txt", "/docs/a.txt"),
            ("/", "a.txt", "/a.txt"),
        ],
    )
    def test_join_remote(self, base, rel, expected):
        assert join_remote(base, rel) == expected

    @pytest.mark.parametrize(
        "base, path, expected",
        [
            ("/docs", "/docs/a/b.txt", "a/b.txt"),
            ("/docs/", "docs/a.txt", "a.txt"),
            ("/", "/a.txt", "a.txt"),
            ("/docs", "/docs", None),
            ("/docs", "/documents/a.txt", None),
            ("/docs", "/other/a.txt", None),
        ],
    )
    def test_relative_remote(self, base, path, expected):
        assert relative_remote(base, path) == expected


class TestBackupName:
    """Tests for conflict backup names."""

    def test_keeps_directory_and_extension(self):
        when = datetime(2026, 1, 2, 3, 4, 5)
        assert backup_name("docs/report.txt", when) == (
            "docs/report.conflict-20260102-030405.txt"
        )

    def test_file_without_extension(self):
        when = datetime(2026, 1, 2, 3, 4, 5)
        assert backup_name("Makefile", when) == "Makefile.conflict-20260102-030405"


class TestWriteJsonAtomic:
    """Tests for write_json_atomic function."""

    def test_creates_parents_and_replaces(self, tmp_path):
        path = tmp_path / "nested" / "doc.json"

        write_json_atomic(path, {"a": 1})
        write_json_atomic(path, {"a": 2})

        assert json.loads(path.read_text()) == {"a": 2}
        assert os.listdir(path.parent) == ["doc.json"]

    def test_failed_write_keeps_old_document(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json_atomic(path, {"a": 1})

        with pytest.raises(TypeError):
            write_json_atomic(path, {"a": object()})

        assert json.loads(path.read_text()) == {"a": 1}
        assert os.listdir(tmp_path) == ["doc.json"]
