"""Tests for ignore pattern matching."""

import pytest

from fileswatch.sync.ignore import (
    IGNORE_FILE_NAME,
    PathMatcher,
    load_ignore_file,
)


class TestPathMatcher:
    def test_no_patterns_matches_nothing_but_builtins(self):
        matcher = PathMatcher()

        assert not matcher.matches("notes.txt")
        assert matcher.matches("notes.conflict-20260101-000000.txt")
        assert matcher.matches("sub/big.iso.fileswatch-partial")

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("a.log", True),
            ("deep/dir/a.log", True),
            ("a.log.txt", False),
            ("important.log", False),
        ],
    )
    def test_negation_reincludes(self, path, expected):
        matcher = PathMatcher(["*.log", "!important.log"])

        assert matcher.matches(path) is expected

    def test_last_matching_pattern_wins(self):
        matcher = PathMatcher(["!keep.txt", "*.txt"])

        assert matcher.matches("keep.txt")

    def test_directory_only_pattern(self):
        matcher = PathMatcher(["build/"])

        assert matcher.matches("build", is_dir=True)
        assert not matcher.matches("build")
        assert matcher.matches("build/out.bin")
        assert matcher.matches("src/build/out.bin")

    def test_anchored_pattern(self):
        matcher = PathMatcher(["/top.txt"])

        assert matcher.matches("top.txt")
        assert not matcher.matches("sub/top.txt")

    def test_double_star(self):
        matcher = PathMatcher(["docs/**/draft-*"])

        assert matcher.matches("docs/a/b/draft-1.md")
        assert not matcher.matches("other/draft-1.md")

    def test_files_below_ignored_directory_cannot_be_reincluded(self):
        matcher = PathMatcher(["node_modules/", "!node_modules/keep.js"])

        assert matcher.matches("node_modules/keep.js")

    def test_directory_negation_does_not_override_file_match(self):
        matcher = PathMatcher(["*.log", "!logs/"])

        assert not matcher.matches("logs", is_dir=True)
        assert matcher.matches("logs/a.log")
        assert not matcher.matches("logs/a.txt")

    def test_blank_patterns_are_dropped(self):
        matcher = PathMatcher(["", "  ", "*.tmp"])

        assert matcher.patterns[-1] == "*.tmp"
        assert "" not in matcher.patterns

    def test_root_is_never_ignored(self):
        assert not PathMatcher(["*"]).matches("")


class TestIgnoreFile:
    def test_missing_file(self, tmp_path):
        assert load_ignore_file(tmp_path) == []

    def test_comments_and_blank_lines_are_skipped(self, tmp_path):
        (tmp_path / IGNORE_FILE_NAME).write_text(
            "# build output\n\nbuild/\n  *.tmp  \n"
        )

        assert load_ignore_file(tmp_path) == ["build/", "*.tmp"]

    def test_configured_patterns_override_file(self, tmp_path):
        (tmp_path / IGNORE_FILE_NAME).write_text("*.csv\n")

        matcher = PathMatcher.for_root(tmp_path, ["!keep.csv"])

        assert matcher.matches("data.csv")
        assert not matcher.matches("keep.csv")
