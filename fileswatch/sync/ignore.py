"""Ignore rules for watch pairs.

Patterns follow gitignore semantics as implemented by pathspec's
``GitIgnoreSpec``: the last matching pattern wins (a pattern that only
matches a parent directory never overrides one matching the file itself),
``!pattern`` re-includes, a trailing ``/`` only matches directories, ``**``
spans path segments and a pattern without a slash matches at any depth.
"""

import logging
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

from pathspec import GitIgnoreSpec

from ..utils import CONFLICT_MARKER, PARTIAL_SUFFIX

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = ".filesignore"

# Conflict backups and partial downloads are never synced
BUILTIN_PATTERNS: tuple[str, ...] = (f"*{CONFLICT_MARKER}*", f"*{PARTIAL_SUFFIX}")


def load_ignore_file(root: Path) -> list[str]:
    """Read the patterns of the ``.filesignore`` file below ``root``.

    Blank lines and ``#`` comments are skipped.

    Args:
        root: Local root directory of a watch pair

    Returns:
        Patterns in file order (empty if the file does not exist)
    """
    ignore_file = root / IGNORE_FILE_NAME
    if not ignore_file.is_file():
        return []

    try:
        lines = ignore_file.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read {ignore_file}: {e}")
        return []

    patterns = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        patterns.append(stripped)
    logger.debug(f"Loaded {len(patterns)} pattern(s) from {ignore_file}")
    return patterns


class PathMatcher:
    """Decides whether a relative path of a watch pair is ignored."""

    def __init__(self, patterns: Iterable[str] = ()):
        """Initialize the matcher.

        Args:
            patterns: Ignore patterns in precedence order. The built-in
                conflict backup pattern is always applied first.
        """
        self.patterns: tuple[str, ...] = BUILTIN_PATTERNS + tuple(
            p for p in patterns if p and p.strip()
        )
        self._spec = GitIgnoreSpec.from_lines(self.patterns)

    @classmethod
    def for_root(
        cls, root: Path, patterns: Optional[Iterable[str]] = None
    ) -> "PathMatcher":
        """Build the matcher of a watch pair.

        The per-root ``.filesignore`` patterns come first, so configured
        patterns override them.
        """
        return cls(load_ignore_file(root) + list(patterns or ()))

    def matches(self, relative_path: str, is_dir: bool = False) -> bool:
        """Check whether a path is ignored.

        A path below an ignored directory is ignored as well, whatever
        later negations say about the path itself.

        Args:
            relative_path: Path relative to the watch root, forward slashes
            is_dir: Whether the path is a directory

        Returns:
            True if the path must not be synced
        """
        rel = relative_path.strip("/")
        if not rel:
            return False

        parts = PurePosixPath(rel).parts
        for depth in range(1, len(parts)):
            ancestor = "/".join(parts[:depth]) + "/"
            if self._spec.match_file(ancestor):
                return True

        if is_dir:
            rel += "/"
        return self._spec.match_file(rel)

    def __repr__(self) -> str:
        return f"PathMatcher({list(self.patterns)!r})"
