# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Glob matching and source file enumeration.

Patterns are matched against paths relative to the project root with POSIX
separators. A pattern without a "/" also matches the file's base name, and a
leading "**/" may match zero directories, so "**/*.py" matches "setup.py".
"""

import fnmatch
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .errors import GraphValidationError

logger = logging.getLogger(__name__)

EXTENSION_LANGUAGES = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
}

DEFAULT_INCLUDE_PATTERNS = [
    "**/*.ts",
    "**/*.tsx",
    "**/*.js",
    "**/*.jsx",
    "**/*.py",
]

# Dependency/build directories and test files
DEFAULT_EXCLUDE_PATTERNS = [
    "**/node_modules/**",
    "**/dist/**",
    "**/build/**",
    "**/.git/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/venv/**",
    "**/tests/**",
    "*.test.*",
    "*.spec.*",
    "test_*.py",
    "*_test.py",
]


@dataclass(frozen=True)
class DiscoveredFile:
    """A source file selected for extraction."""

    path: Path
    rel_path: str
    language: str


def to_relative_posix(path: str, root: Path) -> str:
    """Normalise a path to the root-relative POSIX form used in node keys.

    Paths outside the root are returned with POSIX separators unchanged.
    """
    candidate = Path(path)
    if candidate.is_absolute():
        try:
            candidate = candidate.relative_to(root)
        except ValueError:
            return candidate.as_posix()
    rel = candidate.as_posix()
    while rel.startswith("./"):
        rel = rel[2:]
    return rel


def language_for_path(path: str) -> Optional[str]:
    """Language identifier for a file extension, or None if unsupported."""
    return EXTENSION_LANGUAGES.get(os.path.splitext(path)[1].lower())


def validate_patterns(patterns: Iterable[str], field_name: str) -> List[str]:
    """Check glob patterns before any work starts.

    Raises:
        GraphValidationError: If a pattern is not a non-empty relative glob
            with balanced character classes.
    """
    checked: List[str] = []
    for pattern in patterns:
        if not isinstance(pattern, str) or not pattern.strip():
            raise GraphValidationError(
                f"{field_name} contains an empty pattern", {"field": field_name}
            )
        if "\x00" in pattern:
            raise GraphValidationError(
                f"{field_name} contains a NUL character", {"field": field_name, "pattern": pattern}
            )
        if pattern.startswith("/") or os.path.isabs(pattern):
            raise GraphValidationError(
                f"{field_name} pattern must be relative: {pattern}",
                {"field": field_name, "pattern": pattern},
            )
        if pattern.count("[") != pattern.count("]"):
            raise GraphValidationError(
                f"{field_name} pattern has unbalanced brackets: {pattern}",
                {"field": field_name, "pattern": pattern},
            )
        checked.append(pattern)
    return checked


def glob_match(rel_path: str, pattern: str) -> bool:
    """Match a root-relative POSIX path against one glob pattern."""
    if fnmatch.fnmatchcase(rel_path, pattern):
        return True
    stripped = pattern
    while stripped.startswith("**/"):
        stripped = stripped[3:]
        if fnmatch.fnmatchcase(rel_path, stripped):
            return True
    if "/" not in pattern:
        return fnmatch.fnmatchcase(rel_path.rsplit("/", 1)[-1], pattern)
    return False


def matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    return any(glob_match(rel_path, pattern) for pattern in patterns)


def is_candidate(
    rel_path: str,
    include_patterns: Sequence[str],
    exclude_patterns: Sequence[str],
    languages: Optional[Sequence[str]] = None,
) -> bool:
    """Whether a root-relative path would be selected by discover_files()."""
    language = language_for_path(rel_path)
    if language is None:
        return False
    if languages is not None and language not in languages:
        return False
    if not matches_any(rel_path, include_patterns):
        return False
    return not matches_any(rel_path, exclude_patterns)


def discover_files(
    root: Path,
    include_patterns: Sequence[str],
    exclude_patterns: Sequence[str],
    languages: Optional[Sequence[str]] = None,
) -> List[DiscoveredFile]:
    """Enumerate source files under root, sorted by relative path.

    Directories whose path matches an exclude pattern are not descended into.

    Raises:
        FileNotFoundError: If root does not exist.
        NotADirectoryError: If root is not a directory.
    """
    root = Path(root)
    if not root.exists():
        raise FileNotFoundError(f"Root path does not exist: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"Root path is not a directory: {root}")

    found: List[DiscoveredFile] = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"

        # Prune excluded directories in place
        dirnames[:] = sorted(
            d for d in dirnames if not _dir_excluded(prefix + d + "/", exclude_patterns)
        )

        for filename in sorted(filenames):
            rel_path = prefix + filename
            if not is_candidate(rel_path, include_patterns, exclude_patterns, languages):
                continue
            language = language_for_path(rel_path)
            assert language is not None
            found.append(DiscoveredFile(Path(dirpath) / filename, rel_path, language))

    found.sort(key=lambda f: f.rel_path)
    logger.debug(f"Discovered {len(found)} source files under {root}")
    return found


def _dir_excluded(rel_dir: str, exclude_patterns: Iterable[str]) -> bool:
    # Only directory-shaped patterns prune; file patterns never match "x/"
    for pattern in exclude_patterns:
        if "/" not in pattern:
            continue
        if glob_match(rel_dir, pattern):
            return True
    return False
