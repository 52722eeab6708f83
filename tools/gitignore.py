"""Ignore-file aware filtering for workspace file listings."""

import os
import logging
from typing import Dict, Optional, Set

import pathspec

logger = logging.getLogger(__name__)

# Same ignore files ripgrep honors, so listings agree with searches
IGNORE_FILES = (".gitignore", ".ignore", ".rgignore")

_ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", ".eggs",
    ".next", ".nuxt", ".cache", "htmlcov",
}

_ALWAYS_SKIP_EXTENSIONS: Set[str] = {
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".a", ".class",
}

_ignore_cache: Dict[str, Optional[pathspec.PathSpec]] = {}


def load_ignore_spec(working_directory: str) -> Optional[pathspec.PathSpec]:
    """Load and cache the ignore patterns of a project root.

    Returns a PathSpec matcher or None if the root has no ignore files.
    """
    if working_directory in _ignore_cache:
        return _ignore_cache[working_directory]

    lines = []
    for name in IGNORE_FILES:
        path = os.path.join(working_directory, name)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                lines.extend(f.read().splitlines())
        except OSError as e:
            logger.debug(f"Failed to read {path}: {e}")

    spec = pathspec.PathSpec.from_lines("gitwildmatch", lines) if lines else None
    _ignore_cache[working_directory] = spec
    return spec


def is_ignored(rel_path: str, name: str, is_dir: bool,
               spec: Optional[pathspec.PathSpec]) -> bool:
    """Check a workspace-relative path against the ignore spec and the built-in skips."""
    if is_dir and name in _ALWAYS_SKIP_DIRS:
        return True
    if not is_dir:
        _, ext = os.path.splitext(name)
        if ext in _ALWAYS_SKIP_EXTENSIONS:
            return True
    if spec:
        check_path = rel_path.replace(os.sep, "/")
        if is_dir:
            check_path += "/"
        if spec.match_file(check_path):
            return True
    return False


def invalidate_ignore_cache(working_directory: Optional[str] = None) -> None:
    """Clear cached specs. Called when an ignore file changes."""
    if working_directory:
        _ignore_cache.pop(working_directory, None)
    else:
        _ignore_cache.clear()
