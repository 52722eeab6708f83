"""
Backend abstraction for workspace operations.

Besides plain file I/O the backend exposes the capabilities the edit
transaction relies on: applying a batch of file mutations, reading static
analysis diagnostics for a file and formatting a document.
"""

import asyncio
import json
import logging
import os
import pathlib
import shlex
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, List, Any, Optional

logger = logging.getLogger(__name__)


# ============================================================
# Mutation and diagnostic types
# ============================================================

@dataclass
class FileOp:
    """One staged file mutation.

    kind is one of create / delete / rename / replace. Replace ops cover whole
    lines ``start_line..end_line`` (0-based, inclusive) of the text the file
    had before the batch was applied.
    """
    kind: str
    path: str
    new_path: Optional[str] = None
    start_line: int = 0
    end_line: int = 0
    text: str = ""
    contents: Optional[str] = None


@dataclass
class TextEdit:
    """Whole-line text edit returned by a formatter (0-based, inclusive)."""
    start_line: int
    end_line: int
    new_text: str


class DiagnosticSeverity(IntEnum):
    ERROR = 0
    WARNING = 1
    INFORMATION = 2
    HINT = 3


@dataclass
class Diagnostic:
    severity: DiagnosticSeverity
    message: str
    start_line: int = 0
    end_line: int = 0
    source: Optional[str] = None

    @property
    def is_single_line(self) -> bool:
        return self.start_line == self.end_line


def split_lines(text: str) -> List[str]:
    """Split text into lines the way an editor counts them ("" is one line)."""
    return [line.rstrip("\r") for line in text.split("\n")]


def replace_lines(text: str, start_line: int, end_line: int, new_text: str) -> str:
    """Replace whole lines start..end (inclusive, with their newlines) by new_text."""
    lines = text.split("\n")
    head = "\n".join(lines[:start_line])
    if start_line > 0:
        head += "\n"
    tail = "\n".join(lines[end_line + 1:]) if end_line + 1 < len(lines) else ""
    return head + new_text + tail


def apply_text_edits(text: str, edits: List[TextEdit]) -> str:
    """Apply non-overlapping edits, bottom-up so earlier line numbers stay valid."""
    for edit in sorted(edits, key=lambda e: e.start_line, reverse=True):
        text = replace_lines(text, edit.start_line, edit.end_line, edit.new_text)
    return text


# ============================================================
# Backend
# ============================================================

class Backend(ABC):
    """Abstract backend for file system operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file exists."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    def remove_file(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    def rename_file(self, path: str, new_path: str) -> None:
        """Rename a file (create target dirs as needed)."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type}."""

    @abstractmethod
    def search(self, pattern: str, path: str = "", fixed_strings: bool = False,
               ignore_case: bool = False) -> List[Dict[str, Any]]:
        """Search file contents. Returns [{path, line (0-based), text}]."""

    @abstractmethod
    def list_files(self, subdir: str = "", respect_gitignore: bool = True) -> List[str]:
        """List files under subdir (relative paths, sorted)."""

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        path = path.strip()
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))

    def relative_path(self, path: str) -> str:
        """Path relative to the working directory (unchanged if outside it)."""
        full = self.resolve_path(path)
        wd = self.working_directory.rstrip(os.sep)
        if full.startswith(wd + os.sep):
            return full[len(wd) + 1:]
        return full

    def _ensure_under_working(self, resolved: str) -> None:
        """Raise ValueError if resolved path escapes the working directory. Overridden by backends."""
        pass

    # ------------------------------------------------------------------
    # Batch mutation
    # ------------------------------------------------------------------

    def add_change_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the resolved path of every changed file."""
        self._listeners().append(listener)

    def _listeners(self) -> List[Callable[[str], None]]:
        if not hasattr(self, "_change_listeners"):
            self._change_listeners: List[Callable[[str], None]] = []
        return self._change_listeners

    def notify_changed(self, path: str) -> None:
        full = self.resolve_path(path)
        for listener in list(self._listeners()):
            try:
                listener(full)
            except Exception as e:
                logger.warning(f"Change listener failed for {full}: {e}")

    def apply_batch(self, ops: List[FileOp]) -> bool:
        """Apply all ops in order. Returns False if the batch could not be applied.

        All replace ops for one file are applied together against the text
        the file had when its first replace op is reached.
        """
        applied_replaces: set = set()
        try:
            for op in ops:
                if op.kind == "create":
                    if self.file_exists(op.path):
                        logger.warning(f"apply_batch: {op.path} already exists")
                        return False
                    self.write_file(op.path, op.contents or "")
                    self.notify_changed(op.path)
                elif op.kind == "delete":
                    if not self.file_exists(op.path):
                        logger.warning(f"apply_batch: {op.path} does not exist")
                        return False
                    self.remove_file(op.path)
                    self.notify_changed(op.path)
                elif op.kind == "rename":
                    if not self.file_exists(op.path) or self.file_exists(op.new_path or ""):
                        logger.warning(f"apply_batch: cannot rename {op.path} -> {op.new_path}")
                        return False
                    self.rename_file(op.path, op.new_path)
                    self.notify_changed(op.path)
                    self.notify_changed(op.new_path)
                elif op.kind == "replace":
                    full = self.resolve_path(op.path)
                    if full in applied_replaces:
                        continue
                    applied_replaces.add(full)
                    same_file = [
                        o for o in ops
                        if o.kind == "replace" and self.resolve_path(o.path) == full
                    ]
                    if _overlapping(same_file):
                        logger.warning(f"apply_batch: overlapping edits in {op.path}")
                        return False
                    text = self.read_file(op.path)
                    edits = [TextEdit(o.start_line, o.end_line, o.text) for o in same_file]
                    self.write_file(op.path, apply_text_edits(text, edits))
                    self.notify_changed(op.path)
                else:
                    logger.warning(f"apply_batch: unknown op {op.kind}")
                    return False
        except (OSError, ValueError) as e:
            logger.error(f"apply_batch failed: {e}")
            return False
        return True


def _overlapping(ops: List[FileOp]) -> bool:
    ordered = sorted(ops, key=lambda o: o.start_line)
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.start_line <= prev.end_line:
            return True
    return False


# ============================================================
# Local Backend
# ============================================================

# Cache ripgrep availability
_HAS_RIPGREP: Optional[bool] = None

def _has_ripgrep() -> bool:
    global _HAS_RIPGREP
    if _HAS_RIPGREP is None:
        try:
            subprocess.run(["rg", "--version"], capture_output=True, check=True)
            _HAS_RIPGREP = True
        except (subprocess.CalledProcessError, FileNotFoundError):
            _HAS_RIPGREP = False
    return _HAS_RIPGREP


class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def notify_changed(self, path: str) -> None:
        from tools.gitignore import IGNORE_FILES, invalidate_ignore_cache

        if os.path.basename(path) in IGNORE_FILES:
            invalidate_ignore_cache(self._working_directory)
        super().notify_changed(path)

    def _ensure_under_working(self, resolved: str) -> None:
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def read_file(self, path: str) -> str:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        with open(full, "r", encoding="utf-8", errors="replace", newline="") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8", newline="") as f:
            f.write(content)

    def file_exists(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.isfile(full)

    def is_dir(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.isdir(full)

    def remove_file(self, path: str) -> None:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        os.remove(full)

    def rename_file(self, path: str, new_path: str) -> None:
        full = self.resolve_path(path)
        new_full = self.resolve_path(new_path)
        self._ensure_under_working(full)
        self._ensure_under_working(new_full)
        os.makedirs(os.path.dirname(new_full), exist_ok=True)
        os.rename(full, new_full)

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(full)
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            if os.path.islink(child):
                entries.append({"name": name, "type": "symlink"})
            elif os.path.isdir(child):
                entries.append({"name": name, "type": "directory"})
            elif os.path.isfile(child):
                entries.append({"name": name, "type": "file"})
        return entries

    def search(self, pattern: str, path: str = "", fixed_strings: bool = False,
               ignore_case: bool = False) -> List[Dict[str, Any]]:
        search_path = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(search_path)

        if _has_ripgrep():
            cmd = ["rg", "--line-number", "--no-heading", "--color=never", "--with-filename"]
            if fixed_strings:
                cmd.append("--fixed-strings")
            if ignore_case:
                cmd.append("--ignore-case")
            cmd.extend(["--", pattern, search_path])
        else:
            cmd = ["grep", "-rn", "--color=never", "-H", "-I"]
            if fixed_strings:
                cmd.append("-F")
            else:
                cmd.append("-E")
            if ignore_case:
                cmd.append("-i")
            cmd.extend(["--exclude-dir=.git", "--exclude-dir=node_modules", "--", pattern, search_path])

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30,
                                cwd=self._working_directory)
        matches: List[Dict[str, Any]] = []
        for raw in (result.stdout or "").splitlines():
            parts = raw.split(":", 2)
            if len(parts) < 3 or not parts[1].isdigit():
                continue
            matches.append({
                "path": self.relative_path(parts[0]),
                "line": int(parts[1]) - 1,
                "text": parts[2],
            })
        return matches

    def list_files(self, subdir: str = "", respect_gitignore: bool = True) -> List[str]:
        from tools.gitignore import is_ignored, load_ignore_spec

        base = self.resolve_path(subdir) if subdir else self._working_directory
        self._ensure_under_working(base)
        spec = load_ignore_spec(self._working_directory) if respect_gitignore else None
        files: List[str] = []
        for root, dirs, names in os.walk(base):
            rel_root = os.path.relpath(root, self._working_directory)
            rel_root = "" if rel_root == "." else rel_root
            dirs[:] = sorted(
                d for d in dirs
                if not is_ignored(os.path.join(rel_root, d), d, True, spec)
            )
            for name in sorted(names):
                rel = os.path.join(rel_root, name)
                if not is_ignored(rel, name, False, spec):
                    files.append(pathlib.PurePath(rel).as_posix())
        return files


# ============================================================
# Diagnostics
# ============================================================

class DiagnosticsProvider(ABC):
    """Asynchronous static-analysis feedback for workspace files.

    Callers subscribe to a file before mutating it and then await the returned
    event, which is set once fresh diagnostics for that file are available.
    """

    def __init__(self):
        self._waiters: Dict[str, List[asyncio.Event]] = {}
        self._diagnostics: Dict[str, List[Diagnostic]] = {}

    def subscribe(self, path: str) -> asyncio.Event:
        event = asyncio.Event()
        self._waiters.setdefault(path, []).append(event)
        return event

    def unsubscribe(self, path: str, event: asyncio.Event) -> None:
        waiters = self._waiters.get(path, [])
        if event in waiters:
            waiters.remove(event)

    def get_diagnostics(self, path: str) -> List[Diagnostic]:
        return list(self._diagnostics.get(path, []))

    def publish(self, path: str, diagnostics: List[Diagnostic]) -> None:
        self._diagnostics[path] = diagnostics
        for event in self._waiters.pop(path, []):
            event.set()


CheckerFn = Callable[[str, str], List[Diagnostic]]


def _check_python(path: str, text: str) -> List[Diagnostic]:
    try:
        compile(text, path, "exec", dont_inherit=True)
    except SyntaxError as e:
        line = max((e.lineno or 1) - 1, 0)
        end = max((getattr(e, "end_lineno", None) or e.lineno or 1) - 1, line)
        return [Diagnostic(DiagnosticSeverity.ERROR, e.msg or "invalid syntax", line, end, "python")]
    except ValueError as e:
        return [Diagnostic(DiagnosticSeverity.ERROR, str(e), 0, 0, "python")]
    return []


def _check_json(path: str, text: str) -> List[Diagnostic]:
    if not text.strip():
        return []
    try:
        json.loads(text)
    except json.JSONDecodeError as e:
        line = max(e.lineno - 1, 0)
        return [Diagnostic(DiagnosticSeverity.ERROR, e.msg, line, line, "json")]
    return []


class LocalDiagnostics(DiagnosticsProvider):
    """In-process checkers keyed by file extension.

    Re-analyses a file whenever the backend reports it changed.
    """

    def __init__(self, backend: Backend):
        super().__init__()
        self.backend = backend
        self._checkers: Dict[str, List[CheckerFn]] = {
            ".py": [_check_python],
            ".pyi": [_check_python],
            ".json": [_check_json],
        }
        backend.add_change_listener(self.analyze)

    def register_checker(self, extension: str, checker: CheckerFn) -> None:
        self._checkers.setdefault(extension.lower(), []).append(checker)

    def analyze(self, path: str) -> None:
        diagnostics: List[Diagnostic] = []
        if os.path.isfile(path):
            _, ext = os.path.splitext(path)
            try:
                text = self.backend.read_file(path)
            except OSError as e:
                logger.debug(f"Diagnostics skipped for {path}: {e}")
                text = None
            if text is not None:
                for checker in self._checkers.get(ext.lower(), []):
                    diagnostics.extend(checker(path, text))
        self.publish(path, diagnostics)


# ============================================================
# Formatting
# ============================================================

class Formatter(ABC):
    @abstractmethod
    def format_document(self, path: str, text: str) -> List[TextEdit]:
        """Return edits that format text (empty list if nothing to do)."""


class CommandFormatter(Formatter):
    """Runs a shell formatter (e.g. ``black -q {path}``) on a temporary copy."""

    def __init__(self, command: str, timeout: int = 30):
        self.command = command
        self.timeout = timeout

    def format_document(self, path: str, text: str) -> List[TextEdit]:
        _, ext = os.path.splitext(path)
        fd, tmp = tempfile.mkstemp(suffix=ext)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(text)
            cmd = self.command.format(path=shlex.quote(tmp))
            proc = subprocess.run(cmd, shell=True, capture_output=True, text=True, timeout=self.timeout)
            if proc.returncode != 0:
                logger.debug(f"Formatter exited with {proc.returncode} for {path}: {proc.stderr.strip()}")
                return []
            with open(tmp, "r", encoding="utf-8", newline="") as f:
                formatted = f.read()
        finally:
            try:
                os.remove(tmp)
            except OSError:
                pass
        if formatted == text:
            return []
        return [TextEdit(0, len(text.split("\n")) - 1, formatted)]
