"""
Transactional file editing.

Edit tools only stage FileOps into a shared EditBatch and record how to undo
them in the edit metadata. EditTransaction.commit applies the batch, formats
the touched files, waits for diagnostics and either keeps the result or
reverts every file in the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from backend import Backend, DiagnosticsProvider, Diagnostic, DiagnosticSeverity, FileOp, Formatter, apply_text_edits, split_lines

from ._common import EditBatch, EditMetadata, EditRecord, SessionDiff, SEPARATOR
from .text import (
    LINE_NUM_TEXT_RE,
    count_newlines,
    get_text_from_lines,
    parse_line_number,
    prepend_line_numbers,
    preview_window,
    strip_line_numbers,
    to_internal_line,
    to_user_line,
)

logger = logging.getLogger(__name__)

APPLY_FAILED_MESSAGE = "Failed to apply your edits due to issues with applyEdit function. Exact error is unclear."


@dataclass
class EditTask:
    batch: EditBatch
    metadata: EditMetadata


@dataclass
class CommitResult:
    completed: bool
    messages: List[str] = field(default_factory=list)


def _prepare(backend: Backend, path: str, batch: Optional[EditBatch],
             metadata: Optional[EditMetadata]):
    batch = batch if batch is not None else EditBatch()
    metadata = metadata if metadata is not None else {}
    key = backend.relative_path(path)
    metadata.setdefault(key, [])
    return batch, metadata, key


def _pending_text(backend: Backend, batch: EditBatch, key: str) -> str:
    """Text of key as edits staged in this batch will see it (pre-batch contents)."""
    for op in reversed(batch.ops):
        if op.kind == "create" and op.path == key:
            return op.contents or ""
        if op.kind == "rename" and op.new_path == key:
            return _pending_text(backend, batch, op.path)
        if op.kind in ("delete", "rename") and op.path == key:
            raise ValueError(f"'{key}' was deleted or renamed earlier in this edit.")
    if not backend.file_exists(key):
        raise ValueError(f"Could not open file '{key}'. Make sure the file exists by searching with FindFiles.")
    return backend.read_file(key)


# ============================================================
# Staging
# ============================================================

def create_file(backend: Backend, path: str, batch: Optional[EditBatch] = None,
                metadata: Optional[EditMetadata] = None) -> EditTask:
    if backend.file_exists(path):
        raise ValueError(f"File '{backend.relative_path(path)}' already exists.")
    batch, metadata, key = _prepare(backend, path, batch, metadata)
    batch.ops.append(FileOp("create", key, contents=""))
    metadata[key].append(EditRecord(created=True))
    return EditTask(batch, metadata)


def rename_file(backend: Backend, path: str, new_path: str, batch: Optional[EditBatch] = None,
                metadata: Optional[EditMetadata] = None) -> EditTask:
    if backend.file_exists(new_path):
        raise ValueError(f"Cannot rename to '{backend.relative_path(new_path)}', the file already exists.")
    batch, metadata, key = _prepare(backend, new_path, batch, metadata)
    old_key = backend.relative_path(path)
    batch.ops.append(FileOp("rename", old_key, new_path=key))
    metadata[key].append(EditRecord(renamed_from=old_key))
    return EditTask(batch, metadata)


def delete_file(backend: Backend, path: str, batch: Optional[EditBatch] = None,
                metadata: Optional[EditMetadata] = None) -> EditTask:
    batch = batch if batch is not None else EditBatch()
    key = backend.relative_path(path)
    previous_text = _pending_text(backend, batch, key)
    batch, metadata, key = _prepare(backend, path, batch, metadata)
    batch.ops.append(FileOp("delete", key))
    metadata[key].append(EditRecord(deleted=True, previous_text=previous_text))
    return EditTask(batch, metadata)


def _stage_replace(backend: Backend, key: str, start_line: int, end_line: int, new_text: str,
                   batch: EditBatch, metadata: EditMetadata) -> None:
    previous_text = _pending_text(backend, batch, key)
    batch.ops.append(FileOp("replace", key, start_line=start_line, end_line=end_line, text=new_text))
    metadata.setdefault(key, []).append(EditRecord(
        start_line=start_line,
        new_line_count=count_newlines(new_text),
        previous_text=previous_text,
        line_count_before_edit=len(split_lines(previous_text)),
    ))


def replace_text(backend: Backend, path: str, old_text: str, new_text: str,
                 batch: Optional[EditBatch] = None, metadata: Optional[EditMetadata] = None) -> EditTask:
    """Replace the numbered old_text block (``N:text`` lines) with new_text.

    Raises ValueError naming the offending line when old_text does not match
    the file exactly.
    """
    batch = batch if batch is not None else EditBatch()
    key = backend.relative_path(path)
    text = _pending_text(backend, batch, key)
    lines = split_lines(text)

    old_lines = [line for line in str(old_text).split("\n") if len(line) > 0]
    if not old_lines:
        # editing an empty file
        old_lines = ["1:"]

    suggestion = f"You must use ReadFile to read {path} again before making edits."
    start_line = None
    current = None
    for line in old_lines:
        match = LINE_NUM_TEXT_RE.match(line)
        if not match:
            raise ValueError(
                "oldText needs to be prepended with line numbers. Expected line to follow "
                f"'<line_number>:<text>' format but got '{line}' instead."
            )
        num_str, line_text = match.group(1), match.group(2)
        line_num = to_internal_line(parse_line_number(num_str))
        if line_num < 0 or line_num >= len(lines):
            raise ValueError(f"Line number {num_str} in oldText is out of bounds. {suggestion}")
        if lines[line_num] != line_text:
            raise ValueError(
                f"Line {num_str} in oldText does not match the text in the file. Expected "
                f"'{num_str}:{lines[line_num]}' but got '{num_str}:{line_text}' instead. {suggestion}"
            )
        if current is None:
            start_line = current = line_num
        elif current + 1 != line_num:
            raise ValueError("Line numbers in oldText are not consecutive.")
        else:
            current = line_num

    batch, metadata, key = _prepare(backend, path, batch, metadata)
    _stage_replace(backend, key, start_line, current, strip_line_numbers(str(new_text)), batch, metadata)
    return EditTask(batch, metadata)


def find_and_replace_in_files(backend: Backend, query: str, replacement: str, subdir: str = "",
                              batch: Optional[EditBatch] = None,
                              metadata: Optional[EditMetadata] = None) -> EditTask:
    """Stage a replace of every line containing query (case sensitive, literal)."""
    batch = batch if batch is not None else EditBatch()
    metadata = metadata if metadata is not None else {}
    query = str(query)
    replacement = "" if replacement is None else str(replacement)
    if not query:
        raise ValueError("query must not be empty.")

    matches = backend.search(query, path=subdir or "", fixed_strings=True)
    by_file: Dict[str, List[int]] = {}
    for match in matches:
        key = backend.relative_path(match["path"])
        by_file.setdefault(key, [])
        if match["line"] not in by_file[key]:
            by_file[key].append(match["line"])

    for key, line_nums in by_file.items():
        text = _pending_text(backend, batch, key)
        lines = text.split("\n")
        for line_num in sorted(line_nums):
            if line_num >= len(lines) or query not in lines[line_num]:
                continue
            new_line = lines[line_num].replace(query, replacement)
            if line_num < len(lines) - 1:
                new_line += "\n"
            _stage_replace(backend, key, line_num, line_num, new_line, batch, metadata)
    return EditTask(batch, metadata)


# ============================================================
# Revert / redo
# ============================================================

def _revert_record(backend: Backend, path: str, record: EditRecord) -> None:
    if record.deleted:
        backend.write_file(path, record.previous_text or "")
        backend.notify_changed(path)
        return
    if record.created:
        if backend.file_exists(path):
            backend.remove_file(path)
            backend.notify_changed(path)
        return
    if record.renamed_from is not None:
        backend.rename_file(path, record.renamed_from)
        backend.notify_changed(path)
        backend.notify_changed(record.renamed_from)
        return
    if record.previous_text is not None:
        backend.write_file(path, record.previous_text)
        backend.notify_changed(path)


def revert_to_previous_state(backend: Backend, metadata: EditMetadata, strict: bool = True) -> None:
    """Undo the edits in metadata, most recent record first.

    Files are processed newest-first as well so a rename is undone after the
    edits made to the renamed file. With strict=False a record that cannot be
    reverted is logged and skipped.
    """
    for path in reversed(list(metadata)):
        for record in reversed(metadata[path]):
            try:
                _revert_record(backend, path, record)
            except (OSError, ValueError) as e:
                if strict:
                    raise
                logger.warning(f"Could not revert edit of {path}: {e}")


def redo(backend: Backend, session_diff: Dict[str, SessionDiff]) -> None:
    """Re-apply a session diff after it was undone."""
    for key, diff in session_diff.items():
        try:
            if diff.created and diff.current_path:
                backend.write_file(diff.current_path, diff.current_text or "")
            elif diff.deleted and diff.current_path:
                if backend.file_exists(diff.current_path):
                    backend.remove_file(diff.current_path)
            if diff.initial_path and diff.current_path and diff.initial_path != diff.current_path:
                backend.rename_file(diff.initial_path, diff.current_path)
            if not diff.created and not diff.deleted and diff.current_text is not None and diff.current_path:
                backend.write_file(diff.current_path, diff.current_text)
        except (OSError, ValueError) as e:
            logger.error(f"Redo failed for {key}: {e}")


# ============================================================
# Commit
# ============================================================

class EditTransaction:
    """Applies staged edits and keeps them only if they introduce no errors."""

    def __init__(
        self,
        backend: Backend,
        diagnostics: Optional[DiagnosticsProvider] = None,
        formatter: Optional[Formatter] = None,
        settle_delay: float = 2.0,
        diagnostics_timeout: float = 10.0,
        ignore_sources: Optional[List[str]] = None,
    ):
        self.backend = backend
        self.diagnostics = diagnostics
        self.formatter = formatter
        self.settle_delay = settle_delay
        self.diagnostics_timeout = diagnostics_timeout
        self.ignore_sources = {s.lower() for s in (ignore_sources or [])}

    def _errors(self, full_path: str) -> List[Diagnostic]:
        if self.diagnostics is None:
            return []
        return [
            d for d in self.diagnostics.get_diagnostics(full_path)
            if d.severity == DiagnosticSeverity.ERROR
            and (d.source or "").lower() not in self.ignore_sources
        ]

    async def _format(self, key: str) -> None:
        if self.formatter is None:
            return
        text = self.backend.read_file(key)
        loop = asyncio.get_event_loop()
        try:
            edits = await loop.run_in_executor(
                None, self.formatter.format_document, self.backend.resolve_path(key), text
            )
        except Exception as e:
            logger.warning(f"Formatting {key} failed, keeping unformatted text: {e}")
            return
        if edits:
            self.backend.write_file(key, apply_text_edits(text, edits))
            self.backend.notify_changed(key)

    async def _settle(self, full_path: str, event: Optional[asyncio.Event]) -> None:
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)
        if event is None:
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=self.diagnostics_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"No diagnostics update for {full_path} within {self.diagnostics_timeout}s")
        finally:
            self.diagnostics.unsubscribe(full_path, event)

    def _preview(self, key: str, records: List[EditRecord]) -> str:
        text = self.backend.read_file(key)
        line_count_after = len(split_lines(text))
        previews = []
        for record in records:
            if record.line_count_before_edit is None:
                continue
            start, end = preview_window(
                record.start_line, record.line_count_before_edit, line_count_after, record.new_line_count
            )
            previews.append(prepend_line_numbers(get_text_from_lines(text, key, start, end), to_user_line(start)))
        return SEPARATOR.join(previews)

    @staticmethod
    def _diagnostic_line(key: str, diagnostic: Diagnostic) -> str:
        source = f"{diagnostic.source} " if diagnostic.source else ""
        start, end = to_user_line(diagnostic.start_line), to_user_line(diagnostic.end_line)
        range_text = f"{start}" if diagnostic.is_single_line else f"{start}-{end}"
        severity = diagnostic.severity.name.capitalize()
        return f"- {source}{severity}: {diagnostic.message} ({key}:{range_text})"

    async def _check_touched(self, touched: List[str], metadata: EditMetadata,
                             waiters: Dict[str, asyncio.Event]) -> Tuple[List[str], List[str]]:
        success_messages: List[str] = []
        error_messages: List[str] = []
        for key in touched:
            full = self.backend.resolve_path(key)
            if not self.backend.file_exists(key):
                continue
            await self._format(key)
            await self._settle(full, waiters.get(key))
            errors = self._errors(full)
            preview = self._preview(key, metadata[key])
            if not errors:
                success_messages.append(
                    f"Successfully edited {key} with no issues.\n"
                    f"Content of {key} after edit:\n{preview}"
                )
                continue
            diagnostic_text = "\n".join(self._diagnostic_line(key, d) for d in errors)
            error_messages.append(
                f"Failed to edit {key}. Edit caused {len(errors)} issue(s):\n"
                f"{diagnostic_text}"
                f"\n\nChange was reverted. Preview of {key} if edit was applied:\n{preview}"
            )
        return success_messages, error_messages

    async def commit(self, batch: EditBatch, metadata: EditMetadata) -> CommitResult:
        touched = [
            key for key, records in metadata.items()
            if any(r.line_count_before_edit is not None for r in records)
        ]
        waiters: Dict[str, asyncio.Event] = {}
        if self.diagnostics is not None:
            for key in touched:
                full = self.backend.resolve_path(key)
                waiters[key] = self.diagnostics.subscribe(full)

        try:
            applied = self.backend.apply_batch(batch.ops)
        except (OSError, ValueError) as e:
            logger.error(f"Applying edits failed: {e}")
            applied = False
        if not applied:
            for key, event in waiters.items():
                self.diagnostics.unsubscribe(self.backend.resolve_path(key), event)
            revert_to_previous_state(self.backend, metadata, strict=False)
            return CommitResult(False, [APPLY_FAILED_MESSAGE])

        try:
            success_messages, error_messages = await self._check_touched(touched, metadata, waiters)
        except Exception as e:
            logger.exception("Checking applied edits failed")
            for key, event in waiters.items():
                self.diagnostics.unsubscribe(self.backend.resolve_path(key), event)
            revert_to_previous_state(self.backend, metadata, strict=False)
            return CommitResult(False, [f"Failed to apply your edits due to error: {e}\nChange was reverted."])

        if not error_messages:
            for key, records in metadata.items():
                for record in records:
                    if record.created:
                        success_messages.append(f"Successfully created {key}.{SEPARATOR}")
                    elif record.deleted:
                        success_messages.append(f"Successfully deleted {key}.{SEPARATOR}")
            return CommitResult(True, success_messages)

        logger.info(f"Reverting edit batch: {len(error_messages)} file(s) with errors")
        revert_to_previous_state(self.backend, metadata, strict=False)
        return CommitResult(False, error_messages)
