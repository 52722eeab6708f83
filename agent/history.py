"""
Conversation history management: pruning what is sent to the model and
deriving the net workspace diff of a session from the edit metadata stored on
messages.
"""

import logging
import re
from typing import Dict, List, Set

from backend import Backend
from tools._common import LOG_SIGNIFIER, SessionDiff

from .types import Message

logger = logging.getLogger(__name__)


def prune_history(history: List[Message], max_messages: int = 15, keep_first: int = 2) -> List[Message]:
    """Return a pruned copy of history for a model call.

    When the most recent message did not fail, earlier messages whose actions
    failed are dropped (never one of the first keep_first). Then, if still too
    long, only the first keep_first and the last max_messages are kept.
    """
    pruned = list(history)
    if not pruned:
        return pruned

    if not pruned[-1].actions_failed:
        pruned = [
            msg for i, msg in enumerate(pruned)
            if i < keep_first or i == len(pruned) - 1 or not msg.actions_failed
        ]

    if len(pruned) > max_messages + keep_first:
        pruned = pruned[:keep_first] + pruned[-max_messages:]
    return pruned


def _log_call_pattern(signifier: str) -> "re.Pattern[str]":
    # a whole-statement call such as print("<sig> x") or console.log(`<sig>`);
    return re.compile(
        r"^[ \t]*[\w|.]+\(\s*([^)]*" + re.escape(signifier) + r".*)\s*\);?[ \t]*$",
        re.MULTILINE,
    )


def strip_log_lines(text: str, signifier: str = LOG_SIGNIFIER) -> str:
    """Remove every line holding a call whose arguments contain signifier."""
    pattern = _log_call_pattern(signifier)
    drop: Set[int] = set()
    for match in pattern.finditer(text):
        start = text.count("\n", 0, match.start())
        end = text.count("\n", 0, match.end())
        drop.update(range(start, end + 1))
    if not drop:
        return text
    lines = text.split("\n")
    has_trailing_newline = text.endswith("\n")
    kept = [line for i, line in enumerate(lines) if i not in drop]
    result = "\n".join(kept)
    if has_trailing_newline and not result.endswith("\n") and result:
        result += "\n"
    return result


def remove_log_statements(backend: Backend, paths: List[str], signifier: str = LOG_SIGNIFIER) -> None:
    for path in paths:
        if not backend.file_exists(path):
            continue
        text = backend.read_file(path)
        stripped = strip_log_lines(text, signifier)
        if stripped != text:
            logger.info(f"Removed debug log statements from {path}")
            backend.write_file(path, stripped)


def historical_diff(history: List[Message], backend: Backend, remove_logs: bool = True) -> Dict[str, SessionDiff]:
    """Net change per file over the whole history.

    Keys are current paths. Walking backwards from the newest message, a
    created record ends the walk for that file, a deleted record captures the
    text before deletion and a rename redirects the walk to the old path.
    """
    files: List[str] = []
    deleted_files: Set[str] = set()
    old_names: Set[str] = set()
    for msg in history:
        for path, records in (msg.edit_info or {}).items():
            for record in records:
                if record.deleted:
                    deleted_files.add(path)
                    break
                if record.renamed_from:
                    old_names.add(record.renamed_from)
            if path not in files:
                files.append(path)

    live = [p for p in files if p not in deleted_files and p not in old_names]
    if remove_logs:
        remove_log_statements(backend, live)

    diffs: Dict[str, SessionDiff] = {}
    for f in files:
        if f in old_names:
            continue
        current_text = None
        if f not in deleted_files and backend.file_exists(f):
            current_text = backend.read_file(f)
        diff = SessionDiff(current_path=f, current_text=current_text)
        diffs[f] = diff

        path = f
        for msg in reversed(history):
            records = (msg.edit_info or {}).get(path)
            if not records:
                continue
            for record in reversed(records):
                if record.created:
                    diff.created = True
                    diff.initial_text = None
                    break
                if record.deleted:
                    diff.deleted = True
                    diff.initial_text = record.previous_text
                    break
                if record.renamed_from:
                    diff.initial_path = record.renamed_from
                    path = record.renamed_from
                if record.previous_text is not None:
                    diff.initial_text = record.previous_text

    for f in list(diffs):
        diff = diffs[f]
        if diff.created or diff.deleted or diff.initial_path:
            continue
        if diff.initial_text is None and diff.current_text is None:
            continue
        if diff.initial_text == diff.current_text:
            del diffs[f]
    return diffs
