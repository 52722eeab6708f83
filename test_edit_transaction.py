"""Tests for staging edits and committing them through EditTransaction."""

import asyncio

import pytest

from backend import Diagnostic, DiagnosticSeverity, Formatter, LocalBackend, LocalDiagnostics
from tools._common import EditBatch
from tools.edit import (
    APPLY_FAILED_MESSAGE,
    EditTransaction,
    create_file,
    delete_file,
    find_and_replace_in_files,
    redo,
    rename_file,
    replace_text,
    revert_to_previous_state,
)


def _setup(tmp_path, files=None):
    for name, text in (files or {}).items():
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    backend = LocalBackend(str(tmp_path))
    diagnostics = LocalDiagnostics(backend)
    transaction = EditTransaction(backend, diagnostics, settle_delay=0, diagnostics_timeout=1.0)
    return backend, transaction


def test_replace_text_commits_and_previews(tmp_path):
    backend, transaction = _setup(tmp_path, {"a.py": "def f():\n    return 1\n"})
    task = replace_text(backend, "a.py", "2:    return 1", "2:    return 2\n")
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed
    assert (tmp_path / "a.py").read_text() == "def f():\n    return 2\n"
    assert result.messages[0].startswith("Successfully edited a.py with no issues.")
    assert "2:    return 2" in result.messages[0]


def test_replace_text_rejects_mismatch(tmp_path):
    backend, _ = _setup(tmp_path, {"a.py": "x = 1\n"})
    with pytest.raises(ValueError, match="does not match the text in the file"):
        replace_text(backend, "a.py", "1:x = 2", "x = 3\n")


def test_replace_text_requires_line_numbers(tmp_path):
    backend, _ = _setup(tmp_path, {"a.py": "x = 1\n"})
    with pytest.raises(ValueError, match="prepended with line numbers"):
        replace_text(backend, "a.py", "x = 1", "x = 3\n")


def test_replace_text_rejects_gaps(tmp_path):
    backend, _ = _setup(tmp_path, {"a.py": "a\nb\nc\n"})
    with pytest.raises(ValueError, match="not consecutive"):
        replace_text(backend, "a.py", "1:a\n3:c", "z\n")


def test_replace_text_out_of_bounds(tmp_path):
    backend, _ = _setup(tmp_path, {"a.py": "a\n"})
    with pytest.raises(ValueError, match="out of bounds"):
        replace_text(backend, "a.py", "9:a", "z\n")


def test_error_diagnostics_revert_the_batch(tmp_path):
    original = "def f():\n    return 1\n"
    backend, transaction = _setup(tmp_path, {"a.py": original})
    task = replace_text(backend, "a.py", "2:    return 1", "    return (\n")
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert not result.completed
    assert result.messages[0].startswith("Failed to edit a.py. Edit caused 1 issue(s):")
    assert "Change was reverted." in result.messages[0]
    assert (tmp_path / "a.py").read_text() == original


def test_ignored_diagnostic_sources_do_not_fail(tmp_path):
    backend, _ = _setup(tmp_path, {"notes.md": "hello\n"})
    diagnostics = LocalDiagnostics(backend)
    diagnostics.register_checker(
        ".md", lambda path, text: [Diagnostic(DiagnosticSeverity.ERROR, "Unknown word", 0, 0, "cSpell")]
    )
    transaction = EditTransaction(backend, diagnostics, settle_delay=0, ignore_sources=["cspell"])
    task = replace_text(backend, "notes.md", "1:hello", "helo\n")
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed


def test_create_then_write_in_one_batch(tmp_path):
    backend, transaction = _setup(tmp_path)
    task = create_file(backend, "pkg/new.py")
    replace_text(backend, "pkg/new.py", "", "print('hi')\n", task.batch, task.metadata)
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed
    assert (tmp_path / "pkg" / "new.py").read_text() == "print('hi')\n"
    assert any(m.startswith("Successfully created pkg/new.py.") for m in result.messages)


def test_create_existing_file_is_rejected(tmp_path):
    backend, _ = _setup(tmp_path, {"a.py": "x = 1\n"})
    with pytest.raises(ValueError, match="already exists"):
        create_file(backend, "a.py")


def test_rename_and_revert(tmp_path):
    backend, transaction = _setup(tmp_path, {"a.py": "x = 1\n"})
    task = rename_file(backend, "a.py", "b.py")
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed
    assert not (tmp_path / "a.py").exists()
    assert (tmp_path / "b.py").read_text() == "x = 1\n"

    revert_to_previous_state(backend, task.metadata)
    assert (tmp_path / "a.py").read_text() == "x = 1\n"
    assert not (tmp_path / "b.py").exists()


def test_delete_and_revert(tmp_path):
    backend, transaction = _setup(tmp_path, {"a.py": "x = 1\n"})
    task = delete_file(backend, "a.py")
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed
    assert "Successfully deleted a.py." in result.messages[0]
    assert not (tmp_path / "a.py").exists()

    revert_to_previous_state(backend, task.metadata)
    assert (tmp_path / "a.py").read_text() == "x = 1\n"


def test_failed_apply_reports_and_reverts(tmp_path):
    backend, transaction = _setup(tmp_path, {"a.py": "x = 1\n"})
    batch = EditBatch()
    task = replace_text(backend, "a.py", "1:x = 1", "x = 2\n", batch)
    # the file disappears between staging and commit
    (tmp_path / "a.py").unlink()
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert not result.completed
    assert result.messages == [APPLY_FAILED_MESSAGE]
    assert (tmp_path / "a.py").read_text() == "x = 1\n"


def test_multiple_replaces_in_one_file(tmp_path):
    backend, transaction = _setup(tmp_path, {"a.py": "a = 1\nb = 2\nc = 3\n"})
    task = replace_text(backend, "a.py", "1:a = 1", "a = 10\n")
    replace_text(backend, "a.py", "3:c = 3", "c = 30\nd = 40\n", task.batch, task.metadata)
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed
    assert (tmp_path / "a.py").read_text() == "a = 10\nb = 2\nc = 30\nd = 40\n"


def test_find_and_replace_in_files(tmp_path):
    backend, transaction = _setup(tmp_path, {"x.txt": "foo bar\nbaz foo\n", "y.txt": "nothing\n"})
    task = find_and_replace_in_files(backend, "foo", "qux")
    assert list(task.metadata) == ["x.txt"]
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed
    assert (tmp_path / "x.txt").read_text() == "qux bar\nbaz qux\n"
    assert (tmp_path / "y.txt").read_text() == "nothing\n"


def test_redo_reapplies_session_diff(tmp_path):
    from agent.history import historical_diff
    from agent.types import Message

    backend, transaction = _setup(tmp_path, {"a.py": "x = 1\n"})
    task = replace_text(backend, "a.py", "1:x = 1", "x = 2\n")
    create = create_file(backend, "b.py", task.batch, task.metadata)
    result = asyncio.run(transaction.commit(create.batch, create.metadata))
    assert result.completed

    history = [Message(role="assistant", content="", edit_info=task.metadata)]
    diffs = historical_diff(history, backend)
    revert_to_previous_state(backend, task.metadata)
    assert (tmp_path / "a.py").read_text() == "x = 1\n"
    assert not (tmp_path / "b.py").exists()

    redo(backend, diffs)
    assert (tmp_path / "a.py").read_text() == "x = 2\n"
    assert (tmp_path / "b.py").exists()


class CrashingFormatter(Formatter):
    def format_document(self, path, text):
        raise RuntimeError("formatter crashed")


class BrokenDiagnostics(LocalDiagnostics):
    def get_diagnostics(self, path):
        raise RuntimeError("language server went away")


def test_crashing_formatter_keeps_the_unformatted_edit(tmp_path):
    backend, _ = _setup(tmp_path, {"a.py": "a = 1\n"})
    transaction = EditTransaction(
        backend, LocalDiagnostics(backend), formatter=CrashingFormatter(), settle_delay=0, diagnostics_timeout=1.0,
    )
    task = replace_text(backend, "a.py", "1:a = 1", "a = 2\n")
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert result.completed
    assert (tmp_path / "a.py").read_text() == "a = 2\n"


def test_error_after_apply_reverts_the_batch(tmp_path):
    backend, _ = _setup(tmp_path, {"a.py": "a = 1\n"})
    transaction = EditTransaction(backend, BrokenDiagnostics(backend), settle_delay=0, diagnostics_timeout=1.0)
    task = replace_text(backend, "a.py", "1:a = 1", "a = 2\n")
    result = asyncio.run(transaction.commit(task.batch, task.metadata))
    assert not result.completed
    assert result.messages == [
        "Failed to apply your edits due to error: language server went away\nChange was reverted."
    ]
    assert (tmp_path / "a.py").read_text() == "a = 1\n"
