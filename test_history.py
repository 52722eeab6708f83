"""Tests for history pruning, debug log removal and session diffs."""

from agent.history import historical_diff, prune_history, strip_log_lines
from agent.types import Message
from backend import LocalBackend
from tools._common import EditRecord


def _messages(n, failed=()):
    return [Message(role="user", content=str(i), actions_failed=(i in failed)) for i in range(n)]


def test_prune_keeps_first_and_last_window():
    history = _messages(20)
    pruned = prune_history(history, max_messages=15, keep_first=2)
    assert [m.content for m in pruned] == ["0", "1"] + [str(i) for i in range(5, 20)]


def test_prune_short_history_untouched():
    history = _messages(5)
    assert prune_history(history, max_messages=15, keep_first=2) == history


def test_prune_drops_failed_when_last_succeeded():
    history = _messages(6, failed={1, 3, 4})
    pruned = prune_history(history, max_messages=15, keep_first=2)
    # index 1 is protected
    assert [m.content for m in pruned] == ["0", "1", "2", "5"]


def test_prune_keeps_failed_when_last_failed():
    history = _messages(4, failed={2, 3})
    pruned = prune_history(history, max_messages=15, keep_first=2)
    assert len(pruned) == 4


def test_prune_does_not_mutate_input():
    history = _messages(20)
    prune_history(history, max_messages=5, keep_first=2)
    assert len(history) == 20


def test_strip_log_lines():
    text = 'x = 1\nprint("DEBUG-BLINKY: x", x)\ny = 2\n    console.log(`DEBUG-BLINKY: ${a}`);\n'
    assert strip_log_lines(text) == "x = 1\ny = 2\n"


def test_strip_log_lines_leaves_other_calls():
    text = 'print("hello")\n'
    assert strip_log_lines(text) == text


def _edit(previous_text, start_line=0, new_line_count=1):
    return EditRecord(
        start_line=start_line,
        new_line_count=new_line_count,
        previous_text=previous_text,
        line_count_before_edit=len(previous_text.split("\n")),
    )


def test_historical_diff_modified_file(tmp_path):
    (tmp_path / "a.py").write_text("new\n")
    backend = LocalBackend(str(tmp_path))
    history = [
        Message(role="assistant", content="", edit_info={"a.py": [_edit("old\n")]}),
        Message(role="assistant", content="", edit_info={"a.py": [_edit("mid\n")]}),
    ]
    diffs = historical_diff(history, backend)
    assert list(diffs) == ["a.py"]
    diff = diffs["a.py"]
    assert diff.initial_text == "old\n"
    assert diff.current_text == "new\n"
    assert not diff.created and not diff.deleted


def test_historical_diff_created_and_deleted(tmp_path):
    (tmp_path / "b.py").write_text("hello\n")
    backend = LocalBackend(str(tmp_path))
    history = [
        Message(role="assistant", content="", edit_info={
            "b.py": [EditRecord(created=True), _edit("")],
            "c.py": [EditRecord(deleted=True, previous_text="gone\n")],
        }),
    ]
    diffs = historical_diff(history, backend)
    assert diffs["b.py"].created
    assert diffs["b.py"].initial_text is None
    assert diffs["b.py"].current_text == "hello\n"
    assert diffs["c.py"].deleted
    assert diffs["c.py"].initial_text == "gone\n"
    assert diffs["c.py"].current_text is None


def test_historical_diff_follows_rename(tmp_path):
    (tmp_path / "new.py").write_text("x = 2\n")
    backend = LocalBackend(str(tmp_path))
    history = [
        Message(role="assistant", content="", edit_info={"old.py": [_edit("x = 1\n")]}),
        Message(role="assistant", content="", edit_info={"new.py": [EditRecord(renamed_from="old.py")]}),
    ]
    diffs = historical_diff(history, backend)
    assert list(diffs) == ["new.py"]
    assert diffs["new.py"].initial_path == "old.py"
    assert diffs["new.py"].initial_text == "x = 1\n"
    assert diffs["new.py"].to_dict()["currentText"] == "x = 2\n"


def test_historical_diff_drops_unchanged(tmp_path):
    (tmp_path / "a.py").write_text("same\n")
    backend = LocalBackend(str(tmp_path))
    history = [Message(role="assistant", content="", edit_info={"a.py": [_edit("same\n")]})]
    assert historical_diff(history, backend) == {}


def test_historical_diff_removes_debug_logs(tmp_path):
    path = tmp_path / "a.py"
    path.write_text('x = 1\nprint("DEBUG-BLINKY: x", x)\n')
    backend = LocalBackend(str(tmp_path))
    history = [Message(role="assistant", content="", edit_info={"a.py": [_edit("x = 0\n")]})]
    diffs = historical_diff(history, backend)
    assert path.read_text() == "x = 1\n"
    assert diffs["a.py"].current_text == "x = 1\n"
