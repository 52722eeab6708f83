"""Tests for tool registration and action execution."""

import asyncio

import pytest

from agent.types import Action
from backend import Formatter, LocalBackend, LocalDiagnostics
from tools._common import ToolResult
from tools.edit import EditTransaction
from tools.toolbox import Tool, ToolKind, Toolbox, ToolParam, build_default_toolbox
from tools.verifier import Verifier


def _toolbox(tmp_path, files=None, **kwargs):
    for name, text in (files or {}).items():
        (tmp_path / name).write_text(text)
    backend = LocalBackend(str(tmp_path))
    transaction = EditTransaction(backend, LocalDiagnostics(backend), settle_delay=0, diagnostics_timeout=1.0)
    return build_default_toolbox(backend, transaction, **kwargs)


def _run(toolbox, *actions):
    return asyncio.run(toolbox.execute_actions(list(actions)))


def test_registration_validates():
    toolbox = Toolbox()
    echo = Tool("Echo", "Echo text", [ToolParam("text")], ToolKind.NAVIGATION, lambda text: text)
    toolbox.register_tool(echo)
    with pytest.raises(ValueError, match="already registered"):
        toolbox.register_tool(echo)
    with pytest.raises(ValueError, match="must not be empty"):
        toolbox.register_tool(Tool("", "x", [], ToolKind.NAVIGATION, lambda: ""))
    with pytest.raises(ValueError, match="follows an optional parameter"):
        toolbox.register_tool(Tool(
            "Bad", "x", [ToolParam("a", optional=True), ToolParam("b")], ToolKind.NAVIGATION, lambda a, b: "",
        ))
    with pytest.raises(ValueError, match="needs a toolbox with an EditTransaction"):
        toolbox.register_tool(Tool("Edit", "x", [], ToolKind.EDIT, lambda batch, metadata: None))


def test_signature_format():
    tool = Tool(
        "ReadFile", "Read a file",
        [ToolParam("filename"), ToolParam("startLineNum", "defaults to 1", optional=True), ToolParam("extra", optional=True)],
        ToolKind.NAVIGATION, lambda *a: "",
    )
    assert tool.signature() == (
        "ReadFile\nRead a file\nParams:\n- filename\n- startLineNum (defaults to 1)\n- extra (optional)\n"
    )
    assert Tool("Verify", "Run it", [], ToolKind.EXECUTE, lambda: "").signature() == "Verify\nRun it\nParams:\nNone"


def test_default_toolbox_serializes_all_tools(tmp_path):
    toolbox = _toolbox(tmp_path)
    docs = toolbox.serialize_tools()
    for name in ("ReadFile", "GetFileSymbols", "ListDirectoryRecursively", "FindFiles", "FindTextInFiles",
                 "FindAndReplaceTextInFiles", "CreateFile", "RenameFile", "DeleteFile", "ReplaceText",
                 "GetFilesRelevantToEndpoint"):
        assert f"{name}\n" in docs
    assert "Verify" not in toolbox.tools
    assert "Backtrack" not in toolbox.tools


def test_unknown_tool_observation(tmp_path):
    result = _run(_toolbox(tmp_path), Action("Teleport", []))
    assert result.observations == [
        "Teleport does not exists in the set of tools. Please refer to the list of available tools in the prompt."
    ]


def test_missing_required_param(tmp_path):
    result = _run(_toolbox(tmp_path), Action("ReadFile", []))
    assert result.failed
    assert result.observations == ["Usage of ReadFile failed due to error: Missing required parameter 'filename'."]


def test_navigation_result_and_failure_flag(tmp_path):
    toolbox = _toolbox(tmp_path, {"a.py": "x = 1\n"})
    result = _run(toolbox, Action("ReadFile", ["a.py"]), Action("ReadFile", ["missing.py"]))
    assert result.observations[0] == "1:x = 1\n2:"
    assert "Could not open file 'missing.py'" in result.observations[1]
    assert result.failed


def test_consecutive_edits_commit_once(tmp_path):
    toolbox = _toolbox(tmp_path, {"a.py": "a = 1\nb = 2\n"})
    result = _run(
        toolbox,
        Action("ReplaceText", ["a.py", "1:a = 1\n", "a = 10\n"]),
        Action("ReplaceText", ["a.py", "2:b = 2\n", "b = 20\n"]),
    )
    assert not result.failed
    assert (tmp_path / "a.py").read_text() == "a = 10\nb = 20\n"
    assert len(result.observations) == 1
    assert result.observations[0].startswith("Successfully edited a.py")
    assert len(result.edit_info["a.py"]) == 2


def test_edit_is_committed_before_navigation(tmp_path):
    toolbox = _toolbox(tmp_path, {"a.py": "a = 1\n"})
    result = _run(
        toolbox,
        Action("ReplaceText", ["a.py", "1:a = 1\n", "a = 2\n"]),
        Action("ReadFile", ["a.py"]),
    )
    assert result.observations[-1] == "1:a = 2\n2:"


def test_failed_commit_stops_remaining_actions(tmp_path):
    toolbox = _toolbox(tmp_path, {"a.py": "a = 1\n"})
    result = _run(
        toolbox,
        Action("ReplaceText", ["a.py", "1:a = 1\n", "a = (\n"]),
        Action("ReadFile", ["a.py"]),
    )
    assert result.failed
    assert len(result.observations) == 1
    assert result.observations[0].startswith("Failed to edit a.py.")
    assert result.edit_info == {}
    assert (tmp_path / "a.py").read_text() == "a = 1\n"


def test_staging_error_becomes_observation(tmp_path):
    toolbox = _toolbox(tmp_path, {"a.py": "a = 1\n"})
    result = _run(toolbox, Action("ReplaceText", ["a.py", "1:wrong\n", "a = 2\n"]))
    assert result.failed
    assert result.observations[0].startswith("Usage of ReplaceText failed due to error: Line 1 in oldText")


def test_extra_params_are_ignored(tmp_path):
    toolbox = _toolbox(tmp_path, {"a.py": "x\n"})
    result = _run(toolbox, Action("GetFileSymbols", ["a.py", "unexpected"]))
    assert result.observations == ["There are no symbols for 'a.py'."]


def test_verify_tool(tmp_path):
    verifier = Verifier(str(tmp_path))
    toolbox = _toolbox(tmp_path, verifier=verifier)
    result = _run(toolbox, Action("Verify", []))
    assert result.observations == [""]
    assert not result.failed


def test_backtrack_tool(tmp_path):
    calls = []

    def backtrack(state_id, keep_final_state=False):
        calls.append((state_id, keep_final_state))
        return "Undid successfully!"

    toolbox = _toolbox(tmp_path, backtrack_fn=backtrack)
    result = _run(toolbox, Action("Backtrack", [3]))
    assert calls == [("3", True)]
    assert result.observations == ["Undid successfully!"]


def test_async_tool_and_plain_return():
    toolbox = Toolbox()

    async def shout(text):
        return ToolResult(text.upper())

    toolbox.register_tool(Tool("Shout", "", [ToolParam("text")], ToolKind.NAVIGATION, shout))
    toolbox.register_tool(Tool("Count", "", [], ToolKind.NAVIGATION, lambda: 3))
    result = asyncio.run(toolbox.execute_actions([Action("Shout", ["hi"]), Action("Count", [])]))
    assert result.observations == ["HI", "3"]


class CrashingFormatter(Formatter):
    def format_document(self, path, text):
        raise RuntimeError("formatter crashed")


class ExplodingTransaction(EditTransaction):
    async def commit(self, batch, metadata):
        raise RuntimeError("commit exploded")


def test_crashing_formatter_does_not_escape(tmp_path):
    (tmp_path / "a.py").write_text("a = 1\n")
    backend = LocalBackend(str(tmp_path))
    transaction = EditTransaction(
        backend, LocalDiagnostics(backend), formatter=CrashingFormatter(), settle_delay=0, diagnostics_timeout=1.0,
    )
    toolbox = build_default_toolbox(backend, transaction)
    result = _run(toolbox, Action("ReplaceText", ["a.py", "1:a = 1", "a = 2\n"]))
    assert not result.failed
    assert (tmp_path / "a.py").read_text() == "a = 2\n"
    assert list(result.edit_info) == ["a.py"]


def test_commit_exception_becomes_observation(tmp_path):
    (tmp_path / "a.py").write_text("a = 1\n")
    backend = LocalBackend(str(tmp_path))
    toolbox = build_default_toolbox(backend, ExplodingTransaction(backend, settle_delay=0))
    result = _run(toolbox, Action("ReplaceText", ["a.py", "1:a = 1", "a = 2\n"]))
    assert result.failed
    assert result.observations == ["Failed to apply your edits due to error: commit exploded"]
    assert result.edit_info == {}
