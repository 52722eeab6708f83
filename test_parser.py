"""Tests for parsing model output into thought and actions."""

import pytest

from agent.parser import PARSER_REGISTRY, parse_action, parse_thought_action
from errors import FormatError


def test_thought_and_single_action():
    step = parse_thought_action('DISCUSSION\nLet me look at the entry point.\n<function>ReadFile("main.py")</function>')
    assert step.thought == "Let me look at the entry point."
    assert len(step.actions) == 1
    assert step.actions[0].tool_name == "ReadFile"
    assert step.actions[0].params == ["main.py"]


def test_multiple_actions_keep_order():
    response = (
        "DISCUSSION\nRead both.\n"
        '<function>ReadFile("a.py", 1, 20)</function>\n'
        '<function>FindFiles(query="b")</function>'
    )
    step = parse_thought_action(response)
    assert [a.tool_name for a in step.actions] == ["ReadFile", "FindFiles"]
    assert step.actions[0].params == ["a.py", 1, 20]
    assert step.actions[1].params == ["b"]
    assert step.output == response


def test_unquoted_params_stay_strings():
    step = parse_thought_action("thinking\n<function>ListDirectoryRecursively(src/app)</function>")
    assert step.actions[0].params == ["src/app"]


def test_code_blocks_become_trailing_params():
    response = (
        "DISCUSSION\nFix the off by one.\n"
        '<function>ReplaceText("src/app.py")\n'
        "```old\n12:    return x\n```\n"
        "```new\n12:    return x + 1\n```\n"
        "</function>"
    )
    step = parse_thought_action(response)
    action = step.actions[0]
    assert action.tool_name == "ReplaceText"
    assert action.params == ["src/app.py", "12:    return x\n", "12:    return x + 1\n"]


def test_no_parens_no_params():
    action = parse_action("Verify()")
    assert action.tool_name == "Verify"
    assert action.params == []


def test_missing_function_tag_raises():
    with pytest.raises(FormatError):
        parse_thought_action("I am just thinking out loud.")


def test_malformed_action_raises():
    with pytest.raises(FormatError):
        parse_thought_action("DISCUSSION\nhmm\n<function>not a call</function>")


def test_stream_without_tag_is_thought_only():
    step = parse_thought_action("DISCUSSION\nStill thin", stream=True)
    assert step.thought == "Still thin"
    assert step.actions == []


def test_stream_skips_incomplete_call():
    step = parse_thought_action('DISCUSSION\nok\n<function>ReadFile("ma', stream=True)
    assert step.thought == "ok"
    assert step.actions == []


def test_stream_surfaces_partial_code():
    step = parse_thought_action('x\n<function>CreateFile("a.py")\n```python\nprint(', stream=True)
    assert step.actions[0].tool_name == "CreateFile"
    assert step.actions[0].params == ["```python\nprint("]


def test_registry_has_default_parser():
    assert PARSER_REGISTRY["thought_action_parser"] is parse_thought_action
