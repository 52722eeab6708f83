"""
Parsing of model output into a thought and a list of tool actions.

Actions are written as ``<function>Name(a, key="b")</function>``, optionally
followed (inside the delimiters) by fenced code blocks whose bodies become
extra positional parameters.
"""

import json
import re
from typing import Any, Callable, Dict, List

from errors import FormatError
from tools._common import CODE_SIGNIFIER
from .types import Action, ForwardStep

FUNCTION_START = "<function>"
FUNCTION_END = "</function>"
THOUGHT_MARKER = "DISCUSSION"

_ACTION_RE = re.compile(r"<function>(.*?)</function>", re.DOTALL)
_CALL_RE = re.compile(r"^(\w+)\(([^)]*)\)$")


def _strip_marker(thought: str) -> str:
    thought = thought.strip()
    if thought.startswith(THOUGHT_MARKER):
        thought = thought[len(THOUGHT_MARKER):].strip()
    return thought


def _decode_value(raw: str) -> Any:
    cleaned = raw.strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        return cleaned


def _parse_param(param: str) -> Any:
    param = param.strip()
    if '="' in param and param.endswith('"'):
        # key="value"
        value = param[param.index("=") + 1:]
    elif "='" in param and param.endswith("'"):
        # key='value', quotes dropped since JSON has no single quotes
        value = param[param.index("=") + 2:-1]
    elif "=" in param:
        value = param[param.index("=") + 1:]
    else:
        value = param
    return _decode_value(value)


def _code_blocks(section: str) -> List[str]:
    """Bodies of fenced blocks; the label line after the opening fence is dropped."""
    blocks = []
    rest = section
    while CODE_SIGNIFIER in rest:
        start = rest.index(CODE_SIGNIFIER)
        newline = rest.find("\n", start)
        end = rest.find(CODE_SIGNIFIER, start + 1)
        if newline == -1 or end == -1 or end < newline:
            break
        blocks.append(rest[newline + 1:end])
        rest = rest[end + len(CODE_SIGNIFIER):]
    return blocks


def parse_action(section: str, stream: bool = False) -> Action:
    """Parse the text between one pair of action delimiters.

    Raises ValueError when the call does not look like ``Name(params)``.
    """
    section = section.strip()
    call = section
    code_section = ""
    if CODE_SIGNIFIER in section:
        idx = section.index(CODE_SIGNIFIER)
        call = section[:idx].strip()
        code_section = section[idx:].strip()

    match = _CALL_RE.match(call)
    if not match:
        raise ValueError(f"Malformed action: {call!r}")
    tool_name, params_str = match.group(1), match.group(2)

    if stream:
        # partial parameter lists are meaningless; surface only the code so far
        return Action(tool_name, [code_section] if code_section else [])

    params: List[Any] = []
    if params_str.strip():
        params = [_parse_param(p) for p in params_str.split(",")]
    return Action(tool_name, params + _code_blocks(section))


def parse_thought_action(response: str, stream: bool = False) -> ForwardStep:
    """Split a model response into thought and actions.

    With stream=True the response may be incomplete: missing delimiters are
    tolerated and unparseable actions are skipped instead of raising.
    """
    separator = response.find(FUNCTION_START)
    if separator == -1:
        if not stream:
            raise FormatError("No action separator found in response.")
        return ForwardStep(thought=_strip_marker(response), actions=[], output=response)

    thought = _strip_marker(response[:separator])
    segment = response[separator:]
    if stream and segment.count(FUNCTION_START) > segment.count(FUNCTION_END):
        segment += FUNCTION_END

    actions = []
    for match in _ACTION_RE.finditer(segment):
        try:
            actions.append(parse_action(match.group(1), stream))
        except ValueError:
            if stream:
                continue
            raise FormatError("Error parsing action")
    return ForwardStep(thought=thought, actions=actions, output=response)


PARSER_REGISTRY: Dict[str, Callable[..., ForwardStep]] = {
    "thought_action_parser": parse_thought_action,
}
