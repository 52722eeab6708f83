"""
Prompt templates and interpolation.

The default templates are assembled from small prompt modules, the same way the
system prompt is built from focused fragments. Placeholders use ``{name}``
(surrounding whitespace inside the braces is allowed); unknown placeholders are
left untouched.
"""

import re
from typing import Any, Dict, List, Mapping

from config import AgentTemplates


# ============================================================
# Prompt modules
# ============================================================

_MOD_IDENTITY = """You are an autonomous software engineer working inside a real code repository. You fix the issue described by the user by reading code, editing files and running the verification steps the user configured. Your edits are applied immediately and checked for errors; edits that introduce errors are reverted and you are shown why."""

_MOD_RESPONSE_FORMAT = """<response_format>
Every response has exactly two parts:
1. A line starting with DISCUSSION followed by your reasoning about what to do next.
2. One or more actions, each wrapped in <function></function>. An action is a call like
<function>ReadFile("src/app.py")</function>
Long text arguments (code, replacement text) are given as fenced code blocks inside the
function tags, after the call:
<function>ReplaceText("src/app.py")
```old
12:    return x
```
```new
12:    return x + 1
```
</function>
Do not put anything after the last action.
</response_format>"""

_MOD_EDITING = """<editing>
- Always ReadFile before editing; old text for ReplaceText must be copied with its line numbers exactly as ReadFile shows them.
- Line numbers in old text must be consecutive. Use an empty old text block to write into an empty file.
- Keep edits small. Several ReplaceText actions on different parts of a file are fine.
- You may add temporary log statements containing {log_signifier} to debug; they are removed automatically at the end.
</editing>"""

_MOD_VERIFY = """<verification>
- Use Verify to run the configured build/test steps after meaningful changes.
- Use Backtrack with a state id to undo everything after that state if an approach turned out wrong.
- When the issue is fixed and verified, call {done_function}() with no other action.
</verification>"""

_MOD_TOOLS = """<tools>
{function_docs}
</tools>"""

_MOD_TASK = """<task>
Issue:
{issue}

Additional messages from the user:
{user_message}
</task>"""


def _compose(*modules: str) -> str:
    return "\n\n".join(m for m in modules if m)


DEFAULT_SYSTEM_TEMPLATE = _compose(_MOD_IDENTITY, _MOD_RESPONSE_FORMAT, _MOD_EDITING, _MOD_VERIFY, _MOD_TOOLS)

DEFAULT_INSTANCE_TEMPLATE = _compose(
    _MOD_TASK,
    "Working directory: {working_dir}\n(State {state_id}) Start by exploring the relevant code.",
)

DEFAULT_STATE_TEMPLATE = "(State {state_id}) Open file: {current_file}\nWorking directory: {working_dir}"

DEFAULT_NEXT_STEP_TEMPLATE = """Observation:
{observation}"""

DEFAULT_NEXT_STEP_NO_OUTPUT_TEMPLATE = "Your actions ran successfully and did not produce any output."

DEFAULT_FORMAT_ERROR_TEMPLATE = """Your output was not formatted correctly. Reply with a DISCUSSION section followed by one or more actions, each wrapped in <function></function>, for example:
DISCUSSION
I need to look at the entry point first.
<function>ReadFile("main.py")</function>"""

DEFAULT_DEMONSTRATION_TEMPLATE = """Here is a demonstration of how to solve a task:
--- DEMONSTRATION ---
{demonstrations}
--- END OF DEMONSTRATION ---"""

DEFAULT_POST_APPLIED_DIFF_TEMPLATE = """The user reviewed your changes and kept them. Their new request:
{user_message}"""

DEFAULT_POST_REVERTED_DIFF_TEMPLATE = """The user reviewed your changes and reverted them, the workspace is back to its original state. Their new request:
{user_message}"""


def default_templates() -> AgentTemplates:
    from tools._common import LOG_SIGNIFIER
    done_function = "Done"
    return AgentTemplates(
        system_template=interpolate(DEFAULT_SYSTEM_TEMPLATE, {
            "log_signifier": LOG_SIGNIFIER,
            "done_function": done_function,
        }),
        instance_template=DEFAULT_INSTANCE_TEMPLATE,
        state_template=DEFAULT_STATE_TEMPLATE,
        next_step_template=DEFAULT_NEXT_STEP_TEMPLATE,
        next_step_no_output_template=DEFAULT_NEXT_STEP_NO_OUTPUT_TEMPLATE,
        format_error_template=DEFAULT_FORMAT_ERROR_TEMPLATE,
        demonstration_template=DEFAULT_DEMONSTRATION_TEMPLATE,
        post_reverted_diff_template=DEFAULT_POST_REVERTED_DIFF_TEMPLATE,
        post_applied_diff_template=DEFAULT_POST_APPLIED_DIFF_TEMPLATE,
        parse_function_name="thought_action_parser",
        done_function=done_function,
    )


# ============================================================
# Interpolation and serialization
# ============================================================

def interpolate(template: str, values: Mapping[str, Any]) -> str:
    """Replace ``{ key }`` placeholders for every key in values."""
    for key, value in values.items():
        pattern = re.compile(r"\{\s*" + re.escape(str(key)) + r"\s*\}")
        text = "" if value is None else str(value)
        template = pattern.sub(lambda _m: text, template)
    return template


def serialize_demonstrations(demonstrations: List[Dict[str, Any]]) -> str:
    """One block per step with only its role and content, blocks separated by a blank line."""
    steps = []
    for step in demonstrations:
        lines = [f"{key}: {value}" for key, value in step.items() if key in ("role", "content")]
        steps.append("\n".join(lines))
    return "\n\n".join(steps)


def serialize_tools(toolbox) -> str:
    return toolbox.serialize_tools()
