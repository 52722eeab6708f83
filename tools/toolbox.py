"""
Tool registry and action execution.

Consecutive edit actions are staged into one EditBatch and committed together
through the EditTransaction when a non-edit action arrives or the action list
ends.
"""

import functools
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from backend import Backend

from ._common import CODE_SIGNIFIER, EditBatch, EditMetadata, ToolResult, merge_metadata
from .edit import EditTransaction, create_file, delete_file, find_and_replace_in_files, rename_file, replace_text
from .navigation import (
    find_files,
    find_text_in_files,
    get_file_symbols,
    get_files_relevant_to_endpoint,
    list_directory_recursively,
    read_file,
)
from .verifier import Verifier

logger = logging.getLogger(__name__)


class ToolKind(Enum):
    NAVIGATION = "navigation"
    EDIT = "edit"
    EXECUTE = "execute"


@dataclass
class ToolParam:
    name: str
    description: str = ""
    optional: bool = False
    default: Any = ""

    def signature(self) -> str:
        text = self.name
        if self.description:
            text += f" - {self.description}" if not self.optional else f" ({self.description})"
        elif self.optional:
            text += " (optional)"
        return text


@dataclass
class Tool:
    name: str
    description: str
    params: List[ToolParam]
    kind: ToolKind
    func: Callable[..., Any]

    def signature(self) -> str:
        if self.params:
            params_text = "".join(f"- {p.signature()}\n" for p in self.params)
        else:
            params_text = "None"
        return f"{self.name}\n{self.description}\nParams:\n{params_text}"


@dataclass
class ActionResult:
    observations: List[str] = field(default_factory=list)
    edit_info: EditMetadata = field(default_factory=dict)
    failed: bool = False


class MissingParameterError(ValueError):
    pass


async def _maybe_await(value: Union[Any, Awaitable[Any]]) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Toolbox:
    def __init__(self, transaction: Optional[EditTransaction] = None):
        self.tools: Dict[str, Tool] = {}
        self.transaction = transaction

    def register_tool(self, tool: Tool) -> None:
        if not tool.name or not tool.name.strip():
            raise ValueError("Tool name must not be empty.")
        if tool.name in self.tools:
            raise ValueError(f"Tool '{tool.name}' is already registered.")
        if not callable(tool.func):
            raise ValueError(f"Tool '{tool.name}' has no callable implementation.")
        seen_optional = False
        for param in tool.params:
            if param.optional:
                seen_optional = True
            elif seen_optional:
                raise ValueError(
                    f"Tool '{tool.name}': required parameter '{param.name}' follows an optional parameter."
                )
        if tool.kind == ToolKind.EDIT and self.transaction is None:
            raise ValueError(f"Edit tool '{tool.name}' needs a toolbox with an EditTransaction.")
        self.tools[tool.name] = tool

    def tools_signature(self) -> List[str]:
        return [tool.signature() for tool in self.tools.values()]

    def serialize_tools(self) -> str:
        return "\n".join(self.tools_signature())

    @staticmethod
    def _bind_params(tool: Tool, params: List[Any]) -> List[Any]:
        values = list(params[:len(tool.params)])
        if len(params) > len(tool.params):
            logger.warning(f"{tool.name} got {len(params)} params, expected at most {len(tool.params)}; extra ignored")
        for param in tool.params[len(values):]:
            if not param.optional:
                raise MissingParameterError(f"Missing required parameter '{param.name}'.")
            values.append(param.default)
        return values

    async def _commit(self, batch: EditBatch, metadata: EditMetadata, result: ActionResult) -> bool:
        try:
            commit = await self.transaction.commit(batch, metadata)
        except Exception as e:
            logger.exception("Edit commit failed")
            result.observations.append(f"Failed to apply your edits due to error: {e}")
            result.failed = True
            return False
        result.observations.extend(commit.messages)
        if commit.completed:
            merge_metadata(result.edit_info, metadata)
        else:
            result.failed = True
        return commit.completed

    async def execute_actions(self, actions) -> ActionResult:
        """Run actions in order and collect their observations and edit metadata."""
        result = ActionResult()
        batch = EditBatch()
        metadata: EditMetadata = {}

        for action in actions:
            name = action.tool_name
            tool = self.tools.get(name)
            if tool is None:
                result.observations.append(
                    f"{name} does not exists in the set of tools. "
                    f"Please refer to the list of available tools in the prompt."
                )
                continue
            try:
                values = self._bind_params(tool, action.params)
                if tool.kind == ToolKind.EDIT:
                    await _maybe_await(tool.func(*values, batch, metadata))
                    continue

                if len(batch):
                    completed = await self._commit(batch, metadata, result)
                    batch, metadata = EditBatch(), {}
                    if not completed:
                        break

                output = await _maybe_await(tool.func(*values))
                if not isinstance(output, ToolResult):
                    output = ToolResult(str(output) if output is not None else "")
                result.failed = result.failed or output.failed
                result.observations.append(output.observation or "")
            except (ValueError, TypeError, OSError, KeyError) as e:
                result.observations.append(f"Usage of {name} failed due to error: {e}")
                result.failed = True
            except Exception as e:
                logger.exception(f"Tool execution error: {name}")
                result.observations.append(f"Usage of {name} failed due to error: {e}")
                result.failed = True

        if len(batch):
            await self._commit(batch, metadata, result)
        return result


# ============================================================
# Default tools
# ============================================================

_REPLACE_TEXT_DESCRIPTION = (
    "Replace the old text block with line numbers with the new text blocks. You MUST retain the comments "
    "and correct indentation in oldText and newText.\n\n"
    "Example usage:\n"
    "<function>\n"
    'ReplaceText(filename="test.py")\n'
    f"{CODE_SIGNIFIER}oldText\n"
    "5:def helloworld(a):\n"
    "6:\n"
    "7:    b = a + 2\n"
    f"{CODE_SIGNIFIER}\n"
    f"{CODE_SIGNIFIER}newText\n"
    "5:def helloworld(a):\n"
    "6:    # Show the user the input value\n"
    '7:    print(f"Input of helloword(a={a})")\n'
    "8:    b = a + 2\n"
    f"{CODE_SIGNIFIER}\n"
    "</function>"
)


def build_default_toolbox(
    backend: Backend,
    transaction: EditTransaction,
    verifier: Optional[Verifier] = None,
    backtrack_fn: Optional[Callable[..., Awaitable[str]]] = None,
) -> Toolbox:
    """Toolbox with the navigation and edit tools, plus Verify / Backtrack when given."""
    toolbox = Toolbox(transaction)
    bind = functools.partial

    toolbox.register_tool(Tool(
        "ReadFile",
        "Read the contents of the file given a filename",
        [
            ToolParam("filename"),
            ToolParam("startLineNum", "optional, defaults to 1", optional=True),
            ToolParam("endLineNum", "optional, defaults to number of lines of file", optional=True),
        ],
        ToolKind.NAVIGATION,
        bind(read_file, backend),
    ))
    toolbox.register_tool(Tool(
        "GetFileSymbols",
        "Get the code symbols (functions and variables) of a file. Do not use this if you have already used ReadFile.",
        [ToolParam("filename")],
        ToolKind.NAVIGATION,
        bind(get_file_symbols, backend),
    ))
    toolbox.register_tool(Tool(
        "ListDirectoryRecursively",
        "List the contents of the given directory path recursively to see all the files",
        [ToolParam("directoryPath", "optional, defaults to project root dir", optional=True, default="./")],
        ToolKind.NAVIGATION,
        bind(list_directory_recursively, backend),
    ))
    toolbox.register_tool(Tool(
        "FindFiles",
        "Find file paths that matches the query. Query can include glob patterns such as * to denote a wildcard",
        [ToolParam("query")],
        ToolKind.NAVIGATION,
        bind(find_files, backend),
    ))
    toolbox.register_tool(Tool(
        "FindTextInFiles",
        "Find text in the content of files that matches with the query. Note that this function is case-insensitive.",
        [ToolParam("query"), ToolParam("subDirectory", "optional", optional=True)],
        ToolKind.NAVIGATION,
        bind(find_text_in_files, backend),
    ))
    toolbox.register_tool(Tool(
        "FindAndReplaceTextInFiles",
        "Find and replace text in files. Always use FindTextInFiles to see what you are replacing before calling "
        "this function. Note that this function is case-sensitive. So make sure to match the different cases of "
        "the text you are replacing e.g. variableName, VariableName, variablename etc.",
        [ToolParam("query"), ToolParam("replacement"), ToolParam("subDirectory", "optional", optional=True)],
        ToolKind.EDIT,
        bind(find_and_replace_in_files, backend),
    ))
    toolbox.register_tool(Tool(
        "CreateFile",
        "Create a file with the given filename.",
        [ToolParam("filename")],
        ToolKind.EDIT,
        bind(create_file, backend),
    ))
    toolbox.register_tool(Tool(
        "RenameFile",
        "Rename a file from filename to newFilename.",
        [ToolParam("filename"), ToolParam("newFilename")],
        ToolKind.EDIT,
        bind(rename_file, backend),
    ))
    toolbox.register_tool(Tool(
        "DeleteFile",
        "Delete a file with the given filename.",
        [ToolParam("filename")],
        ToolKind.EDIT,
        bind(delete_file, backend),
    ))
    toolbox.register_tool(Tool(
        "ReplaceText",
        _REPLACE_TEXT_DESCRIPTION,
        [
            ToolParam("filename"),
            ToolParam(
                "oldText",
                "The old text block that you are trying to replace with line numbers. Retain the correct "
                "indentation and comments. Read the content of the file around the oldText before editing.",
            ),
            ToolParam(
                "newText",
                "The new text block that would replace the old text block. Retain the correct indentation "
                "and comments. Any line numbers prepended will be ignored.",
            ),
        ],
        ToolKind.EDIT,
        bind(replace_text, backend),
    ))
    toolbox.register_tool(Tool(
        "GetFilesRelevantToEndpoint",
        "If you are debugging a backend api endpoint, see which files which might contain the entrypoint so you "
        "can start debugging from there. This is useful when you are not sure where to start debugging.",
        [ToolParam("endpoint", 'e.g. "/auth/user/login"')],
        ToolKind.NAVIGATION,
        bind(get_files_relevant_to_endpoint, backend),
    ))

    if verifier is not None:
        async def verify() -> ToolResult:
            result = await verifier.verify()
            return ToolResult(result.logs, failed=False)

        toolbox.register_tool(Tool(
            "Verify",
            "Run verify to check your work and get feedback on whether you have completed the task correctly.",
            [],
            ToolKind.EXECUTE,
            verify,
        ))

    if backtrack_fn is not None:
        async def backtrack(state_id: Any) -> ToolResult:
            observation = await _maybe_await(backtrack_fn(str(state_id), keep_final_state=True))
            return ToolResult(observation, failed=False)

        toolbox.register_tool(Tool(
            "Backtrack",
            "Backtrack to the previous state. Only Use this when you are not making any progress in your current "
            "debugging path so you can go back and go down another path. This will undo all edits and history till "
            "that state. Make sure to summarize the path and conclusion you reached in the discussion section "
            "before backtracking. Use this sparingly.",
            [ToolParam("id", "id of the state to backtrack to.")],
            ToolKind.NAVIGATION,
            backtrack,
        ))
    return toolbox
