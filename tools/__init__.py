"""
Tools the agent can call: navigation over the workspace, transactional edits
and verification. Tools operate through the Backend abstraction.
"""

from tools._common import (  # noqa: F401
    CODE_SIGNIFIER,
    LOG_SIGNIFIER,
    SEPARATOR,
    EditBatch,
    EditMetadata,
    EditRecord,
    SessionDiff,
    ToolResult,
    merge_metadata,
)
from tools.edit import (  # noqa: F401
    CommitResult,
    EditTask,
    EditTransaction,
    create_file,
    delete_file,
    find_and_replace_in_files,
    redo,
    rename_file,
    replace_text,
    revert_to_previous_state,
)
from tools.verifier import (  # noqa: F401
    Evaluation,
    HttpRequestStepArgs,
    HttpResponse,
    LocalProcessStepArgs,
    LogType,
    Verifier,
    VerifyResult,
)
from tools.repro import ReproValues, repro_values_to_steps  # noqa: F401
from tools.toolbox import (  # noqa: F401
    ActionResult,
    Tool,
    ToolKind,
    Toolbox,
    ToolParam,
    build_default_toolbox,
)
