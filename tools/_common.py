"""Shared types for the tools package."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from backend import FileOp

# Multiple edits in one preview/observation are separated by this line
SEPARATOR = "\n----------------\n"
CODE_SIGNIFIER = "```"
# Marker the agent puts in temporary debug log statements
LOG_SIGNIFIER = "DEBUG-BLINKY:"


@dataclass
class ToolResult:
    """Result from executing a navigation or execute tool"""
    observation: str
    failed: bool = False


@dataclass
class EditRecord:
    """Enough information to undo one staged edit.

    Replace edits carry start_line/new_line_count/previous_text; create,
    delete and rename set the corresponding flag or renamed_from.
    """
    start_line: int = 0
    new_line_count: int = 0
    previous_text: Optional[str] = None
    line_count_before_edit: Optional[int] = None
    created: bool = False
    deleted: bool = False
    renamed_from: Optional[str] = None


# Append-only arena: path -> edits in the order they were staged
EditMetadata = Dict[str, List[EditRecord]]


def merge_metadata(target: EditMetadata, other: EditMetadata) -> EditMetadata:
    for path, records in other.items():
        target.setdefault(path, []).extend(records)
    return target


@dataclass
class SessionDiff:
    """Net change of one file over a session, derived from edit metadata."""
    current_path: Optional[str] = None
    current_text: Optional[str] = None
    initial_path: Optional[str] = None
    initial_text: Optional[str] = None
    created: bool = False
    deleted: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "currentPath": self.current_path,
            "currentText": self.current_text,
            "initialPath": self.initial_path,
            "initialText": self.initial_text,
            "created": self.created,
            "deleted": self.deleted,
        }


@dataclass
class EditBatch:
    """Pending file mutations, applied together by EditTransaction.commit."""
    ops: List[FileOp] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.ops)

    def clear(self) -> None:
        self.ops.clear()
