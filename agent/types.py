"""
Message and step types shared by the agent loop, history and coordinator.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tools._common import EditMetadata


@dataclass
class Action:
    """One tool invocation parsed from model output"""
    tool_name: str
    params: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"toolName": self.tool_name, "params": list(self.params)}


@dataclass
class ForwardStep:
    thought: str
    actions: List[Action] = field(default_factory=list)
    output: Optional[str] = None


@dataclass
class Message:
    role: str  # system | user | assistant
    content: str
    id: Optional[str] = None
    thought: Optional[str] = None
    actions: Optional[List[Action]] = None
    is_demo: Optional[bool] = None
    edit_info: Optional[EditMetadata] = None
    actions_failed: Optional[bool] = None

    def to_model_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class TaskContext:
    issue: str = ""
    user_message: str = ""
    files: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AgentStateInfo:
    """Editor state interpolated into prompt templates"""
    current_file: Optional[str] = None
    open_files: List[str] = field(default_factory=list)
    working_dir: Optional[str] = None

    def as_vars(self) -> Dict[str, str]:
        return {
            "current_file": self.current_file or "n/a",
            "open_files": ", ".join(self.open_files) if self.open_files else "n/a",
            "working_dir": self.working_dir or "",
        }
