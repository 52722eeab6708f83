"""
Agent state and UI-facing trajectory data types.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


class AgentState(Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    RETRYING = "retrying"
    EXECUTING_ACTIONS = "executing_actions"
    DONE = "done"
    INTERRUPTED = "interrupted"


@dataclass
class TrajectoryStep:
    """One entry of the conversation shown to the user"""
    role: str  # agent | user
    content: str = ""
    thought: str = ""
    actions: Optional[List[Dict[str, Any]]] = None
    observations: Optional[List[str]] = None
    ws_diffs: Optional[Dict[str, Dict[str, Any]]] = None
