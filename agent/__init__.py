"""
Agent package - model-driven thought/action loop.

- types: Message, Action, ForwardStep, TaskContext
- events: AgentState and UI-facing TrajectoryStep
- parser: thought/action response parsing
- prompts: prompt templates and interpolation
- history: history pruning and session diffs
- core: CodingAgent
"""

from .core import CodingAgent
from .events import AgentState, TrajectoryStep
from .history import historical_diff, prune_history
from .parser import PARSER_REGISTRY, parse_thought_action
from .prompts import default_templates, interpolate
from .types import Action, AgentStateInfo, ForwardStep, Message, TaskContext

__all__ = [
    "CodingAgent",
    "AgentState",
    "TrajectoryStep",
    "historical_diff",
    "prune_history",
    "PARSER_REGISTRY",
    "parse_thought_action",
    "default_templates",
    "interpolate",
    "Action",
    "AgentStateInfo",
    "ForwardStep",
    "Message",
    "TaskContext",
]
