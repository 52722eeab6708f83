"""
CodingAgent: one thought/action turn at a time.

Each forward() call appends a user message built from the prompt templates,
queries the model over a pruned copy of the history, parses the output into
a thought and actions (re-querying on format errors) and appends the
assistant message. Executing the actions is left to the caller, which feeds
the results back through set_observation / update_edit_info.
"""

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Union

from config import AgentTemplates, app_config
from errors import AgentRuntimeError, FormatError, InterruptError
from model_service import BaseModel
from tools.edit import revert_to_previous_state

from .events import AgentState
from .history import prune_history
from .parser import PARSER_REGISTRY
from .prompts import default_templates, interpolate, serialize_demonstrations, serialize_tools
from .types import AgentStateInfo, ForwardStep, Message, TaskContext

logger = logging.getLogger(__name__)

StreamCallback = Callable[[str], None]


class CodingAgent:
    """
    Model-driven agent over a Toolbox.

    Flow of one turn:
    1. Seed the history with the system prompt (and demonstration) if empty
    2. Append the instance / next-step user message for the current state
    3. Query the model, streaming through stream_callback when given
    4. Parse into a ForwardStep, re-querying up to max_format_retries times
    5. Append the assistant message and return the step
    """

    def __init__(
        self,
        templates: Optional[AgentTemplates] = None,
        max_history_messages: Optional[int] = None,
        keep_first_messages: Optional[int] = None,
        max_format_retries: Optional[int] = None,
    ):
        self.templates = templates or default_templates()
        parser = PARSER_REGISTRY.get(self.templates.parse_function_name)
        if parser is None:
            raise ValueError(f"Unknown parser: {self.templates.parse_function_name}")
        self.parse = parser
        self.max_history_messages = max_history_messages or app_config.history_max_messages
        self.keep_first_messages = keep_first_messages if keep_first_messages is not None else app_config.history_keep_first
        self.max_format_retries = max_format_retries or app_config.max_format_retries

        self.history: List[Message] = []
        self.task_context = TaskContext()
        self.model: Optional[BaseModel] = None
        self.toolbox = None
        self.current_observation: Optional[str] = ""
        self.id_tracker = 0
        self.state = AgentState.IDLE
        self._cancelled = False

    def initialize(self, toolbox, model: BaseModel) -> None:
        self.toolbox = toolbox
        self.model = model

    def set_task_context(self, task_context: TaskContext) -> None:
        self.task_context = task_context

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Ask the running turn to stop at its next check."""
        self._cancelled = True

    def resume(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def check_interrupt(self) -> None:
        if self._cancelled:
            self.state = AgentState.INTERRUPTED
            raise InterruptError("Agent loop interrupted")

    def reset(self) -> None:
        """Forget the conversation. Does not touch the workspace."""
        self.history = []
        self.current_observation = ""
        self.id_tracker = 0
        self.state = AgentState.IDLE
        self._cancelled = False

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def _task_vars(self) -> Dict[str, Any]:
        return asdict(self.task_context)

    def _init_history(self) -> None:
        if self.toolbox is None:
            raise AgentRuntimeError("Toolbox not initialized")
        system_prompt = interpolate(self.templates.system_template, {
            "function_docs": serialize_tools(self.toolbox),
            **self.templates.auxiliary_vars,
            **self._task_vars(),
        })
        self.history = [Message(role="system", content=system_prompt)]
        logger.info(f"System prompt:\n{system_prompt}")
        if self.templates.demonstrations and self.templates.demonstration_template:
            self.history.append(Message(
                role="user",
                content=interpolate(self.templates.demonstration_template, {
                    "demonstrations": serialize_demonstrations(self.templates.demonstrations),
                }),
                is_demo=True,
            ))

    def _next_templates(self) -> List[str]:
        last = self.history[-1]
        if last.role == "system" or last.is_demo:
            return [self.templates.instance_template]
        if not (self.current_observation or "").strip():
            return [self.templates.state_template, self.templates.next_step_no_output_template]
        return [self.templates.state_template, self.templates.next_step_template]

    async def forward(
        self,
        state: Optional[Union[AgentStateInfo, Dict[str, Any]]] = None,
        stream_callback: Optional[StreamCallback] = None,
    ) -> ForwardStep:
        """Run one turn and return the parsed step."""
        if not self.history:
            self._init_history()

        if isinstance(state, AgentStateInfo):
            state_vars = state.as_vars()
        else:
            state_vars = dict(state or {})
        current_id = self.id_tracker
        values = {
            "observation": self.current_observation,
            "state_id": str(current_id),
            **self._task_vars(),
            **state_vars,
        }
        content = "\n".join(interpolate(t, values) for t in self._next_templates())
        self.history.append(Message(role="user", content=content, id=str(current_id)))
        self.id_tracker += 1

        output = await self.query_model(self.history, stream_callback)
        step = await self._parse_with_retries(output)
        self.history.append(Message(
            role="assistant",
            content=step.output or "",
            thought=step.thought,
            actions=step.actions,
        ))
        self.state = AgentState.EXECUTING_ACTIONS
        logger.info(f"Step {current_id}: {[a.tool_name for a in step.actions]}")
        return step

    async def query_model(self, history: List[Message], stream_callback: Optional[StreamCallback] = None) -> str:
        if self.model is None:
            raise AgentRuntimeError("Model not initialized")
        self.state = AgentState.AWAITING_MODEL
        pruned = prune_history(history, self.max_history_messages, self.keep_first_messages)
        messages = [m.to_model_dict() for m in pruned]
        logger.debug(f"Model input: {len(messages)} message(s)")
        if stream_callback is not None:
            response = await self.model.stream_query(messages, stream_callback)
        else:
            response = await self.model.query(messages)
        if response is None:
            response = ""
        logger.debug(f"Model output:\n{response}")
        return response

    async def _parse_with_retries(self, output: str) -> ForwardStep:
        fails = 0
        while fails < self.max_format_retries:
            try:
                return self.parse(output)
            except FormatError as e:
                fails += 1
                logger.warning(f"Format error ({fails}/{self.max_format_retries}): {e}")
                self.state = AgentState.RETRYING
                # the failed exchange is shown to the model but not kept in history
                retry_history = self.history + [
                    Message(role="assistant", content=output),
                    Message(role="user", content=self.templates.format_error_template),
                ]
                output = await self.query_model(retry_history)
        raise FormatError("Failed to parse model output")

    # ------------------------------------------------------------------
    # Feedback from action execution
    # ------------------------------------------------------------------

    def set_observation(self, observation: Optional[str], user_messages: Optional[str] = None) -> None:
        self.current_observation = observation
        if user_messages:
            self.task_context.user_message += "\n" + user_messages

    def update_edit_info(self, edit_info) -> None:
        if self.history:
            self.history[-1].edit_info = edit_info

    def update_actions_failed(self, failed: bool) -> None:
        if self.history:
            self.history[-1].actions_failed = failed

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, to_id: Optional[str] = None, keep_final_state: bool = False, keep_history: bool = False) -> str:
        """Revert edits newest-first until the user message with id to_id.

        keep_final_state leaves the most recent message (e.g. the one that
        asked for the backtrack) untouched; keep_history reverts the files
        but keeps the messages.
        """
        if not self.history:
            return "No history to undo!"
        target = str(to_id) if to_id is not None and str(to_id) != "" else None
        idx = len(self.history) - 1 - (1 if keep_final_state else 0)
        while idx >= 0 and self.history:
            message = self.history[idx]
            if message.role == "user" and target is not None and message.id == target:
                break
            if message.edit_info:
                try:
                    revert_to_previous_state(self._backend(), message.edit_info)
                except (OSError, ValueError) as e:
                    logger.warning(f"Error in undo, but continuing: {e}")
            if not keep_history:
                del self.history[idx]
            idx -= 1
        return "Undid successfully!"

    def _backend(self):
        transaction = getattr(self.toolbox, "transaction", None)
        if transaction is None:
            raise AgentRuntimeError("Toolbox not initialized")
        return transaction.backend
