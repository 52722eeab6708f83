"""
Coordinator: hosts the agent loop and mediates between the agent, its tools
and the host UI.

The UI talks to the coordinator only through a UIChannel: the coordinator
registers request handlers on it and pushes updates (messages, streaming
output, running state, errors) through send_update.
"""

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from agent import (
    AgentState,
    AgentStateInfo,
    CodingAgent,
    TaskContext,
    TrajectoryStep,
    historical_diff,
    interpolate,
    parse_thought_action,
)
from backend import Backend, CommandFormatter, LocalBackend, LocalDiagnostics
from config import (
    AgentTemplates,
    AppConfig,
    ReproConfig,
    app_config as default_app_config,
    get_repro_values,
    repro_config as default_repro_config,
    save_repro_values,
)
from errors import InterruptError
from model_service import BaseModel
from tools import (
    EditTransaction,
    ReproValues,
    SEPARATOR,
    SessionDiff,
    Toolbox,
    Verifier,
    build_default_toolbox,
    redo,
    repro_values_to_steps,
)

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class UIChannel(Protocol):
    def register_handler(self, name: str, handler: Handler) -> None:
        ...

    def send_update(self, name: str, value: Any) -> None:
        ...


class LocalUIChannel:
    """In-process UIChannel: handlers are invoked directly, updates fan out to subscribers."""

    def __init__(self):
        self.handlers: Dict[str, Handler] = {}
        self.updates: List[tuple] = []
        self._subscribers: List[Callable[[str, Any], None]] = []

    def register_handler(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    def send_update(self, name: str, value: Any) -> None:
        self.updates.append((name, value))
        for subscriber in list(self._subscribers):
            subscriber(name, value)

    def subscribe(self, callback: Callable[[str, Any], None]) -> None:
        self._subscribers.append(callback)

    async def request(self, name: str, *args: Any) -> Any:
        handler = self.handlers.get(name)
        if handler is None:
            raise KeyError(f"No handler registered for '{name}'")
        result = handler(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def last_update(self, name: str) -> Any:
        for update_name, value in reversed(self.updates):
            if update_name == name:
                return value
        return None


@dataclass
class SessionContext:
    """Per-session settings passed explicitly to everything the session builds."""
    working_directory: str
    app: AppConfig = field(default_factory=lambda: default_app_config)
    repro: ReproConfig = field(default_factory=lambda: default_repro_config)
    templates: Optional[AgentTemplates] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("session"))
    persist_repro: bool = True

    def __post_init__(self):
        self.working_directory = os.path.abspath(self.working_directory)


def convert_trajectory_to_messages(trajectory: List[TrajectoryStep], pending: List[str]) -> List[Dict[str, Any]]:
    """UI messages for the trajectory plus the not yet delivered user messages."""
    messages: List[Dict[str, Any]] = []
    for i, step in enumerate(trajectory):
        actions: List[Dict[str, Any]] = []
        observations: List[str] = []
        if step.actions:
            for action in step.actions:
                params = action.get("params", [])
                if action.get("toolName") == "ReplaceText":
                    # only the filename is shown as a param, the blocks go to the output
                    actions.append({"toolName": "ReplaceText", "params": params[:1]})
                    filename = params[0] if params else ""
                    old_text = params[1] if len(params) > 1 else ""
                    new_text = params[2] if len(params) > 2 else ""
                    observations.append(
                        f"Attempting to replace oldText with newText in '{filename}':\n"
                        f"```oldText\n{old_text}\n```\n```newText\n{new_text}\n"
                    )
                else:
                    actions.append(action)
            if step.observations is not None:
                observations.extend(step.observations)
            elif step.actions[0].get("toolName") not in ("Exit", "Done"):
                observations.append("Still processing...")
        message: Dict[str, Any] = {
            "id": str(i),
            "role": step.role,
            "text": step.thought,
            "actions": actions,
            "observations": observations,
        }
        if step.ws_diffs is not None:
            message["wsDiffs"] = step.ws_diffs
        messages.append(message)
    for i, text in enumerate(pending):
        messages.append({"id": f"p-{i}", "role": "user-pending", "text": text})
    return messages


class Coordinator:
    """
    Runs the agent loop for one session.

    Flow:
    1. The first user message seeds the trajectory and starts the loop
    2. Optionally verify once up front and fold the logs into the task
    3. Per turn: forward (streaming), execute actions, feed observations back
    4. On Done: compute the session diff, then revert the workspace so the
       user can review and re-apply the diff
    """

    def __init__(
        self,
        agent: CodingAgent,
        toolbox: Toolbox,
        verifier: Verifier,
        ui: UIChannel,
        session: SessionContext,
        model_factory: Optional[Callable[[], BaseModel]] = None,
    ):
        self.agent = agent
        self.toolbox = toolbox
        self.verifier = verifier
        self.ui = ui
        self.session = session
        self.model_factory = model_factory
        self.log = session.logger

        self.loop_is_running = False
        self.break_loop = True
        self.trajectory: List[TrajectoryStep] = []
        self.user_first_message = ""
        self.pending_user_messages: List[str] = []
        self.initial_verifier_context = ""
        self.session_diff: Dict[str, SessionDiff] = {}
        self.diff_applied = False
        self.agent_initialized = agent.model is not None
        self._loop_task: Optional[asyncio.Future] = None

    @property
    def backend(self) -> Backend:
        return self.toolbox.transaction.backend

    def initialize(self) -> None:
        handlers = {
            "messages": self._handle_messages,
            "isRunning": lambda: not self.break_loop,
            "diffApplied": lambda: self.diff_applied,
            "hasStarted": lambda: len(self.trajectory) > 0,
            "stop": self._handle_stop,
            "start": self._handle_start,
            "undo": self.undo,
            "redo": self.redo,
            "updateVerificationSteps": self.update_verification_steps,
            "userMessage": self.user_message,
            "getReproVals": lambda: get_repro_values(self.session.repro),
        }
        for name, handler in handlers.items():
            self.ui.register_handler(name, handler)
        self._init_agent()

    def _init_agent(self) -> None:
        if self.agent_initialized or self.model_factory is None:
            return
        try:
            model = self.model_factory()
        except Exception as e:
            self.log.error(f"Failed to create model: {e}")
            self.ui.send_update("errorMsg", f"Failed to initialize model: {e}")
            return
        self.agent.initialize(self.toolbox, model)
        self.agent_initialized = True

    # ------------------------------------------------------------------
    # UI handlers
    # ------------------------------------------------------------------

    def _handle_messages(self) -> List[Dict[str, Any]]:
        return convert_trajectory_to_messages(self.trajectory, self.pending_user_messages)

    def _handle_stop(self) -> bool:
        self.end_loop()
        return True

    def _handle_start(self) -> bool:
        self.start_loop()
        return True

    def user_message(self, message: str) -> bool:
        if not self.user_first_message and not self.trajectory:
            self.user_first_message = message
            self.trajectory.append(TrajectoryStep(role="user", content=message, thought=message))
            self.trajectory_updated()
            self.start_loop()
            return True
        if not self.loop_is_running:
            self._update_message_after_pause_or_done(message)
            self.start_loop()
            return True
        self.pending_user_messages.append(message)
        self.trajectory_updated()
        return True

    def undo(self, state_id: Optional[str] = None) -> bool:
        try:
            self.agent.undo(state_id or None, keep_final_state=True, keep_history=True)
            self.diff_applied = False
        except Exception as e:
            self.log.exception("Undo failed")
            self.ui.send_update("errorMsg", str(e))
            return False
        return True

    def redo(self) -> bool:
        try:
            redo(self.backend, self.session_diff)
            self.diff_applied = True
        except Exception as e:
            self.log.exception("Redo failed")
            self.ui.send_update("errorMsg", str(e))
            return False
        return True

    def update_verification_steps(self, values: Dict[str, Any]) -> bool:
        if all(not str(v or "") for v in values.values()):
            return True
        repro_values = ReproValues.from_dict(values)
        try:
            steps = repro_values_to_steps(repro_values, self.session.repro)
        except ValueError as e:
            self.ui.send_update("errorMsg", str(e))
            return False
        save_repro_values(values, persist=self.session.persist_repro, config=self.session.repro)
        self.verifier.set_verification_steps(steps)
        return True

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    async def reset_progress(self) -> bool:
        self.end_loop()
        await self.wait_until_idle()
        self.agent.undo()
        self.agent.reset()
        self.trajectory = []
        self.break_loop = True
        self.user_first_message = ""
        self.pending_user_messages = []
        self.initial_verifier_context = ""
        self.session_diff = {}
        self.diff_applied = False
        self.trajectory_updated()
        return True

    async def setup_agent_context(self) -> None:
        if not self.initial_verifier_context and self.verifier.has_steps():
            if not self.trajectory:
                self.trajectory.append(TrajectoryStep(
                    role="user",
                    content="No additional context provided",
                    thought="No additional context provided",
                ))
            self.trajectory[0].actions = [{"toolName": "Verify", "params": []}]
            self.trajectory_updated()
            self.initial_verifier_context = (await self.verifier.verify()).logs
            self.trajectory[0].observations = [self.initial_verifier_context]
            self.trajectory_updated()

        self.agent.set_task_context(TaskContext(
            issue=f"{self.user_first_message}\n\n{self.initial_verifier_context}",
            user_message=self.user_first_message,
            files=[],
        ))

    def start_loop(self) -> None:
        self._init_agent()
        if not self.agent_initialized:
            self.ui.send_update("errorMsg", "Set your AWS credentials and model to start")
            return
        self.break_loop = False
        self.agent.resume()
        self.ui.send_update("isRunning", True)
        if not self.loop_is_running:
            self.loop_is_running = True
            self._loop_task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            await self.setup_agent_context()
        except Exception as e:
            self.log.exception("Initial verification failed")
            self.ui.send_update("errorMsg", str(e))
            self.loop_is_running = False
            self.loop_ended()
            return
        await self.loop()

    def end_loop(self) -> None:
        self.break_loop = True
        self.agent.cancel()

    def loop_ended(self) -> None:
        self.break_loop = True
        self.ui.send_update("isRunning", False)

    async def wait_until_idle(self) -> None:
        if self._loop_task is not None:
            await self._loop_task

    def _update_message_after_pause_or_done(self, user_message: str) -> None:
        message = user_message
        if self.session_diff:
            template = (
                self.agent.templates.post_applied_diff_template if self.diff_applied
                else self.agent.templates.post_reverted_diff_template
            )
            message = interpolate(template, {"user_message": user_message})
        self.agent.set_observation(message)
        self.trajectory.append(TrajectoryStep(
            role="user", content=user_message, thought=user_message, observations=[message],
        ))
        self.trajectory_updated()

    def _stream_callback(self, accumulated: str) -> None:
        self.agent.check_interrupt()
        if self.break_loop:
            raise InterruptError("Agent loop interrupted")
        step = parse_thought_action(accumulated, stream=True)
        self.ui.send_update("streamingMessage", {
            "id": str(len(self.trajectory)),
            "role": "agent",
            "text": step.thought,
            "actions": [{"toolName": a.tool_name, "params": []} for a in step.actions],
            # params are partial while streaming, so they are shown as output
            "observations": ["\n".join(str(p) for p in a.params) for a in step.actions],
        })

    async def loop(self) -> None:
        self.loop_is_running = True
        exit_reason = ""
        final_summary = ""
        agent_ended = False
        done_function = self.agent.templates.done_function
        max_iterations = self.session.app.max_iterations
        turns = 0

        while not self.break_loop:
            if turns >= max_iterations:
                exit_reason = f"Stopped after reaching the maximum of {max_iterations} steps."
                self.ui.send_update("errorMsg", exit_reason)
                break
            turns += 1
            self.ui.send_update("streamingMessage", {
                "id": str(len(self.trajectory)), "role": "agent", "text": "", "actions": [],
            })
            try:
                state = AgentStateInfo(working_dir=self.session.working_directory)
                on_chunk = self._stream_callback if self.session.app.stream_responses else None
                step = await self.agent.forward(state, on_chunk)
            except InterruptError:
                self.log.info("Agent loop interrupted")
                break
            except Exception as e:
                self.log.exception("Agent loop error")
                exit_reason = str(e) or type(e).__name__
                self.ui.send_update("errorMsg", exit_reason)
                break

            self.log.info(f"STEP {step.thought!r} {[a.to_dict() for a in step.actions]}")
            if step.actions and step.actions[0].tool_name == done_function:
                final_summary = step.thought
                self.agent.state = AgentState.DONE
                agent_ended = True
                break

            self.trajectory.append(TrajectoryStep(
                role="agent",
                content=step.output or "",
                thought=step.thought,
                actions=[a.to_dict() for a in step.actions],
            ))
            traj_idx = len(self.trajectory) - 1
            result = await self.toolbox.execute_actions(step.actions)
            observation = SEPARATOR.join(result.observations)
            if self.pending_user_messages:
                observation += f"{SEPARATOR}Feedback from the user:\n"
                observation += "\n".join(self.pending_user_messages)
                for message in self.pending_user_messages:
                    self.trajectory.append(TrajectoryStep(role="user", content=message, thought=message))
                self.pending_user_messages = []
                self.trajectory_updated()
            self.agent.set_observation(observation)
            self.agent.update_edit_info(result.edit_info)
            self.agent.update_actions_failed(result.failed)
            self.trajectory[traj_idx].observations = result.observations
            self.trajectory_updated()

        # the diff is kept so the reverted edits can be re-applied with redo
        self.session_diff = historical_diff(self.agent.history, self.backend)
        self.diff_applied = False
        if exit_reason:
            self.trajectory.append(TrajectoryStep(
                role="agent", content=exit_reason, thought=exit_reason,
                actions=[{"toolName": "Exit", "params": []}],
            ))
        elif agent_ended:
            if not self.session_diff:
                summary = final_summary or "Completed. No changes were made"
                self.trajectory.append(TrajectoryStep(
                    role="agent", content=summary, thought=summary,
                    actions=[{"toolName": "Done", "params": []}],
                ))
            else:
                summary = final_summary or "Session ended"
                self.trajectory.append(TrajectoryStep(
                    role="agent", content=summary, thought=summary,
                    actions=[{"toolName": "Exit", "params": []}],
                    ws_diffs={
                        "wsRoot": self.backend.working_directory,
                        "diffs": {path: diff.to_dict() for path, diff in self.session_diff.items()},
                    },
                ))

        # edits are undone by default, the user re-applies them with redo
        self.agent.undo(None, keep_final_state=True, keep_history=True)
        self.trajectory_updated()
        self.loop_is_running = False
        self.loop_ended()

    def trajectory_updated(self) -> None:
        self.ui.send_update("messages", convert_trajectory_to_messages(self.trajectory, self.pending_user_messages))


# ============================================================
# Session wiring
# ============================================================

def create_coordinator(
    session: SessionContext,
    ui: UIChannel,
    model: Optional[BaseModel] = None,
    model_factory: Optional[Callable[[], BaseModel]] = None,
    backend: Optional[Backend] = None,
) -> Coordinator:
    """Build backend, diagnostics, edit transaction, verifier, toolbox and agent for a session."""
    backend = backend or LocalBackend(session.working_directory)
    diagnostics = LocalDiagnostics(backend)
    formatter = CommandFormatter(session.app.format_command) if session.app.format_command else None
    transaction = EditTransaction(
        backend,
        diagnostics=diagnostics,
        formatter=formatter,
        settle_delay=session.app.diagnostics_settle_delay,
        diagnostics_timeout=session.app.diagnostics_timeout,
        ignore_sources=session.app.diagnostic_ignore_sources,
    )
    verifier = Verifier(session.working_directory, cooldown=session.app.verify_cooldown)
    agent = CodingAgent(
        templates=session.templates,
        max_history_messages=session.app.history_max_messages,
        keep_first_messages=session.app.history_keep_first,
        max_format_retries=session.app.max_format_retries,
    )
    toolbox = build_default_toolbox(backend, transaction, verifier=verifier, backtrack_fn=agent.undo)
    if model is not None:
        agent.initialize(toolbox, model)
    else:
        agent.toolbox = toolbox

    try:
        steps = repro_values_to_steps(ReproValues.from_dict(get_repro_values(session.repro)), session.repro)
    except ValueError as e:
        session.logger.warning(f"Ignoring configured repro values: {e}")
        steps = []
    if steps:
        verifier.set_verification_steps(steps)

    coordinator = Coordinator(agent, toolbox, verifier, ui, session, model_factory=model_factory)
    coordinator.initialize()
    return coordinator
