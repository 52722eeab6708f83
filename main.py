"""
Bedrock Repro - terminal host for the coding agent.
Renders the coordinator's trajectory and forwards user input to it.
"""

import argparse
import difflib
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import VerticalScroll
from textual.widgets import Header, Footer, Input, Static, Collapsible
from textual import on

from rich.text import Text
from rich.table import Table
from rich.markup import escape as rich_escape

from config import app_config, model_config
from coordinator import Coordinator, LocalUIChannel, SessionContext, create_coordinator
from model_service import BedrockModel

# Configure logging to file so it doesn't interfere with the TUI
logging.basicConfig(
    filename=app_config.log_file,
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ============================================================
# Constants
# ============================================================

TOOL_ICONS = {
    "ReadFile": "\U0001f4c4 ",
    "ReplaceText": "\U0001f527 ",
    "CreateFile": "✏️ ",
    "DeleteFile": "✗ ",
    "RenameFile": "⇄ ",
    "FindTextInFiles": "\U0001f50d ",
    "FindFiles": "\U0001f50e ",
    "ListDirectoryRecursively": "\U0001f4c2 ",
    "Verify": "▶ ",
}

# Observations longer than this are collapsed
COLLAPSE_LINE_THRESHOLD = 8

# /command -> repro value it sets
REPRO_COMMANDS = {
    "/build": "build_command",
    "/test": "test_command",
    "/expect": "expected_instruction",
    "/expect-status": "expected_status",
    "/expect-body": "expected_body",
}


def render_session_diff(diffs: Dict[str, Dict[str, Any]]) -> str:
    """Unified diff of every file in a session diff."""
    chunks: List[str] = []
    for path, diff in diffs.items():
        before = (diff.get("initialText") or "").splitlines(keepends=True)
        after = (diff.get("currentText") or "").splitlines(keepends=True)
        from_path = diff.get("initialPath") or path
        if diff.get("created"):
            from_path = "/dev/null"
        to_path = "/dev/null" if diff.get("deleted") else (diff.get("currentPath") or path)
        chunks.append("".join(difflib.unified_diff(before, after, fromfile=from_path, tofile=to_path)))
    return "\n".join(c for c in chunks if c)


# ============================================================
# TUI Application
# ============================================================

class BedrockReproApp(App):
    """Bedrock Repro - Coding Agent TUI"""

    TITLE = app_config.title
    ALLOW_SELECT = True

    CSS = """
    Screen {
        background: #0d1117;
    }

    #output-scroll {
        height: 1fr;
        border: none;
        padding: 1 2;
        scrollbar-size: 1 1;
        scrollbar-color: #30363d;
    }

    #output-scroll > Static {
        width: 100%;
        height: auto;
    }

    #output-scroll > Collapsible {
        width: 100%;
        height: auto;
        margin: 0 0 0 3;
    }

    CollapsibleTitle {
        color: #6e7681;
        background: transparent;
        padding: 0;
        height: 1;
    }

    .stream-live {
        color: #8b949e;
        margin: 0 0 0 3;
        padding: 0 1;
        border-left: tall #6e40c9;
        height: auto;
    }

    #user-input {
        dock: bottom;
        margin: 0 2 1 2;
        border: tall #30363d;
        background: #161b22;
        color: #c9d1d9;
        padding: 0 1;
    }

    #user-input:focus {
        border: tall #58a6ff;
    }

    #status-bar {
        dock: bottom;
        height: 1;
        background: #161b22;
        color: #6e7681;
        padding: 0 2;
    }
    """

    BINDINGS = [
        Binding("ctrl+c", "stop_or_quit", "Stop / Quit", priority=True),
        Binding("ctrl+l", "clear_screen", "Clear"),
    ]

    def __init__(self, working_directory: str = ".", **kwargs):
        super().__init__(**kwargs)
        self.working_directory = os.path.abspath(working_directory)
        self.channel = LocalUIChannel()
        self.channel.subscribe(self._on_update)
        self._coordinator: Optional[Coordinator] = None
        self._stream_widget: Optional[Static] = None
        self._widget_counter = 0
        self.is_running = False

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static("", id="status-bar")
        yield VerticalScroll(id="output-scroll")
        yield Input(
            placeholder=" ❯ Describe the issue to fix  (/help for commands)",
            id="user-input",
        )
        yield Footer()

    # ============================================================
    # Output helpers -- write to the scroll area
    # ============================================================

    def _next_id(self, prefix: str = "out") -> str:
        self._widget_counter += 1
        return f"{prefix}-{self._widget_counter}"

    def _log(self, renderable) -> None:
        """Append a renderable to the output scroll area."""
        scroll = self.query_one("#output-scroll", VerticalScroll)
        scroll.mount(Static(renderable, id=self._next_id()))
        scroll.scroll_end(animate=False)

    def _log_collapsible(self, title: str, content: str, collapsed: bool = True) -> None:
        scroll = self.query_one("#output-scroll", VerticalScroll)
        body = Static(Text(content, style="#8b949e"), id=self._next_id("body"))
        scroll.mount(Collapsible(body, title=title, collapsed=collapsed, id=self._next_id("coll")))
        scroll.scroll_end(animate=False)

    def _clear_output(self) -> None:
        scroll = self.query_one("#output-scroll", VerticalScroll)
        scroll.remove_children()
        self._stream_widget = None

    def _update_status(self) -> None:
        status = self.query_one("#status-bar", Static)
        steps = "verify: on" if self._coordinator and self._coordinator.verifier.has_steps() else "verify: off"
        parts = [model_config.model_id, steps, "running" if self.is_running else "idle"]
        status.update(" · ".join(parts))

    # ============================================================
    # Lifecycle
    # ============================================================

    def on_mount(self) -> None:
        session = SessionContext(self.working_directory, logger=logging.getLogger("session"))
        self._coordinator = create_coordinator(session, self.channel, model_factory=BedrockModel)
        self._log(Text.from_markup(
            "\n[bold #58a6ff]bedrock[/bold #58a6ff][bold #f0f6fc] repro[/bold #f0f6fc]"
        ))
        self._log(Text.from_markup(f"[#6e7681]dir: {rich_escape(self.working_directory)}[/#6e7681]\n"))
        self._update_status()
        self.query_one("#user-input", Input).focus()

    # ============================================================
    # Updates from the coordinator
    # ============================================================

    def _on_update(self, name: str, value: Any) -> None:
        if name == "messages":
            self._render_messages(value)
        elif name == "streamingMessage":
            self._render_stream(value)
        elif name == "isRunning":
            self.is_running = bool(value)
            self._update_status()
        elif name == "errorMsg":
            self._log(Text.from_markup(f"   [bold #f85149]✗ {rich_escape(str(value))}[/bold #f85149]"))

    def _render_stream(self, message: Dict[str, Any]) -> None:
        text = message.get("text", "")
        actions = ", ".join(a["toolName"] for a in message.get("actions", []))
        content = text + (f"\n▶ {actions}" if actions else "")
        if self._stream_widget is None:
            scroll = self.query_one("#output-scroll", VerticalScroll)
            self._stream_widget = Static(Text(content), classes="stream-live", id=self._next_id("stream"))
            scroll.mount(self._stream_widget)
        else:
            self._stream_widget.update(Text(content))
        self.query_one("#output-scroll", VerticalScroll).scroll_end(animate=False)

    def _render_messages(self, messages: List[Dict[str, Any]]) -> None:
        self._clear_output()
        for message in messages:
            role = message.get("role")
            text = message.get("text") or ""
            if role in ("user", "user-pending"):
                style = "#6e7681" if role == "user-pending" else "#c9d1d9"
                self._log(Text.from_markup(f"\n[bold #f0f6fc]❯ [/bold #f0f6fc][{style}]{rich_escape(text)}[/{style}]"))
            else:
                self._log(Text(text, style="#c9d1d9"))
            actions = message.get("actions") or []
            observations = message.get("observations") or []
            for action in actions:
                name = action.get("toolName", "")
                params = ", ".join(str(p) for p in action.get("params", []))
                icon = TOOL_ICONS.get(name, "• ")
                self._log(Text.from_markup(f"   [#58a6ff]{icon}{rich_escape(name)}[/#58a6ff]([#8b949e]{rich_escape(params)}[/#8b949e])"))
            for observation in observations:
                lines = observation.split("\n")
                if len(lines) > COLLAPSE_LINE_THRESHOLD:
                    self._log_collapsible(f"{lines[0][:80]} ({len(lines)} lines)", observation)
                else:
                    self._log(Text(observation, style="#8b949e"))
            if message.get("wsDiffs"):
                diff_text = render_session_diff(message["wsDiffs"].get("diffs", {}))
                self._log_collapsible("Changes (reverted, /redo to apply)", diff_text, collapsed=False)

    # ============================================================
    # Input Handling
    # ============================================================

    @on(Input.Submitted, "#user-input")
    async def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value.strip()
        self.query_one("#user-input", Input).value = ""
        if not text:
            return
        if text.startswith("/"):
            await self._handle_command(text)
            return
        await self.channel.request("userMessage", text)

    async def _handle_command(self, command: str) -> None:
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "/help":
            tbl = Table.grid(padding=(0, 2))
            tbl.add_column(style="bold #58a6ff")
            tbl.add_column(style="#8b949e")
            tbl.add_row("/stop", "Stop the agent loop")
            tbl.add_row("/start", "Resume the agent loop")
            tbl.add_row("/undo [id]", "Undo edits back to state id (all if omitted)")
            tbl.add_row("/redo", "Re-apply the session changes")
            tbl.add_row("/build <cmd>", "Command that builds / starts the app")
            tbl.add_row("/test <cmd>", "Command that reproduces the issue (e.g. curl)")
            tbl.add_row("/expect <text>", "What a correct result looks like")
            tbl.add_row("/expect-status <code>", "Expected HTTP status of a curl test")
            tbl.add_row("/expect-body <json>", "Expected JSON subset of a curl test")
            tbl.add_row("/repro", "Show the repro values")
            tbl.add_row("/reset", "Undo everything and start over")
            tbl.add_row("/clear", "Clear the screen")
            tbl.add_row("/quit", "Exit")
            self._log(tbl)

        elif cmd == "/stop":
            await self.channel.request("stop")
        elif cmd == "/start":
            await self.channel.request("start")
        elif cmd == "/undo":
            if await self.channel.request("undo", arg or None):
                self._log(Text("   ↺ Undone", style="#3fb950"))
        elif cmd == "/redo":
            if await self.channel.request("redo"):
                self._log(Text("   ✓ Changes applied", style="#3fb950"))

        elif cmd in REPRO_COMMANDS:
            values = await self.channel.request("getReproVals")
            values[REPRO_COMMANDS[cmd]] = arg
            if await self.channel.request("updateVerificationSteps", values):
                self._log(Text(f"   ✓ {REPRO_COMMANDS[cmd]} = {arg}", style="#3fb950"))
            self._update_status()

        elif cmd == "/repro":
            tbl = Table.grid(padding=(0, 2))
            tbl.add_column(style="bold #8b949e", justify="right")
            tbl.add_column(style="#c9d1d9")
            for key, value in (await self.channel.request("getReproVals")).items():
                tbl.add_row(key, value or "-")
            self._log(tbl)

        elif cmd == "/reset":
            if self._coordinator:
                await self._coordinator.reset_progress()
            self._log(Text("   ✓ Session reset.", style="#3fb950"))

        elif cmd == "/clear":
            self._clear_output()
        elif cmd == "/quit":
            self.exit()
        else:
            self._log(Text(f"   Unknown command: {cmd}  (/help for commands)", style="#e3b341"))

    # ============================================================
    # Actions
    # ============================================================

    async def action_stop_or_quit(self) -> None:
        if self.is_running:
            await self.channel.request("stop")
            self._log(Text.from_markup("   [italic #e3b341]stopping…[/italic #e3b341]"))
        else:
            self.exit()

    def action_clear_screen(self) -> None:
        self._clear_output()


# ============================================================
# Entry Point
# ============================================================

def main():
    parser = argparse.ArgumentParser(
        description="Bedrock Repro - autonomous issue reproduction and fixing agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                    Run in current directory
  python main.py -d ~/my-project    Run in a specific project directory
        """,
    )
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument("--model-id", default=None, help="Bedrock model id override")

    args = parser.parse_args()
    if args.model_id:
        model_config.model_id = args.model_id

    working_dir = os.path.abspath(args.directory)
    if not os.path.isdir(working_dir):
        print(f"Error: {working_dir} is not a directory")
        sys.exit(1)

    app = BedrockReproApp(working_directory=working_dir)
    app.run()


if __name__ == "__main__":
    main()
