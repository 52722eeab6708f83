"""
Verification steps: spawned processes (build / test commands) and HTTP requests.

Steps run strictly in order; a step that does not become ready aborts the
rest of the sequence. Every started step is stopped afterwards and its
filtered, length-capped log is collected.
"""

import asyncio
import codecs
import http.client
import json
import logging
import os
import re
import signal
import subprocess
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_TIMEOUT = 30.0
DEFAULT_PROCESS_TIMEOUT = 120.0
DEFAULT_GRACEFUL_EXIT_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 10.0
MAX_LOG_CHARS = 2500
MAX_LOG_LINE_CHARS = 1000

DEFAULT_PROCESS_READY_PATTERNS = [
    r"Press CTRL\+C to shut down\.",  # .NET
    r"\(Press CTRL\+C to quit\)",  # Flask / FastAPI (uvicorn)
    r"Quit the server with CONTROL-C\.",  # Django
    r"[Rr]eady in\s*\d*\s*m?s",  # Next.js / Vite
    r"webpack compiled successfully",
]
DEFAULT_PROCESS_FAILED_PATTERNS = [
    r"Syntax\s*[Ee]rror",
    r"Import\s*[Ee]rror",
    r"Module\s*[Ee]rror",
    r"Failed to compile",
]


class LogType(IntEnum):
    STDOUT = 0
    STDERR = 1
    ERROR = 2


@dataclass
class Evaluation:
    logs: str
    passed: bool


@dataclass
class HttpResponse:
    status: int
    reason: str
    headers: Dict[str, str]
    text: str

    def json(self) -> Any:
        return json.loads(self.text)


@dataclass
class LocalProcessStepArgs:
    command: str
    cwd: Optional[str] = None
    ready_keywords: Optional[List[str]] = None
    failure_keywords: Optional[List[str]] = None
    inactivity_timeout: Optional[float] = None
    process_timeout: Optional[float] = None
    log_text_filter: str = ""
    log_type_filters: List[LogType] = field(default_factory=list)
    evaluate_output: Optional[Callable[[str], Evaluation]] = None


@dataclass
class HttpRequestStepArgs:
    method: str
    endpoint: str
    evaluate_response: Callable[[HttpResponse], Evaluation]
    headers: Optional[Dict[str, str]] = None
    body: Any = None
    request_timeout: Optional[float] = None


StepArgs = Union[LocalProcessStepArgs, HttpRequestStepArgs]


@dataclass
class VerifyResult:
    logs: str
    passed: bool


def _keywords_regex(keywords: Optional[List[str]], defaults: List[str]) -> "re.Pattern[str]":
    if keywords:
        return re.compile("|".join(re.escape(k) for k in keywords))
    return re.compile("|".join(defaults))


# ============================================================
# Local process step
# ============================================================

class LocalProcessStep:
    """A shell command whose readiness is decided by its output, exit code or silence."""

    def __init__(
        self,
        command: str,
        cwd: str,
        evaluate_output: Optional[Callable[[str], Evaluation]] = None,
        ready_keywords: Optional[List[str]] = None,
        failure_keywords: Optional[List[str]] = None,
        inactivity_timeout: Optional[float] = None,
        process_timeout: Optional[float] = None,
        log_text_filter: str = "",
        log_type_filters: Optional[List[LogType]] = None,
        graceful_exit_timeout: float = DEFAULT_GRACEFUL_EXIT_TIMEOUT,
    ):
        self.command = command
        self.cwd = cwd
        self.evaluate_output = evaluate_output
        # exit code only decides readiness when the caller gave no ready keywords
        self.ready_configured = bool(ready_keywords)
        self.ready_regex = _keywords_regex(ready_keywords, DEFAULT_PROCESS_READY_PATTERNS)
        self.failure_regex = _keywords_regex(failure_keywords, DEFAULT_PROCESS_FAILED_PATTERNS)
        self.inactivity_timeout = inactivity_timeout or DEFAULT_INACTIVITY_TIMEOUT
        self.process_timeout = process_timeout or DEFAULT_PROCESS_TIMEOUT
        self.graceful_exit_timeout = graceful_exit_timeout
        self.log_text_filter = log_text_filter or ""
        self.log_type_filters = list(log_type_filters or [])

        self.logs: List[Tuple[str, LogType]] = []
        self.proc: Optional[subprocess.Popen] = None
        self.exit_code: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready: Optional[asyncio.Future] = None
        self._exited: Optional[asyncio.Event] = None
        self._inactivity_handle: Optional[asyncio.TimerHandle] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._kill_handle: Optional[asyncio.TimerHandle] = None

    def start(self) -> None:
        """Spawn the command. Must be called from within the running event loop."""
        self._loop = asyncio.get_running_loop()
        self._ready = self._loop.create_future()
        self._exited = asyncio.Event()
        logger.info(f"Starting verification process: {self.command}")
        try:
            self.proc = subprocess.Popen(
                self.command, shell=True, cwd=self.cwd,
                stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                start_new_session=True,  # own process group for clean kill
            )
        except OSError as e:
            self.logs.append((str(e), LogType.ERROR))
            self._set_ready(False)
            self._exited.set()
            return

        readers = [
            threading.Thread(target=self._read_pipe, args=(self.proc.stdout, LogType.STDOUT), daemon=True),
            threading.Thread(target=self._read_pipe, args=(self.proc.stderr, LogType.STDERR), daemon=True),
        ]
        for t in readers:
            t.start()
        threading.Thread(target=self._wait_exit, args=(readers,), daemon=True).start()
        self._timeout_handle = self._loop.call_later(self.process_timeout, self._on_process_timeout)
        self._reset_inactivity_timer()

    # -- threads -------------------------------------------------------

    def _post(self, fn, *args) -> None:
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # event loop already closed
            pass

    def _read_pipe(self, pipe, log_type: LogType) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = os.read(pipe.fileno(), 4096)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    self._post(self._handle_output, text, log_type)
            tail = decoder.decode(b"", final=True)
            if tail:
                self._post(self._handle_output, tail, log_type)
        except (OSError, ValueError):
            pass
        finally:
            pipe.close()

    def _wait_exit(self, readers: List[threading.Thread]) -> None:
        code = self.proc.wait()
        for t in readers:
            t.join(timeout=2.0)
        self._post(self._on_exit, code)

    # -- loop callbacks --------------------------------------------------

    def _set_ready(self, ready: bool) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(ready)
            if self._inactivity_handle is not None:
                self._inactivity_handle.cancel()

    def _reset_inactivity_timer(self) -> None:
        if self._inactivity_handle is not None:
            self._inactivity_handle.cancel()
        # no new output for the whole window means the process has stabilized
        self._inactivity_handle = self._loop.call_later(self.inactivity_timeout, self._set_ready, True)

    def _handle_output(self, text: str, log_type: LogType) -> None:
        self.logs.append((text, log_type))
        if self._ready.done():
            return
        if self.ready_regex.search(text):
            self._set_ready(True)
        elif self.failure_regex.search(text):
            self._set_ready(False)
        else:
            self._reset_inactivity_timer()

    def _on_process_timeout(self) -> None:
        logger.warning(f"Verification process timed out after {self.process_timeout}s: {self.command}")
        self._signal_group(signal.SIGTERM)

    def _on_exit(self, code: int) -> None:
        self.exit_code = code
        if not self.ready_configured:
            self._set_ready(code == 0)
        else:
            self._set_ready(False)
        for handle in (self._inactivity_handle, self._timeout_handle, self._kill_handle):
            if handle is not None:
                handle.cancel()
        self._exited.set()

    def _signal_group(self, sig: int) -> None:
        if self.proc is None or self.proc.poll() is not None:
            return
        try:
            os.killpg(os.getpgid(self.proc.pid), sig)
        except (ProcessLookupError, OSError):
            pass

    # -- public ----------------------------------------------------------

    async def is_ready(self) -> bool:
        if self._ready is None:
            return False
        return await self._ready

    async def stop(self) -> None:
        """Interrupt the process group, kill it after the grace period, wait for exit."""
        if self._exited is None:
            return
        if not self._exited.is_set():
            self._signal_group(signal.SIGINT)
            self._kill_handle = self._loop.call_later(
                self.graceful_exit_timeout, self._signal_group, signal.SIGKILL
            )
            await self._exited.wait()

    def get_logs(
        self,
        text_filter: Optional[str] = None,
        type_filters: Optional[List[LogType]] = None,
        max_chars: int = MAX_LOG_CHARS,
        max_line_chars: int = MAX_LOG_LINE_CHARS,
    ) -> str:
        text_filter = self.log_text_filter if text_filter is None else text_filter
        type_filters = self.log_type_filters if type_filters is None else type_filters
        filtering = bool(text_filter) or bool(type_filters)

        entries = self.logs
        if filtering:
            entries = [
                (text, log_type) for text, log_type in entries
                if (text_filter and re.search(text_filter, text)) or (type_filters and log_type in type_filters)
            ]
            combined = "".join(text for text, _ in entries)
        else:
            # drop overly long lines (minified bundles, base64 blobs)
            combined = "".join(
                "\n".join(line for line in text.split("\n") if len(line) <= max_line_chars)
                for text, _ in entries
            )
        if len(combined) > max_chars:
            combined = "..." + combined[-max_chars:]

        result = f"$ {self.command}\n{combined}"
        if self.evaluate_output is not None:
            try:
                evaluation_logs = self.evaluate_output("".join(text for text, _ in self.logs)).logs
            except Exception as e:
                logger.exception("Output evaluator failed")
                evaluation_logs = f"Test FAIL! Error evaluating output: {e}"
            result += f"\n---- Evaluation ----\n{evaluation_logs}"
        return result


# ============================================================
# HTTP step
# ============================================================

class HttpStep:
    """Single HTTP request judged by an evaluator."""

    def __init__(
        self,
        method: str,
        endpoint: str,
        evaluate_response: Callable[[HttpResponse], Evaluation],
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        request_timeout: Optional[float] = None,
    ):
        self.method = method.upper()
        self.endpoint = endpoint
        self.evaluate_response = evaluate_response
        self.headers = headers
        self.body = body
        self.timeout = request_timeout or DEFAULT_REQUEST_TIMEOUT
        self.response_logs = ""
        self.evaluation_logs: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    def _request(self) -> HttpResponse:
        data = json.dumps(self.body).encode("utf-8") if self.body is not None else None
        headers = {"User-Agent": "BedrockRepro/1.0", **(self.headers or {})}
        if data is not None and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(self.endpoint, data=data, headers=headers, method=self.method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return HttpResponse(resp.status, resp.reason, dict(resp.headers),
                                    resp.read().decode("utf-8", errors="replace"))
        except urllib.error.HTTPError as e:
            # 4xx / 5xx are still responses to evaluate
            return HttpResponse(e.code, str(e.reason), dict(e.headers or {}),
                                e.read().decode("utf-8", errors="replace"))

    async def _run(self) -> bool:
        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(None, self._request)
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            self.response_logs += f"\nError: {e!r}"
            return False
        self.response_logs += f"{response.status} ({response.reason})\n{response.text}"
        try:
            evaluation = self.evaluate_response(response)
        except Exception as e:
            logger.exception("Response evaluator failed")
            self.evaluation_logs = f"Test FAIL! Error evaluating response: {e}"
            return False
        self.evaluation_logs = evaluation.logs
        return evaluation.passed

    def start(self) -> None:
        self._task = asyncio.ensure_future(self._run())

    async def is_ready(self) -> bool:
        if self._task is None:
            return False
        return await self._task

    async def stop(self) -> None:
        pass

    def get_logs(self) -> str:
        request = f"{self.method} {self.endpoint}"
        for key, value in (self.headers or {}).items():
            request += f"\n{key}: {value}"
        if self.body:
            request += f"\nBody: {json.dumps(self.body)}"
        logs = f"---- HTTP Request ----\n{request}\n---- Response ----\n{self.response_logs}"
        if self.evaluation_logs:
            logs += f"\n---- Evaluation ----\n{self.evaluation_logs}"
        return logs


# ============================================================
# Verifier
# ============================================================

class Verifier:
    def __init__(self, working_directory: str = ".", cooldown: float = 0.0):
        self.working_directory = os.path.abspath(working_directory)
        self.cooldown = cooldown
        self.steps: List[StepArgs] = []

    def has_steps(self) -> bool:
        return len(self.steps) > 0

    def set_verification_steps(self, steps: List[StepArgs]) -> None:
        self.steps = list(steps)

    def _build_step(self, args: StepArgs):
        if isinstance(args, LocalProcessStepArgs):
            return LocalProcessStep(
                args.command,
                args.cwd or self.working_directory,
                evaluate_output=args.evaluate_output,
                ready_keywords=args.ready_keywords,
                failure_keywords=args.failure_keywords,
                inactivity_timeout=args.inactivity_timeout,
                process_timeout=args.process_timeout,
                log_text_filter=args.log_text_filter,
                log_type_filters=args.log_type_filters,
            )
        if isinstance(args, HttpRequestStepArgs):
            return HttpStep(
                args.method,
                args.endpoint,
                args.evaluate_response,
                headers=args.headers,
                body=args.body,
                request_timeout=args.request_timeout,
            )
        raise ValueError(f"Invalid step type: {type(args).__name__}")

    async def verify(self) -> VerifyResult:
        """Run every step in order; the first step that is not ready aborts the rest."""
        step_failed = False
        started = []
        logs = ""
        try:
            for args in self.steps:
                step = self._build_step(args)
                step.start()
                started.append(step)
                if not await step.is_ready():
                    step_failed = True
                    break
        finally:
            for step in started:
                await step.stop()
                logs += f"<log>\n{step.get_logs()}\n</log>\n\n"
        if self.cooldown > 0:
            await asyncio.sleep(self.cooldown)
        logger.info(f"Verification finished: {'pass' if not step_failed else 'fail'} ({len(started)} step(s))")
        return VerifyResult(logs, not step_failed)
