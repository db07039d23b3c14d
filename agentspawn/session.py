"""
A named, resumable conversation with the agent CLI.

The agent CLI is one-shot: every prompt spawns a fresh process. Continuity
comes from the conversation id, passed as ``--session-id`` on the first
prompt and ``--resume`` on every later one, so the CLI threads the
invocations into one conversation.
"""

import asyncio
import codecs
import inspect
import json
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from .config import DEFAULT_AGENT_BINARY, DEFAULT_PROMPT_TIMEOUT_MS, DEFAULT_SHUTDOWN_TIMEOUT_MS
from .errors import (
    AlreadyProcessingError,
    NonZeroExitError,
    PromptTimeoutError,
    SessionNotRunningError,
    SpawnFailedError,
)
from .messaging import (
    PromptCompleteEvent,
    PromptErrorEvent,
    PromptTimeoutEvent,
    SessionListener,
    notify,
)
from .restart_policy import classify_returncode
from .sandbox.base import SandboxIsolator, SandboxOptions
from .sandbox.filesystem_isolation import NoOpIsolator

logger = logging.getLogger(__name__)

RESPONSE_PREVIEW_LENGTH = 200

# stream-json lines can carry whole file contents
STREAM_LIMIT = 16 * 1024 * 1024

STDERR_READ_SIZE = 4096

HistoryRecorder = Callable[[str, str, str], Union[None, Awaitable[None]]]
SettledHook = Callable[["Session"], None]


class SessionState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass
class SessionConfig:
    """Caller-supplied settings for one session."""

    name: str
    working_directory: str
    env: Optional[dict[str, str]] = None
    permission_mode: Optional[str] = None
    system_prompt: Optional[str] = None

    # 0 disables the per-prompt timer
    prompt_timeout_ms: int = DEFAULT_PROMPT_TIMEOUT_MS

    # Grace period between SIGTERM and SIGKILL for a timed-out or cancelled
    # prompt. 0 disables the escalation: the process only ever gets SIGTERM.
    shutdown_timeout_ms: int = DEFAULT_SHUTDOWN_TIMEOUT_MS

    agent_binary: str = DEFAULT_AGENT_BINARY


class SessionInfo(BaseModel):
    name: str
    pid: int = 0
    state: SessionState
    started_at: Optional[datetime] = None
    working_directory: str
    exit_code: Optional[int] = None
    permission_mode: Optional[str] = None
    prompt_count: int = 0
    conversation_id: str
    sandbox_backend: str
    sandbox_level: str
    sandboxed: bool


class _PromptRun:
    """Bookkeeping for one in-flight prompt.

    ``settled`` is the single settlement guard: the timeout callback and the
    exit path both claim it before producing an outcome, and whichever comes
    second does nothing.
    """

    def __init__(self, prompt_text: str):
        self.prompt_text = prompt_text
        self.chunks: list[str] = []
        self.stderr_chunks: list[str] = []
        self.process: Optional[asyncio.subprocess.Process] = None
        self.timer: Optional[asyncio.TimerHandle] = None
        self.kill_timer: Optional[asyncio.TimerHandle] = None
        self.settled = False
        self.timed_out = False
        self.cancelled = False
        self.partial_response = ""
        self.started = time.monotonic()

    def claim(self) -> bool:
        if self.settled:
            return False
        self.settled = True
        return True

    @property
    def response(self) -> str:
        return "".join(self.chunks)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def extract_assistant_text(line: bytes) -> list[str]:
    """
    Pull the text segments out of one stream-json output line.

    Only ``{"type": "assistant", "message": {"content": [{"type": "text",
    "text": ...}]}}`` contributes; anything else (other event types,
    non-text blocks, non-JSON noise) yields nothing.
    """
    line = line.strip()
    if not line:
        return []
    try:
        event = json.loads(line)
    except ValueError:
        logger.debug(f"Ignoring non-JSON agent output: {line[:80]!r}")
        return []
    if not isinstance(event, dict) or event.get("type") != "assistant":
        return []
    message = event.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def _signal_process(process: Optional[asyncio.subprocess.Process], force: bool = False):
    if process is None or process.returncode is not None:
        return
    try:
        if force:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        pass


class Session:
    """One named conversation, serializing prompts to the agent CLI."""

    def __init__(
        self,
        config: SessionConfig,
        isolator: Optional[SandboxIsolator] = None,
        conversation_id: Optional[str] = None,
        prompt_count: int = 0,
        history: Optional[HistoryRecorder] = None,
        on_settled: Optional[SettledHook] = None,
    ):
        """
        Args:
            config: Session settings
            isolator: Sandbox backend the agent runs under; unsandboxed if None
            conversation_id: Existing conversation to continue (adoption);
                a new UUID is generated if None
            prompt_count: Prompts already sent in that conversation
            history: Called with (session_name, prompt, response_preview)
                after each completed prompt
            on_settled: Called with the session once a prompt has settled and
                its process has exited. Unlike listener errors, its
                exceptions propagate out of send_prompt.
        """
        self.config = config
        self.isolator = isolator or NoOpIsolator(
            SandboxOptions(
                session_name=config.name,
                working_directory=config.working_directory,
                agent_binary=config.agent_binary,
            )
        )
        self._conversation_id = conversation_id or str(uuid.uuid4())
        self._prompt_count = prompt_count
        self._history = history
        self._on_settled = on_settled
        self._state = SessionState.STOPPED
        self._started_at: Optional[datetime] = None
        self._exit_code: Optional[int] = None
        self._active: Optional[_PromptRun] = None
        self._listeners: list[SessionListener] = []

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def prompt_count(self) -> int:
        return self._prompt_count

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_processing(self) -> bool:
        return self._active is not None

    async def start(self) -> None:
        """Mark the session available for prompts. No process is spawned here."""
        if self._state is SessionState.RUNNING:
            return
        self._state = SessionState.RUNNING
        self._started_at = datetime.now(timezone.utc)
        self._exit_code = None

        if not self.isolator.is_sandboxed():
            logger.warning(f"Session '{self.name}' is running unsandboxed")
        logger.info(
            f"Session '{self.name}' started (conversation {self._conversation_id}, "
            f"sandbox {self.isolator.get_backend()}/{self.isolator.get_level()})"
        )

    async def stop(self) -> None:
        """Stop the session, terminating an in-flight prompt's process."""
        if self._state is SessionState.STOPPED:
            return
        self._state = SessionState.STOPPED

        run = self._active
        if run is not None:
            logger.info(f"Stopping session '{self.name}' with a prompt in flight")
            _signal_process(run.process)
        logger.info(f"Session '{self.name}' stopped")

    def mark_crashed(self, exit_code: Optional[int]) -> None:
        """Record an exit the session did not ask for. Never raises."""
        if self._state is SessionState.RUNNING:
            self._state = SessionState.CRASHED
            self._exit_code = exit_code
            logger.warning(f"Session '{self.name}' crashed (exit code {exit_code})")

    def build_agent_args(self) -> list[str]:
        """Arguments for the next agent invocation."""
        args = ["--print", "--output-format", "stream-json", "--verbose"]
        if self._prompt_count == 0:
            args.extend(["--session-id", self._conversation_id])
        else:
            args.extend(["--resume", self._conversation_id])
        if self.config.permission_mode:
            args.extend(["--permission-mode", self.config.permission_mode])
        if self.config.system_prompt:
            args.extend(["--append-system-prompt", self.config.system_prompt])
        return args

    def _build_env(self) -> dict[str, str]:
        return {**os.environ, **(self.config.env or {})}

    async def send_prompt(self, text: str) -> str:
        """
        Send one prompt and wait for the agent's reply.

        Args:
            text: Prompt text, written to the agent's stdin

        Returns:
            The concatenated assistant text

        Raises:
            SessionNotRunningError: The session is not running
            AlreadyProcessingError: A previous prompt has not settled
            SpawnFailedError: The agent process could not be created
            NonZeroExitError: The agent exited with a failure status
            PromptTimeoutError: The prompt exceeded prompt_timeout_ms

        Cancelling the call terminates the agent process and waits for it to
        exit before the session accepts another prompt.
        """
        if self._state is not SessionState.RUNNING:
            raise SessionNotRunningError(self.name)
        if self._active is not None:
            raise AlreadyProcessingError(self.name)

        run = _PromptRun(text)
        self._active = run
        try:
            return await self._run_prompt(run)
        finally:
            self._active = None
            if run.settled and self._on_settled is not None:
                self._after_settle(run)

    async def _run_prompt(self, run: _PromptRun) -> str:
        command, args = self.isolator.wrap_command(
            self.config.agent_binary, self.build_agent_args()
        )
        notify(self._listeners, "on_prompt_start", self.name, run.prompt_text)
        logger.debug(f"Session '{self.name}' spawning {command} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=self.config.working_directory,
                env=self._build_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            error = SpawnFailedError(self.name, str(e))
            run.claim()
            logger.error(str(error))
            notify(
                self._listeners,
                "on_prompt_error",
                PromptErrorEvent(
                    session_name=self.name,
                    prompt_text=run.prompt_text,
                    error=str(error),
                ),
            )
            raise error from e

        run.process = process
        self._prompt_count += 1

        timeout_ms = self.config.prompt_timeout_ms
        if timeout_ms > 0:
            loop = asyncio.get_running_loop()
            run.timer = loop.call_later(timeout_ms / 1000, self._on_timeout, run)

        try:
            await self._write_prompt(process, run.prompt_text)
            await asyncio.gather(self._read_stdout(run), self._read_stderr(run))
            returncode = await process.wait()
        except asyncio.CancelledError:
            await self._on_cancel(run)
            raise
        return await self._on_exit(run, returncode)

    async def _write_prompt(self, process: asyncio.subprocess.Process, text: str):
        try:
            process.stdin.write(text.encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The process died before reading its input; its exit status says why
            logger.debug(f"Session '{self.name}' could not write prompt: {e}")
        finally:
            process.stdin.close()

    async def _read_stdout(self, run: _PromptRun):
        stdout = run.process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError:
                logger.warning(
                    f"Session '{self.name}' skipped an output line over {STREAM_LIMIT} bytes"
                )
                continue
            if not line:
                break
            if run.settled:
                # Drain the pipe, but nothing may follow the terminal event
                continue
            for segment in extract_assistant_text(line):
                run.chunks.append(segment)
                notify(self._listeners, "on_data", self.name, segment)

    async def _read_stderr(self, run: _PromptRun):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr = run.process.stderr
        while True:
            data = await stderr.read(STDERR_READ_SIZE)
            if not data:
                break
            chunk = decoder.decode(data)
            if not chunk or run.settled:
                continue
            run.stderr_chunks.append(chunk)
            notify(self._listeners, "on_stderr", self.name, chunk)

    def _on_timeout(self, run: _PromptRun):
        if not run.claim():
            return
        run.timer = None
        run.timed_out = True
        run.partial_response = run.response
        timeout_ms = self.config.prompt_timeout_ms

        logger.warning(
            f"Prompt in session '{self.name}' timed out after {timeout_ms}ms; terminating"
        )
        notify(
            self._listeners,
            "on_prompt_timeout",
            PromptTimeoutEvent(
                session_name=self.name,
                timeout_ms=timeout_ms,
                prompt_text=run.prompt_text,
                partial_response=run.partial_response,
            ),
        )
        self._terminate(run)

    def _after_settle(self, run: _PromptRun):
        if not run.cancelled:
            self._on_settled(self)
            return
        # The caller sees the cancellation, so a failure here can only be logged
        try:
            self._on_settled(self)
        except Exception:
            logger.exception(f"Settle hook for session '{self.name}' failed after cancellation")

    def _terminate(self, run: _PromptRun):
        _signal_process(run.process)
        if self.config.shutdown_timeout_ms > 0:
            loop = asyncio.get_running_loop()
            run.kill_timer = loop.call_later(
                self.config.shutdown_timeout_ms / 1000, _signal_process, run.process, True
            )

    async def _on_cancel(self, run: _PromptRun):
        if run.timer is not None:
            run.timer.cancel()
            run.timer = None

        run.cancelled = True
        if run.claim():
            logger.info(f"Prompt in session '{self.name}' cancelled; terminating")
            notify(
                self._listeners,
                "on_prompt_error",
                PromptErrorEvent(
                    session_name=self.name,
                    prompt_text=run.prompt_text,
                    error="Prompt cancelled",
                ),
            )
            self._terminate(run)

        # The session stays busy until the process is gone
        try:
            await run.process.wait()
        finally:
            if run.kill_timer is not None:
                run.kill_timer.cancel()
                run.kill_timer = None

    async def _on_exit(self, run: _PromptRun, returncode: int) -> str:
        if run.kill_timer is not None:
            run.kill_timer.cancel()
            run.kill_timer = None

        if not run.claim():
            # The timeout already delivered the terminal notification
            raise PromptTimeoutError(
                self.name,
                self.config.prompt_timeout_ms,
                run.prompt_text,
                run.partial_response,
            )

        if run.timer is not None:
            run.timer.cancel()
            run.timer = None

        if returncode == 0:
            response = run.response
            logger.debug(
                f"Session '{self.name}' prompt completed in {run.elapsed_ms()}ms"
            )
            notify(
                self._listeners,
                "on_prompt_complete",
                PromptCompleteEvent(
                    session_name=self.name,
                    prompt_text=run.prompt_text,
                    response=response,
                    duration_ms=run.elapsed_ms(),
                ),
            )
            await self._record_history(run.prompt_text, response)
            return response

        status = classify_returncode(returncode)
        if returncode < 0:
            error = NonZeroExitError(
                self.name,
                None,
                signal_name=_signal_name(-returncode),
                exit_status=status,
                stderr="".join(run.stderr_chunks),
            )
            exit_code = None
        else:
            error = NonZeroExitError(
                self.name,
                returncode,
                exit_status=status,
                stderr="".join(run.stderr_chunks),
            )
            exit_code = returncode

        logger.error(f"Session '{self.name}': {error}")
        notify(
            self._listeners,
            "on_prompt_error",
            PromptErrorEvent(
                session_name=self.name,
                prompt_text=run.prompt_text,
                error=str(error),
                exit_code=exit_code,
                classification=status.classification.value,
            ),
        )
        raise error

    async def _record_history(self, prompt: str, response: str):
        if self._history is None:
            return
        try:
            result: Any = self._history(
                self.name, prompt, response[:RESPONSE_PREVIEW_LENGTH]
            )
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Failed to record history for session '{self.name}': {e}")

    def get_info(self) -> SessionInfo:
        return SessionInfo(
            name=self.name,
            state=self._state,
            started_at=self._started_at,
            working_directory=self.config.working_directory,
            exit_code=self._exit_code,
            permission_mode=self.config.permission_mode,
            prompt_count=self._prompt_count,
            conversation_id=self._conversation_id,
            sandbox_backend=self.isolator.get_backend(),
            sandbox_level=self.isolator.get_level(),
            sandboxed=self.isolator.is_sandboxed(),
        )
