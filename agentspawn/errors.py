"""
Exception types raised by agentspawn.

Every error carries a stable ``code`` string so callers (TUI, web, scripts)
can branch on the failure kind without matching message text.
"""

from typing import Optional


class AgentSpawnError(Exception):
    """Base class for all agentspawn errors."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class SessionNotFoundError(AgentSpawnError):
    def __init__(self, name: str):
        super().__init__(f"Session '{name}' not found", "SESSION_NOT_FOUND")
        self.session_name = name


class SessionAlreadyExistsError(AgentSpawnError):
    def __init__(self, name: str):
        super().__init__(f"Session '{name}' already exists", "SESSION_EXISTS")
        self.session_name = name


class SessionNotRunningError(AgentSpawnError):
    def __init__(self, name: str):
        super().__init__(f"Session '{name}' is not running", "SESSION_NOT_RUNNING")
        self.session_name = name


class AlreadyProcessingError(AgentSpawnError):
    def __init__(self, name: str):
        super().__init__(
            f"Session '{name}' is already processing a prompt",
            "ALREADY_PROCESSING",
        )
        self.session_name = name


class SessionNotAliveError(AgentSpawnError):
    """The registry names a session whose owning process has exited."""

    def __init__(self, name: str, pid: int):
        super().__init__(
            f"Session '{name}' is not alive (pid {pid} has exited)",
            "SESSION_NOT_ALIVE",
        )
        self.session_name = name
        self.pid = pid


class SpawnFailedError(AgentSpawnError):
    """The agent process could not be created at all."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"Failed to spawn session {name}: {reason}", "SPAWN_FAILED")
        self.session_name = name
        self.reason = reason


class NonZeroExitError(AgentSpawnError):
    """The agent process ran and exited with a failure status.

    ``exit_code`` is None when the process was killed by a signal, in which
    case ``signal_name`` is set instead. ``exit_status`` is the retry
    classification of the termination.
    """

    def __init__(
        self,
        name: str,
        exit_code: Optional[int],
        signal_name: Optional[str] = None,
        exit_status=None,
        stderr: str = "",
    ):
        if exit_code is not None:
            message = f"Claude exited with code {exit_code}"
        else:
            message = f"Claude was terminated by {signal_name or 'an unknown signal'}"
        if exit_status is not None:
            message += f" ({exit_status.reason})"
        super().__init__(message, "NON_ZERO_EXIT")
        self.session_name = name
        self.exit_code = exit_code
        self.signal_name = signal_name
        self.exit_status = exit_status
        self.stderr = stderr


class PromptTimeoutError(AgentSpawnError):
    """A prompt did not finish within the configured timeout.

    ``partial_response`` holds whatever assistant text had been received
    before the process was terminated.
    """

    def __init__(
        self,
        session_name: str,
        timeout_ms: int,
        prompt_text: str,
        partial_response: str = "",
    ):
        super().__init__(
            f'Prompt timed out after {timeout_ms}ms in session "{session_name}"',
            "PROMPT_TIMEOUT",
        )
        self.session_name = session_name
        self.timeout_ms = timeout_ms
        self.prompt_text = prompt_text
        self.partial_response = partial_response


class RegistryCorruptError(AgentSpawnError):
    def __init__(self, path: str):
        super().__init__(f"Registry file is corrupt: {path}", "REGISTRY_CORRUPT")
        self.path = path


class SandboxError(AgentSpawnError):
    """A sandbox backend failed to start, stop or inspect its runtime state."""

    def __init__(self, message: str, code: str = "SANDBOX_ERROR"):
        super().__init__(message, code)


class SandboxConfigurationError(SandboxError):
    """The requested isolation cannot be expressed safely.

    Raised before any agent process is spawned; a session never silently
    degrades to unsandboxed execution because of it.
    """

    def __init__(self, message: str):
        super().__init__(message, "SANDBOX_CONFIG")
