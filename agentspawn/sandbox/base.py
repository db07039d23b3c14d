"""
Base classes and interfaces for sandbox implementations.

Every backend expresses the same isolation policy (write containment to the
session's working directory, credential protection, network control and
resource caps) through a different OS primitive. Sessions only ever call
``wrap_command``; lifecycle, introspection and self-testing are shared here.
"""

import asyncio
import logging
import os
import platform
import re
import shlex
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

SandboxBackend = Literal["docker", "bwrap", "sandbox-exec", "none"]
SandboxLevel = Literal["permissive", "standard", "strict"]

SANDBOX_BACKENDS = ("docker", "bwrap", "sandbox-exec", "none")
SANDBOX_LEVELS = ("permissive", "standard", "strict")

# Directory holding the agent CLI's credentials, relative to $HOME
CREDENTIAL_DIR_NAME = ".claude"

CANARY_FILENAME = "agentspawn-canary-write-test"


def safe_session_name(session_name: str) -> str:
    """Session name reduced to characters safe in file and container names."""
    return re.sub(r"[^a-zA-Z0-9_.-]", "-", session_name)


@dataclass(frozen=True)
class SandboxOptions:
    """Options for a session's sandbox. Immutable once the sandbox starts."""

    session_name: str
    working_directory: str
    level: SandboxLevel = "permissive"

    # Resource limits ("512m" style memory, fractional CPUs)
    memory_limit: Optional[str] = None
    cpu_limit: Optional[float] = None

    # Container image (docker only)
    image: Optional[str] = None

    # Executable the agent is launched as
    agent_binary: str = "claude"

    # Environment variable names forwarded into a container; docker copies
    # each value from the environment of the process it spawns
    env_keys: tuple[str, ...] = ()

    def __post_init__(self):
        if self.level not in SANDBOX_LEVELS:
            raise ValueError(
                f"level must be one of {', '.join(SANDBOX_LEVELS)}, got {self.level!r}"
            )


class IsolationTestResult(BaseModel):
    """Outcome of running canary probes through a sandbox.

    ``write_outside_workdir`` and ``read_credential_dir`` are True when the
    probe *succeeded*, i.e. when isolation failed to block it.
    ``read_credential_dir`` is None at the permissive level, where that probe
    is not run.
    """

    backend: str
    level: str
    write_inside_workdir: bool
    write_outside_workdir: bool
    read_credential_dir: Optional[bool] = None
    passed: bool


async def run_tool(*argv: str, timeout: Optional[float] = None) -> tuple[int, str, str]:
    """
    Run a helper binary (docker, which, ...) and collect its output.

    Args:
        argv: Program and arguments, passed without a shell
        timeout: Optional timeout in seconds

    Returns:
        Tuple of (exit_code, stdout, stderr)

    Raises:
        OSError: If the program cannot be executed
        asyncio.TimeoutError: If the timeout elapses (the process is killed)
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


class SandboxIsolator(ABC):
    """Abstract base class for a session's sandbox backend."""

    backend: SandboxBackend

    def __init__(self, options: SandboxOptions):
        self.options = options
        self.working_directory = os.path.abspath(options.working_directory)
        self._started_at: Optional[float] = None

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the isolation mechanism is available on this system."""
        pass

    @abstractmethod
    def get_platform(self) -> str:
        """Get the platform this isolator supports."""
        pass

    @abstractmethod
    def wrap_command(self, executable: str, args: list[str]) -> tuple[str, list[str]]:
        """
        Wrap an invocation so it runs inside the sandbox.

        Args:
            executable: The program to run (the agent binary or a probe)
            args: Arguments for the program

        Returns:
            Tuple of (command, args) to actually exec
        """
        pass

    async def start(self) -> None:
        """Prepare the sandbox. Must complete before any agent process runs."""
        self._started_at = time.time()

    async def stop(self) -> None:
        """Tear the sandbox down. Idempotent and safe before start()."""
        pass

    async def attach(self) -> None:
        """Bind to runtime state that another process created for this session."""
        if self._started_at is None:
            self._started_at = time.time()

    def is_sandboxed(self) -> bool:
        return True

    def get_backend(self) -> str:
        return self.backend

    def get_level(self) -> str:
        return self.options.level

    def credential_dir(self) -> str:
        return os.path.join(str(Path.home()), CREDENTIAL_DIR_NAME)

    async def diff(self) -> list[str]:
        """
        List files in the working directory modified since start().

        This is a best-effort mtime comparison: it cannot tell writes made
        inside the sandbox from coincidental writes made outside it.

        Returns:
            Change descriptors formatted as 'M <path>'
        """
        if self._started_at is None:
            return []
        return await asyncio.to_thread(
            _modified_since, self.working_directory, self._started_at
        )

    async def run_isolation_test(self) -> IsolationTestResult:
        """
        Verify the sandbox actually enforces isolation by running canary probes.

        Returns:
            IsolationTestResult; a failed check is reported, never raised
        """
        level = self.get_level()
        workdir_canary = os.path.join(self.working_directory, CANARY_FILENAME)
        outside_canary = f"/etc/{CANARY_FILENAME}-{uuid.uuid4().hex[:8]}"

        # Write outside the working directory: should be blocked
        outside_code = await self._run_in_sandbox(
            f"touch {shlex.quote(outside_canary)}"
        )

        # Write inside the working directory: should succeed
        inside_code = await self._run_in_sandbox(
            f"touch {shlex.quote(workdir_canary)}"
        )

        # Read the credential directory: standard/strict only, should be blocked
        credential_code: Optional[int] = None
        if level != "permissive":
            ssh_dir = os.path.join(str(Path.home()), ".ssh")
            credential_code = await self._run_in_sandbox(
                f"ls -A {shlex.quote(ssh_dir)}"
            )

        for canary in (workdir_canary, outside_canary):
            try:
                os.unlink(canary)
            except OSError:
                pass

        write_inside = inside_code == 0
        write_outside = outside_code == 0
        read_credentials = None if credential_code is None else credential_code == 0

        passed = write_inside and not write_outside and not read_credentials
        if not passed:
            logger.warning(
                f"Sandbox isolation test failed for session "
                f"'{self.options.session_name}' ({self.backend}/{level}): "
                f"inside={write_inside} outside={write_outside} "
                f"credentials={read_credentials}"
            )

        return IsolationTestResult(
            backend=self.backend,
            level=level,
            write_inside_workdir=write_inside,
            write_outside_workdir=write_outside,
            read_credential_dir=read_credentials,
            passed=passed,
        )

    async def _run_in_sandbox(self, shell_command: str) -> int:
        """Run a shell probe through wrap_command and return its exit code."""
        command, args = self.wrap_command("sh", ["-c", shell_command])
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=self.working_directory,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"Sandbox probe could not be spawned: {e}")
            return 1
        code = await proc.wait()
        return 1 if code is None else code


def _modified_since(root: str, since: float) -> list[str]:
    changed = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = os.path.join(dirpath, filename)
            try:
                if os.stat(path).st_mtime > since:
                    changed.append(f"M {path}")
            except OSError:
                # Vanished or unreadable
                continue
    return changed


def get_current_platform() -> str:
    """Get the current platform name."""
    system = platform.system().lower()
    if system == "darwin":
        return "macos"
    return system
