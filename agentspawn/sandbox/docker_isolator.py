"""
Container isolation using a long-lived docker container per session.
"""

import logging
import os
import shutil

from ..errors import SandboxConfigurationError, SandboxError
from .base import SandboxIsolator, run_tool, safe_session_name

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "debian:12-slim"

# (memory, cpus) applied when the caller does not set explicit limits
LEVEL_DEFAULT_LIMITS = {
    "standard": ("512m", 1.0),
    "strict": ("256m", 0.5),
}

DOCKER_TIMEOUT_SECONDS = 120

# Where start() mounts the agent binary inside the container
CONTAINER_BIN_DIR = "/usr/local/bin"


def container_name_for(session_name: str) -> str:
    """Deterministic container name so a session's container can be found by name."""
    return f"agentspawn-{safe_session_name(session_name)}"


class DockerIsolator(SandboxIsolator):
    """Isolation inside a docker container.

    start() creates the container (sleeping forever) and every agent
    invocation is a ``docker exec`` into it.
    """

    backend = "docker"

    def __init__(self, options):
        super().__init__(options)
        self.container_id = None
        self.container_name = container_name_for(options.session_name)

    def is_available(self) -> bool:
        """Check if the docker CLI is installed (the daemon is probed separately)."""
        return shutil.which("docker") is not None

    def get_platform(self) -> str:
        return "any"

    def _build_run_args(self, agent_path: str) -> list[str]:
        level = self.options.level
        cwd = self.working_directory
        uid = os.getuid() if hasattr(os, "getuid") else 1000
        gid = os.getgid() if hasattr(os, "getgid") else 1000

        # Passed as an argv, never through a shell
        docker_args = [
            "run", "-d", "--rm",
            "--name", self.container_name,
            "-v", f"{agent_path}:{self._container_agent_path()}:ro",
            "-v", f"{cwd}:{cwd}:rw",
            "--workdir", cwd,
            # bridge keeps the agent off host-local services while still
            # allowing outbound API calls; never host networking
            "--network", "bridge",
            "--user", f"{uid}:{gid}",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
        ]

        credential_dir = self.credential_dir()
        if os.path.isdir(credential_dir):
            docker_args.extend([
                "-v", f"{credential_dir}:{credential_dir}:ro",
                "-e", f"HOME={os.path.dirname(credential_dir)}",
            ])

        if level in LEVEL_DEFAULT_LIMITS:
            default_memory, default_cpus = LEVEL_DEFAULT_LIMITS[level]
            docker_args.extend([
                "--memory", self.options.memory_limit or default_memory,
                "--cpus", str(self.options.cpu_limit or default_cpus),
            ])

        if level == "strict":
            docker_args.extend([
                "--read-only",
                "--tmpfs", "/tmp:rw,noexec,nosuid",
            ])

        docker_args.extend([self.options.image or DEFAULT_IMAGE, "sleep", "infinity"])
        return docker_args

    def _container_agent_path(self) -> str:
        return f"{CONTAINER_BIN_DIR}/{os.path.basename(self.options.agent_binary)}"

    async def _docker(self, *args: str) -> tuple[int, str, str]:
        try:
            return await run_tool("docker", *args, timeout=DOCKER_TIMEOUT_SECONDS)
        except OSError as e:
            raise SandboxError(f"Failed to run docker: {e}") from e

    async def start(self) -> None:
        """Create the session's container."""
        agent_path = shutil.which(self.options.agent_binary)
        if agent_path is None:
            raise SandboxConfigurationError(
                f"Cannot find '{self.options.agent_binary}' on PATH to mount into the container"
            )

        code, stdout, stderr = await self._docker(*self._build_run_args(agent_path))
        if code != 0:
            raise SandboxError(
                f"docker run failed for {self.container_name} "
                f"(exit code {code}): {stderr.strip()}"
            )

        self.container_id = stdout.strip()
        logger.info(
            f"Started container {self.container_name} ({self.container_id[:12]}) "
            f"at level {self.options.level}"
        )
        await super().start()

    async def attach(self) -> None:
        """Bind to the container another process started for this session."""
        code, stdout, stderr = await self._docker(
            "inspect", "-f", "{{.Id}}", self.container_name
        )
        if code != 0:
            raise SandboxError(
                f"Container {self.container_name} is not running: {stderr.strip()}"
            )
        self.container_id = stdout.strip()
        await super().attach()

    async def stop(self) -> None:
        if self.container_id is None:
            return
        code, _stdout, stderr = await self._docker("rm", "-f", self.container_name)
        if code != 0:
            # --rm may already have removed it
            logger.warning(
                f"docker rm -f {self.container_name} exited {code}: {stderr.strip()}"
            )
        self.container_id = None

    def wrap_command(self, executable: str, args: list[str]) -> tuple[str, list[str]]:
        """
        Wrap an invocation as an exec into the running container.

        Args:
            executable: The program to run inside the container
            args: Arguments for the program

        Returns:
            Tuple of (command, args)
        """
        if self.container_id is None:
            raise SandboxConfigurationError(
                f"Container for session '{self.options.session_name}' has not been "
                "started; call start() first"
            )
        if executable == self.options.agent_binary:
            # A host path means nothing inside the container; use the mount
            executable = self._container_agent_path()

        # -i keeps stdin attached so the prompt reaches the agent
        exec_args = ["exec", "-i", "-w", self.working_directory]
        for key in self.options.env_keys:
            # Value is taken from the docker client's own environment
            exec_args.extend(["-e", key])
        return "docker", [*exec_args, self.container_id, executable, *args]

    async def diff(self) -> list[str]:
        """Return the engine's own change list ('A /path', 'C /path', 'D /path')."""
        if self.container_id is None:
            return []
        code, stdout, stderr = await self._docker("diff", self.container_id)
        if code != 0:
            raise SandboxError(
                f"docker diff failed for {self.container_name}: {stderr.strip()}"
            )
        return [line for line in stdout.splitlines() if line.strip()]
