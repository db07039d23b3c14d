"""
Factory and capability probing for sandbox backends.
"""

import asyncio
import logging
import shutil
from typing import Optional

from ..errors import SandboxConfigurationError
from .base import SandboxIsolator, SandboxOptions, get_current_platform, run_tool
from .docker_isolator import DockerIsolator
from .linux_isolator import BubblewrapIsolator
from .macos_isolator import SandboxExecIsolator

logger = logging.getLogger(__name__)

DOCKER_PROBE_TIMEOUT_SECONDS = 10


class NoOpIsolator(SandboxIsolator):
    """No-op isolator for platforms without any sandboxing backend.

    Sessions using it run unsandboxed; ``is_sandboxed()`` reports that so
    callers can surface it.
    """

    backend = "none"

    def is_available(self) -> bool:
        """Always available as a fallback."""
        return True

    def get_platform(self) -> str:
        """Platform-agnostic."""
        return "noop"

    def is_sandboxed(self) -> bool:
        return False

    def wrap_command(self, executable: str, args: list[str]) -> tuple[str, list[str]]:
        """Return the invocation unchanged."""
        return executable, list(args)


_ISOLATORS = {
    "docker": DockerIsolator,
    "bwrap": BubblewrapIsolator,
    "sandbox-exec": SandboxExecIsolator,
    "none": NoOpIsolator,
}


async def _docker_daemon_responds() -> bool:
    if shutil.which("docker") is None:
        return False
    try:
        code, _stdout, _stderr = await run_tool(
            "docker", "info", timeout=DOCKER_PROBE_TIMEOUT_SECONDS
        )
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"docker info failed: {e}")
        return False
    return code == 0


def detect_platform_native_backend(platform: Optional[str] = None) -> str:
    """
    Get the OS-native backend, skipping docker.

    Args:
        platform: Override platform detection (mainly for testing)

    Returns:
        "bwrap" on Linux with bwrap installed, "sandbox-exec" on macOS, else "none"
    """
    if platform is None:
        platform = get_current_platform()

    if platform == "linux" and shutil.which("bwrap"):
        return "bwrap"
    if platform == "macos" and shutil.which("sandbox-exec"):
        return "sandbox-exec"
    return "none"


async def detect_backend(platform: Optional[str] = None) -> str:
    """
    Probe backends in preference order and return the first available.

    1. docker, if its daemon responds to ``docker info``
    2. the platform-native primitive (bwrap on Linux, sandbox-exec on macOS)
    3. "none"
    """
    if await _docker_daemon_responds():
        return "docker"
    backend = detect_platform_native_backend(platform)
    if backend == "none":
        logger.warning("No sandbox backend available; sessions will run unsandboxed")
    return backend


def get_isolator(backend: str, options: SandboxOptions) -> SandboxIsolator:
    """
    Create the isolator for a backend name.

    Args:
        backend: One of "docker", "bwrap", "sandbox-exec", "none"
        options: Sandbox options for the session

    Returns:
        SandboxIsolator instance (not yet started)
    """
    try:
        isolator_class = _ISOLATORS[backend]
    except KeyError:
        raise SandboxConfigurationError(
            f"Unknown sandbox backend {backend!r}; expected one of "
            f"{', '.join(_ISOLATORS)}"
        ) from None
    return isolator_class(options)
