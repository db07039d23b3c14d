"""
Sandboxing backends for agentspawn sessions.

Each session gets one isolator, chosen when the session is created and never
switched at runtime. Isolators share one contract (start/stop/wrap_command/
diff/run_isolation_test) over three OS primitives:

- docker: a long-lived container per session, prompts run via docker exec
- Linux: bubblewrap (bwrap) namespaces computed per invocation
- macOS: sandbox-exec with a generated per-session profile

Where none is available sessions run unsandboxed through NoOpIsolator.
"""

from .base import IsolationTestResult, SandboxIsolator, SandboxOptions
from .config import SandboxConfig
from .docker_isolator import DockerIsolator
from .filesystem_isolation import (
    NoOpIsolator,
    detect_backend,
    detect_platform_native_backend,
    get_isolator,
)
from .linux_isolator import BubblewrapIsolator
from .macos_isolator import SandboxExecIsolator

__all__ = [
    "BubblewrapIsolator",
    "DockerIsolator",
    "IsolationTestResult",
    "NoOpIsolator",
    "SandboxConfig",
    "SandboxExecIsolator",
    "SandboxIsolator",
    "SandboxOptions",
    "detect_backend",
    "detect_platform_native_backend",
    "get_isolator",
]
