"""
Linux filesystem isolation using bubblewrap (bwrap).
"""

import os
import shutil
from typing import Optional

from .base import SandboxIsolator

# Directories bound read-only at standard/strict instead of the whole root
SYSTEM_DIRS = ["/usr", "/bin", "/sbin", "/lib", "/etc"]


class BubblewrapIsolator(SandboxIsolator):
    """Filesystem isolation using bubblewrap on Linux.

    bwrap is stateless: every invocation computes its own namespace and
    mount flags, so start() and stop() only do bookkeeping.
    """

    backend = "bwrap"

    def is_available(self) -> bool:
        """Check if bwrap is available on the system."""
        return shutil.which("bwrap") is not None

    def get_platform(self) -> str:
        """Get the platform this isolator supports."""
        return "linux"

    def wrap_command(self, executable: str, args: list[str]) -> tuple[str, list[str]]:
        """
        Wrap an invocation with bubblewrap isolation sized to the level.

        Args:
            executable: The program to run inside the sandbox
            args: Arguments for the program

        Returns:
            Tuple of (command, args)
        """
        level = self.options.level
        cwd = self.working_directory

        bwrap_args = [
            "--unshare-all",  # Unshare all namespaces
            "--die-with-parent",  # Kill sandbox when parent dies
            "--new-session",  # New session to avoid signal leakage
        ]

        if level != "strict":
            # The agent needs network access for its API calls
            bwrap_args.append("--share-net")

        if level == "permissive":
            # Mount order matters: later mounts override earlier ones, so the
            # read-only root comes first and writable overlays follow.
            bwrap_args.extend(["--ro-bind", "/", "/"])
        else:
            for path in SYSTEM_DIRS + ["/lib64"]:
                if os.path.exists(path):
                    bwrap_args.extend(["--ro-bind", path, path])

        bwrap_args.extend([
            "--tmpfs", "/tmp",
            "--bind", cwd, cwd,
            "--dev", "/dev",
            "--proc", "/proc",
        ])

        credential_dir = self.credential_dir()
        if os.path.exists(credential_dir):
            bwrap_args.extend(["--ro-bind", credential_dir, credential_dir])

        bwrap_args.extend(["--chdir", cwd, "--", executable, *args])

        if level != "permissive" and (self.options.memory_limit or self.options.cpu_limit):
            # Use systemd-run for resource limits if available
            if shutil.which("systemd-run"):
                return self._wrap_with_systemd_run(
                    ["bwrap", *bwrap_args],
                    memory_limit=self.options.memory_limit,
                    cpu_limit=self.options.cpu_limit,
                )

        return "bwrap", bwrap_args

    def _wrap_with_systemd_run(
        self,
        argv: list[str],
        memory_limit: Optional[str] = None,
        cpu_limit: Optional[float] = None,
    ) -> tuple[str, list[str]]:
        """
        Wrap an argv with systemd-run for resource limits.

        Args:
            argv: The full command line to wrap
            memory_limit: Memory cap such as "512m"
            cpu_limit: CPU cap in cores (1.0 = one core)

        Returns:
            Tuple of (command, args) running argv in a transient scope
        """
        systemd_args = [
            "--user",  # Run as user, not system service
            "--scope",  # Create a transient scope unit
            "--quiet",  # Suppress output
        ]

        if memory_limit:
            # systemd wants upper-case suffixes: 512m -> 512M
            systemd_args.append(f"--property=MemoryMax={memory_limit.upper()}")

        if cpu_limit:
            # CPUQuota is in percentage points (100% = 1 core)
            systemd_args.append(f"--property=CPUQuota={int(cpu_limit * 100)}%")

        systemd_args.extend(["--", *argv])

        return "systemd-run", systemd_args
