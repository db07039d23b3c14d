"""
macOS filesystem isolation using sandbox-exec.
"""

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import SandboxConfigurationError
from .base import CREDENTIAL_DIR_NAME, SandboxIsolator, safe_session_name

logger = logging.getLogger(__name__)

# SBPL strings are double-quoted; these would break out of the quoting and
# produce a malformed profile, which sandbox-exec may treat as no isolation.
_UNSAFE_PROFILE_CHARS = re.compile(r'["()\\]')

# Credential stores denied for reading at the standard level, relative to $HOME
CREDENTIAL_STORES = [
    ".ssh",
    ".gnupg",
    ".aws",
    ".azure",
    ".kube",
    ".config/gcloud",
    ".docker",
    ".netrc",
    ".npmrc",
    ".pypirc",
]


def _home_path(relative: str) -> str:
    return f'(string-append (param "HOME") "/{relative}")'


class SandboxExecIsolator(SandboxIsolator):
    """Filesystem isolation using sandbox-exec on macOS."""

    backend = "sandbox-exec"

    def __init__(self, options):
        super().__init__(options)
        self.profile_path: Optional[Path] = None

    def is_available(self) -> bool:
        """Check if sandbox-exec is available on the system."""
        return shutil.which("sandbox-exec") is not None

    def get_platform(self) -> str:
        """Get the platform this isolator supports."""
        return "macos"

    def _profile_file(self) -> Path:
        # Predictable per-session path so other processes can find and clean it up
        profile_dir = Path(tempfile.gettempdir()) / "agentspawn_sandbox"
        return profile_dir / f"{safe_session_name(self.options.session_name)}.sb"

    def _validate_working_directory(self):
        if _UNSAFE_PROFILE_CHARS.search(self.working_directory):
            raise SandboxConfigurationError(
                "Working directory contains characters not supported in a "
                f"sandbox-exec profile: {self.working_directory}"
            )

    def _generate_sandbox_profile(self) -> str:
        """
        Generate a sandbox profile in Scheme for sandbox-exec.

        The global write deny must precede the specific allow so the allow
        wins for the working directory and /tmp.

        Returns:
            Sandbox profile as a string
        """
        cwd = self.working_directory
        level = self.options.level

        profile = f""";; agentspawn profile for session {self.options.session_name} ({level})
(version 1)
(allow default)

;; Writes are confined to the working directory and temporary files
(deny file-write* (subpath "/"))
(allow file-write*
    (subpath "{cwd}")
    (subpath "/tmp")
    (subpath "/private/tmp")
    (subpath "/private/var/folders")
    (subpath "/dev")
)
"""

        if level == "standard":
            denied = "\n".join(
                f"    (subpath {_home_path(store)})" for store in CREDENTIAL_STORES
            )
            profile += f"""
;; Credential stores are unreadable
(deny file-read*
{denied}
)
"""

        elif level == "strict":
            # NOTE: (deny network*) also blocks the agent's API calls; strict
            # is only useful with local or offline models.
            profile += f"""
;; Home directory is unreadable except the agent's own config
(deny file-read* (subpath (param "HOME")))
(allow file-read*
    (subpath {_home_path(CREDENTIAL_DIR_NAME)})
    (subpath "{cwd}")
)

(deny network*)
"""

        return profile

    async def start(self) -> None:
        """Validate the working directory and write the session's profile."""
        # Must fail before anything is written or spawned
        self._validate_working_directory()

        profile_file = self._profile_file()
        profile_file.parent.mkdir(exist_ok=True)
        profile_file.write_text(self._generate_sandbox_profile())
        self.profile_path = profile_file
        logger.debug(f"Wrote sandbox-exec profile {profile_file}")

        await super().start()

    async def attach(self) -> None:
        self._validate_working_directory()
        profile_file = self._profile_file()
        if not profile_file.exists():
            profile_file.parent.mkdir(exist_ok=True)
            profile_file.write_text(self._generate_sandbox_profile())
        self.profile_path = profile_file
        await super().attach()

    async def stop(self) -> None:
        if self.profile_path is not None:
            try:
                self.profile_path.unlink()
            except FileNotFoundError:
                pass
            self.profile_path = None

    def wrap_command(self, executable: str, args: list[str]) -> tuple[str, list[str]]:
        """
        Wrap an invocation with sandbox-exec using the session's profile.

        Args:
            executable: The program to run inside the sandbox
            args: Arguments for the program

        Returns:
            Tuple of (command, args)
        """
        if self.profile_path is None:
            raise SandboxConfigurationError(
                f"sandbox-exec profile for session '{self.options.session_name}' "
                "has not been written; call start() first"
            )

        home = os.environ.get("HOME", str(Path.home()))
        sandbox_args = [
            "-f", str(self.profile_path),
            "-D", f"HOME={home}",
        ]

        argv = [executable, *args]
        if self.options.level != "permissive" and self.options.memory_limit:
            argv = self._wrap_with_resource_limits(argv, self.options.memory_limit)

        sandbox_args.extend(argv)
        return "sandbox-exec", sandbox_args

    def _wrap_with_resource_limits(self, argv: list[str], memory_limit: str) -> list[str]:
        """
        Wrap an argv with a ulimit memory cap.

        CPU limits are not applied on macOS; ulimit can cap CPU time but not
        a share of a core.

        Args:
            argv: Program and arguments to run
            memory_limit: Memory cap such as "512m" or "2g"

        Returns:
            A /bin/sh invocation that sets the limit then execs argv
        """
        memory_kb = _memory_to_kb(memory_limit)
        script = f"ulimit -v {memory_kb} && exec \"$0\" \"$@\""
        return ["/bin/sh", "-c", script, *argv]


def _memory_to_kb(limit: str) -> int:
    """Convert a docker-style memory string (512m, 2g, 1024k) to kilobytes."""
    value = limit.strip().lower()
    units = {"k": 1, "m": 1024, "g": 1024 * 1024}
    if value and value[-1] in units:
        return int(float(value[:-1]) * units[value[-1]])
    # Plain number of bytes
    return max(1, int(value) // 1024)
