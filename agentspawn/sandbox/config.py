"""
Configuration management for sandboxing.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from .base import SANDBOX_BACKENDS, SANDBOX_LEVELS, SandboxOptions

logger = logging.getLogger(__name__)


class SandboxConfig:
    """Manages the user's default sandbox settings and their persistence."""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize sandbox configuration.

        Args:
            config_dir: Directory to store sandbox config (default: ~/.agentspawn)
        """
        if config_dir is None:
            from agentspawn.config import CONFIG_DIR

            config_dir = Path(CONFIG_DIR)

        self.config_dir = config_dir
        self.config_file = self.config_dir / "sandbox_config.json"

        # Default configuration
        self._config = {
            "enabled": True,
            # None means auto-detect (docker, then the platform-native backend)
            "backend": None,
            "level": "permissive",
            "memory_limit": None,
            "cpu_limit": None,
            "image": None,
        }

        # Load existing configuration
        self._load()

    def _load(self):
        """Load configuration from disk."""
        if self.config_file.exists():
            try:
                with open(self.config_file) as f:
                    loaded = json.load(f)
                    self._config.update(loaded)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load sandbox config: {e}")

    def save(self):
        """Save configuration to disk."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                json.dump(self._config, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save sandbox config: {e}")

    @property
    def enabled(self) -> bool:
        """Check if sandboxing is enabled."""
        return self._config.get("enabled", True)

    @enabled.setter
    def enabled(self, value: bool):
        """Enable or disable sandboxing."""
        self._config["enabled"] = value
        self.save()

    @property
    def backend(self) -> Optional[str]:
        """Get the preferred backend, or None to auto-detect."""
        if not self.enabled:
            return "none"
        return self._config.get("backend")

    @backend.setter
    def backend(self, value: Optional[str]):
        """Set the preferred backend."""
        if value is not None and value not in SANDBOX_BACKENDS:
            raise ValueError(f"backend must be one of {', '.join(SANDBOX_BACKENDS)}")
        self._config["backend"] = value
        self.save()

    @property
    def level(self) -> str:
        """Get the isolation level."""
        return self._config.get("level", "permissive")

    @level.setter
    def level(self, value: str):
        """Set the isolation level."""
        if value not in SANDBOX_LEVELS:
            raise ValueError(f"level must be one of {', '.join(SANDBOX_LEVELS)}")
        self._config["level"] = value
        self.save()

    @property
    def memory_limit(self) -> Optional[str]:
        """Get the memory limit (e.g. "512m")."""
        return self._config.get("memory_limit")

    @memory_limit.setter
    def memory_limit(self, value: Optional[str]):
        self._config["memory_limit"] = value
        self.save()

    @property
    def cpu_limit(self) -> Optional[float]:
        """Get the CPU limit in cores."""
        return self._config.get("cpu_limit")

    @cpu_limit.setter
    def cpu_limit(self, value: Optional[float]):
        self._config["cpu_limit"] = value
        self.save()

    @property
    def image(self) -> Optional[str]:
        """Get the container image used by the docker backend."""
        return self._config.get("image")

    @image.setter
    def image(self, value: Optional[str]):
        self._config["image"] = value
        self.save()

    def to_options(
        self,
        session_name: str,
        working_directory: str,
        agent_binary: str = "claude",
        level: Optional[str] = None,
        env_keys: Iterable[str] = (),
    ) -> SandboxOptions:
        """Build SandboxOptions for a session from these defaults."""
        return SandboxOptions(
            session_name=session_name,
            working_directory=working_directory,
            level=level or self.level,
            memory_limit=self.memory_limit,
            cpu_limit=self.cpu_limit,
            image=self.image,
            agent_binary=agent_binary,
            env_keys=tuple(env_keys),
        )

    def get_status(self) -> dict:
        """Get current sandbox settings as a dictionary."""
        return {
            "enabled": self.enabled,
            "backend": self.backend or "auto",
            "level": self.level,
            "memory_limit": self.memory_limit,
            "cpu_limit": self.cpu_limit,
            "image": self.image,
        }
