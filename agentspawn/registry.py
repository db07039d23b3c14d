"""
The session registry: a JSON file shared by every agentspawn process.

The file is always read whole and rewritten whole through a temp file and
``os.replace``, so readers never see a partial write. Concurrent writers can
clobber each other's latest write; each writer recovers its own entries.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import RegistryCorruptError
from .session import SessionState

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1


class RegistryEntry(BaseModel):
    """One persisted session descriptor, stored with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str

    # 0 for per-prompt sessions, which own no long-lived process
    pid: int = 0

    state: SessionState
    working_directory: str
    started_at: str
    permission_mode: Optional[str] = None
    env: Optional[dict[str, str]] = None
    prompt_count: int = 0
    conversation_id: Optional[str] = None
    exit_code: Optional[int] = None
    system_prompt: Optional[str] = None
    sandbox_backend: Optional[str] = None
    sandbox_level: Optional[str] = None


class RegistryData(BaseModel):
    version: int = REGISTRY_VERSION
    sessions: dict[str, RegistryEntry] = {}


class Registry:
    """Read-whole/write-whole access to the registry file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> RegistryData:
        """
        Read the registry.

        Returns:
            The registry contents; an empty registry if the file does not exist

        Raises:
            RegistryCorruptError: The file is not valid JSON or not registry-shaped
            OSError: Any other read failure
        """
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return RegistryData()

        try:
            parsed = json.loads(content)
        except ValueError:
            raise RegistryCorruptError(str(self.path)) from None

        if not isinstance(parsed, dict) or not isinstance(parsed.get("sessions"), dict):
            raise RegistryCorruptError(str(self.path))
        try:
            return RegistryData.model_validate(parsed)
        except ValidationError as e:
            logger.error(f"Registry {self.path} failed validation: {e}")
            raise RegistryCorruptError(str(self.path)) from e

    def save(self, data: RegistryData) -> None:
        """Atomically replace the registry file with ``data``."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = data.model_dump(mode="json", by_alias=True, exclude_none=True)

        fd, temp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def add_entry(self, entry: RegistryEntry) -> None:
        """Insert or replace the entry for ``entry.name``."""
        data = self.load()
        data.sessions[entry.name] = entry
        self.save(data)

    def remove_entry(self, name: str) -> None:
        data = self.load()
        if data.sessions.pop(name, None) is None:
            logger.debug(f"Registry has no entry for '{name}' to remove")
        self.save(data)

    def get_all(self) -> RegistryData:
        return self.load()
