"""
agentspawn: run several coding-agent CLI conversations side by side.

Each session is a named conversation; every prompt spawns one agent process
(optionally inside a sandbox) that resumes the conversation by id. The
session manager tracks sessions in a registry file shared across processes,
so a session started by one process can be adopted by another.
"""

from .errors import (
    AgentSpawnError,
    AlreadyProcessingError,
    NonZeroExitError,
    PromptTimeoutError,
    RegistryCorruptError,
    SandboxConfigurationError,
    SandboxError,
    SessionAlreadyExistsError,
    SessionNotAliveError,
    SessionNotFoundError,
    SessionNotRunningError,
    SpawnFailedError,
)
from .manager import BroadcastResult, SessionManager
from .messaging import ConsoleSessionListener, SessionListener
from .registry import Registry, RegistryData, RegistryEntry
from .registry_watcher import RegistryWatcher
from .restart_policy import (
    ExitClassification,
    ExitStatus,
    calculate_backoff,
    classify_exit_code,
    classify_returncode,
)
from .session import Session, SessionConfig, SessionInfo, SessionState

__version__ = "0.1.0"
