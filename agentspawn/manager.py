"""
Session manager: owns this process's live sessions and keeps the shared
registry in step with them.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Iterable, Literal, Optional, Union

from pydantic import BaseModel

from .config import (
    get_agent_binary,
    get_prompt_timeout_ms,
    get_registry_path,
    get_shutdown_timeout_ms,
)
from .errors import (
    AgentSpawnError,
    SandboxError,
    SessionAlreadyExistsError,
    SessionNotAliveError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from .messaging import SessionListener
from .registry import Registry, RegistryEntry
from .registry_watcher import RegistryWatcher
from .sandbox import (
    SandboxConfig,
    SandboxIsolator,
    detect_backend,
    detect_platform_native_backend,
    get_isolator,
)
from .session import HistoryRecorder, Session, SessionConfig, SessionInfo, SessionState

logger = logging.getLogger(__name__)


class BroadcastResult(BaseModel):
    session_name: str
    status: Literal["success", "error"]
    response: Optional[str] = None
    error: Optional[str] = None


def is_pid_alive(pid: int) -> bool:
    """Check whether a process exists, without signalling it."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class SessionManager:
    """Creates, adopts and stops sessions, and persists them to the registry."""

    def __init__(
        self,
        registry_path: Optional[Union[str, Path]] = None,
        watcher: Optional[RegistryWatcher] = None,
        listeners: Optional[Iterable[SessionListener]] = None,
        history: Optional[HistoryRecorder] = None,
        sandbox_config: Optional[SandboxConfig] = None,
    ):
        """
        Args:
            registry_path: Registry file (default from agentspawn.config)
            watcher: Notified after every registry write this manager makes
            listeners: Attached to every session the manager creates or adopts
            history: History recorder passed to every session
            sandbox_config: Sandbox defaults (default: the user's SandboxConfig)
        """
        self.registry = Registry(registry_path or get_registry_path())
        self.watcher = watcher
        self.sandbox_config = sandbox_config or SandboxConfig()
        self._listeners = list(listeners or [])
        self._history = history
        self._sessions: dict[str, Session] = {}
        self._starting: set[str] = set()
        self._persisted: dict[str, RegistryEntry] = {}

    async def init(self) -> None:
        """Load the registry and mark entries whose process has died as crashed."""
        data = self.registry.load()
        stale = [
            entry
            for entry in data.sessions.values()
            if entry.state is SessionState.RUNNING
            and entry.pid != 0
            and not is_pid_alive(entry.pid)
        ]
        for entry in stale:
            logger.info(f"Session '{entry.name}' (pid {entry.pid}) is gone; marking crashed")
            entry.state = SessionState.CRASHED
        if stale:
            self.registry.save(data)
            self._notify_watcher()
        self._persisted = dict(data.sessions)

    async def start_session(
        self,
        config: SessionConfig,
        sandbox: Optional[str] = None,
        level: Optional[str] = None,
    ) -> Session:
        """
        Create a session, start its sandbox and persist it.

        Args:
            config: Session settings
            sandbox: Backend name; None uses the configured default, or
                auto-detection when that is unset
            level: Isolation level; None uses the configured default

        Raises:
            SessionAlreadyExistsError: The name is live here or running in the registry
            SandboxError: The sandbox could not be started
        """
        name = config.name
        if name in self._sessions or name in self._starting:
            raise SessionAlreadyExistsError(name)
        existing = self.registry.load().sessions.get(name)
        if existing is not None and existing.state is SessionState.RUNNING:
            raise SessionAlreadyExistsError(name)

        self._starting.add(name)
        try:
            isolator = await self._start_isolator(config, sandbox, level)
            session = self._make_session(config, isolator)
            try:
                await session.start()
                self._sessions[name] = session
                self._persist(session)
            except BaseException:
                self._sessions.pop(name, None)
                await isolator.stop()
                raise
        finally:
            self._starting.discard(name)

        logger.info(f"Started session '{name}' in {config.working_directory}")
        return session

    async def _start_isolator(
        self, config: SessionConfig, sandbox: Optional[str], level: Optional[str]
    ) -> SandboxIsolator:
        options = self.sandbox_config.to_options(
            config.name,
            config.working_directory,
            agent_binary=config.agent_binary,
            level=level,
            env_keys=config.env or (),
        )
        explicit = sandbox or self.sandbox_config.backend
        backend = explicit or await detect_backend()

        isolator = get_isolator(backend, options)
        try:
            await isolator.start()
        except SandboxError as e:
            if explicit or backend != "docker":
                raise
            fallback = detect_platform_native_backend()
            if fallback == "none":
                raise
            logger.warning(
                f"docker sandbox for '{config.name}' failed to start ({e}); "
                f"falling back to {fallback}"
            )
            isolator = get_isolator(fallback, options)
            await isolator.start()
        return isolator

    def _make_session(
        self,
        config: SessionConfig,
        isolator: SandboxIsolator,
        conversation_id: Optional[str] = None,
        prompt_count: int = 0,
    ) -> Session:
        session = Session(
            config,
            isolator=isolator,
            conversation_id=conversation_id,
            prompt_count=prompt_count,
            history=self._history,
            on_settled=self._sync_after_prompt,
        )
        for listener in self._listeners:
            session.add_listener(listener)
        return session

    def _sync_after_prompt(self, session: Session):
        """Rewrite a session's entry once a prompt settles. Registry errors propagate."""
        if self._sessions.get(session.name) is session:
            self._persist(session)

    def _entry_for(self, session: Session) -> RegistryEntry:
        previous = self._persisted.get(session.name)
        if previous is not None and previous.conversation_id == session.conversation_id:
            started_at = previous.started_at
        else:
            started_at = session.started_at.isoformat() if session.started_at else ""
        return RegistryEntry(
            name=session.name,
            pid=0,
            state=session.state,
            working_directory=session.config.working_directory,
            started_at=started_at,
            permission_mode=session.config.permission_mode,
            env=session.config.env,
            prompt_count=session.prompt_count,
            conversation_id=session.conversation_id,
            exit_code=session.exit_code,
            system_prompt=session.config.system_prompt,
            sandbox_backend=session.isolator.get_backend(),
            sandbox_level=session.isolator.get_level(),
        )

    def _persist(self, session: Session):
        entry = self._entry_for(session)
        self.registry.add_entry(entry)
        self._persisted[session.name] = entry
        self._notify_watcher()

    def _notify_watcher(self):
        if self.watcher is not None:
            self.watcher.notify_write()

    def get_session(self, name: str) -> Optional[Session]:
        return self._sessions.get(name)

    def list_sessions(self) -> list[RegistryEntry]:
        """
        List every known session: the registry as currently on disk, with
        this process's live sessions overlaid.
        """
        entries = dict(self.registry.load().sessions)
        for name, session in self._sessions.items():
            entries[name] = self._entry_for(session)
        return list(entries.values())

    def get_session_info(self, name: str) -> SessionInfo:
        session = self._sessions.get(name)
        if session is not None:
            return session.get_info()

        entry = self.registry.load().sessions.get(name)
        if entry is None:
            raise SessionNotFoundError(name)
        backend = entry.sandbox_backend or "none"
        return SessionInfo(
            name=entry.name,
            pid=entry.pid,
            state=entry.state,
            started_at=entry.started_at or None,
            working_directory=entry.working_directory,
            exit_code=entry.exit_code,
            permission_mode=entry.permission_mode,
            prompt_count=entry.prompt_count,
            conversation_id=entry.conversation_id or "",
            sandbox_backend=backend,
            sandbox_level=entry.sandbox_level or "permissive",
            sandboxed=backend != "none",
        )

    async def adopt_session(self, name: str) -> Session:
        """
        Take over a session started by another process.

        The rebuilt session continues the same conversation, so its next
        prompt resumes rather than starting over.

        Raises:
            SessionNotFoundError: No registry entry has this name
            SessionNotAliveError: The entry's process has exited or it crashed
            SandboxError: The session's sandbox could not be reattached
        """
        session = self._sessions.get(name)
        if session is not None:
            return session

        entry = self.registry.load().sessions.get(name)
        if entry is None:
            raise SessionNotFoundError(name)
        if entry.state is SessionState.CRASHED or (
            entry.pid != 0 and not is_pid_alive(entry.pid)
        ):
            raise SessionNotAliveError(name, entry.pid)

        conversation_id = entry.conversation_id
        if conversation_id is None:
            logger.warning(
                f"Registry entry for '{name}' has no conversation id; "
                f"adopting it starts a new conversation"
            )

        config = SessionConfig(
            name=name,
            working_directory=entry.working_directory,
            env=entry.env,
            permission_mode=entry.permission_mode,
            system_prompt=entry.system_prompt,
            prompt_timeout_ms=get_prompt_timeout_ms(),
            shutdown_timeout_ms=get_shutdown_timeout_ms(),
            agent_binary=get_agent_binary(),
        )
        options = self.sandbox_config.to_options(
            name,
            entry.working_directory,
            agent_binary=config.agent_binary,
            level=entry.sandbox_level,
            env_keys=entry.env or (),
        )
        isolator = get_isolator(entry.sandbox_backend or "none", options)
        await isolator.attach()

        session = self._make_session(
            config,
            isolator,
            conversation_id=conversation_id,
            prompt_count=entry.prompt_count,
        )
        await session.start()
        self._sessions[name] = session
        self._persisted[name] = entry
        logger.info(
            f"Adopted session '{name}' (conversation {session.conversation_id}, "
            f"{entry.prompt_count} prompts)"
        )
        return session

    async def stop_session(self, name: str) -> None:
        """
        Stop a session and remove it from memory and the registry.

        A session known only from the registry has its sandbox torn down too.

        Raises:
            SessionNotFoundError: The name is neither live nor in the registry
        """
        session = self._sessions.get(name)
        if session is not None:
            await session.stop()
            await session.isolator.stop()
            del self._sessions[name]
        else:
            entry = self.registry.load().sessions.get(name)
            if entry is None:
                raise SessionNotFoundError(name)
            await self._teardown_orphan(entry)

        self.registry.remove_entry(name)
        self._persisted.pop(name, None)
        self._notify_watcher()
        logger.info(f"Stopped session '{name}'")

    async def _teardown_orphan(self, entry: RegistryEntry):
        options = self.sandbox_config.to_options(
            entry.name, entry.working_directory, level=entry.sandbox_level
        )
        isolator = get_isolator(entry.sandbox_backend or "none", options)
        try:
            await isolator.attach()
        except SandboxError as e:
            logger.debug(f"No sandbox to tear down for '{entry.name}': {e}")
            return
        await isolator.stop()

    async def stop_all(self) -> None:
        """Stop every session this process owns."""
        for name in list(self._sessions):
            await self.stop_session(name)

    def refresh_registry(self) -> list[RegistryEntry]:
        """
        Re-read the registry after another process may have changed it.

        Entries added elsewhere become visible and entries removed elsewhere
        disappear from the persisted view. Live sessions of this process are
        authoritative: if their entry was lost to a concurrent write it is
        written back.

        Returns:
            The refreshed persisted view
        """
        data = self.registry.load()
        for name in data.sessions.keys() - self._persisted.keys():
            logger.info(f"Discovered session '{name}' in the registry")
        for name in self._persisted.keys() - data.sessions.keys():
            if name not in self._sessions:
                logger.info(f"Session '{name}' was removed from the registry")

        lost = [name for name in self._sessions if name not in data.sessions]
        for name in lost:
            logger.warning(f"Registry entry for live session '{name}' was lost; rewriting")
            data.sessions[name] = self._entry_for(self._sessions[name])
        if lost:
            self.registry.save(data)

        self._persisted = dict(data.sessions)
        return list(self._persisted.values())

    async def broadcast_prompt(
        self, names: Iterable[str], text: str
    ) -> list[BroadcastResult]:
        """
        Send one prompt to several sessions concurrently.

        Never raises for a per-session failure; each name gets a result in
        the order given.
        """

        async def send(name: str) -> BroadcastResult:
            session = self._sessions.get(name)
            try:
                if session is None:
                    raise SessionNotFoundError(name)
                if session.state is not SessionState.RUNNING:
                    raise SessionNotRunningError(name)
                response = await session.send_prompt(text)
            except AgentSpawnError as e:
                return BroadcastResult(session_name=name, status="error", error=str(e))
            return BroadcastResult(session_name=name, status="success", response=response)

        return list(await asyncio.gather(*(send(name) for name in names)))
