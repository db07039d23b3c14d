"""
Change notifications for the registry file.

Other processes rewrite the registry by renaming a temp file over it, which
replaces the inode. The watcher therefore observes the registry's directory
with watchdog and filters events for the registry's file name. Bursts of
changes are debounced into one callback.
"""

import asyncio
import inspect
import logging
import os
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 100

OBSERVER_JOIN_TIMEOUT_SECONDS = 5.0

_CHANGE_EVENTS = (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
)

RegistryChangeCallback = Callable[[], Union[None, Awaitable[None]]]


class _RegistryEventHandler(FileSystemEventHandler):
    """Forwards events for the registry file from the observer thread to the loop."""

    def __init__(self, watcher: "RegistryWatcher", loop: asyncio.AbstractEventLoop):
        self.watcher = watcher
        self.loop = loop

    def _concerns_registry(self, event: FileSystemEvent) -> bool:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return False
        name = self.watcher.registry_path.name
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(path and os.path.basename(os.fsdecode(path)) == name for path in paths)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if not self._concerns_registry(event):
            return
        try:
            self.loop.call_soon_threadsafe(self.watcher.check)
        except RuntimeError:
            # The loop closed while the observer was still running
            logger.debug(f"Dropped registry event after loop shutdown: {event.src_path}")


class RegistryWatcher:
    """Watches the registry file and calls back after it changes."""

    def __init__(
        self,
        registry_path: Union[str, Path],
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        self.registry_path = Path(registry_path)
        self.debounce_ms = debounce_ms

        self._callback: Optional[RegistryChangeCallback] = None
        self._observer = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._pending: set[asyncio.Task] = set()
        self._last_mtime: Optional[float] = None
        self._suppress_until = 0.0

    def is_watching(self) -> bool:
        return self._observer is not None

    def watch(self, callback: RegistryChangeCallback) -> None:
        """
        Start watching. Must be called from a running event loop.

        Args:
            callback: Invoked (after debounce) whenever the file changes; may
                be a plain function or return an awaitable
        """
        self.unwatch()
        loop = asyncio.get_running_loop()
        self._callback = callback
        self._last_mtime = self._mtime()

        directory = self.registry_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(
            _RegistryEventHandler(self, loop), str(directory), recursive=False
        )
        observer.start()
        self._observer = observer
        logger.debug(f"Watching registry {self.registry_path}")

    def unwatch(self) -> None:
        """Stop watching and cancel any pending callback."""
        self._callback = None
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=OBSERVER_JOIN_TIMEOUT_SECONDS)
            self._observer = None

    def notify_write(self) -> None:
        """
        Report a write made by this process.

        The callback runs immediately, skipping the debounce, and the file
        event that would otherwise report the same write is suppressed.
        """
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        self._last_mtime = self._mtime()
        self._suppress_until = time.monotonic() + self.debounce_ms / 1000
        self._invoke()

    def _mtime(self) -> Optional[float]:
        try:
            return os.stat(self.registry_path).st_mtime
        except OSError:
            return None

    def check(self) -> bool:
        """Compare the file's mtime with the last one seen; schedule a callback on change."""
        mtime = self._mtime()
        if mtime == self._last_mtime:
            return False
        self._last_mtime = mtime
        self._schedule_debounce()
        return True

    def _schedule_debounce(self):
        if time.monotonic() < self._suppress_until:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce_ms / 1000, self._fire)

    def _fire(self):
        self._debounce_handle = None
        self._invoke()

    def _invoke(self):
        if self._callback is None:
            return
        try:
            result: Any = self._callback()
        except Exception:
            logger.exception("Registry change callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Registry change callback failed: {task.exception()}")
