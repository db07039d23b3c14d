"""Tests for registry change notifications."""

import asyncio
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from fake_process import FakeClock
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from agentspawn.registry_watcher import RegistryWatcher


class WatcherTestCase(unittest.IsolatedAsyncioTestCase):
    """Scratch registry file with an old mtime."""

    async def asyncSetUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="agentspawn_watcher_test_")
        self.addCleanup(shutil.rmtree, self.tmpdir, True)
        self.path = Path(self.tmpdir, "sessions.json")
        self.path.write_text('{"version": 1, "sessions": {}}')
        self.mtime = 1_700_000_000.0
        os.utime(self.path, (self.mtime, self.mtime))


class TestRegistryWatcher(WatcherTestCase):
    """Debounce and echo suppression, with the observer thread replaced."""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        loop = asyncio.get_running_loop()
        self.clock = FakeClock(loop)
        self.observer_cls = MagicMock()
        self.observer = self.observer_cls.return_value
        for patcher in (
            patch.object(loop, "call_later", self.clock.call_later),
            patch(
                "agentspawn.registry_watcher.time",
                MagicMock(monotonic=lambda: self.clock.now),
            ),
            patch("agentspawn.registry_watcher.Observer", self.observer_cls),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)

        self.watcher = RegistryWatcher(self.path, debounce_ms=100)
        self.addCleanup(self.watcher.unwatch)
        self.callback = MagicMock(return_value=None)

    def touch(self, seconds=1.0):
        """Simulate another process rewriting the registry."""
        self.mtime += seconds
        os.utime(self.path, (self.mtime, self.mtime))

    def handler(self):
        return self.observer.schedule.call_args.args[0]

    async def settle(self):
        for _ in range(5):
            await asyncio.sleep(0)

    async def test_watch_observes_registry_directory(self):
        self.watcher.watch(self.callback)

        self.assertTrue(self.watcher.is_watching())
        _handler, directory = self.observer.schedule.call_args.args
        self.assertEqual(directory, self.tmpdir)
        self.assertEqual(self.observer.schedule.call_args.kwargs, {"recursive": False})
        self.observer.start.assert_called_once_with()

        self.watcher.unwatch()
        self.assertFalse(self.watcher.is_watching())
        self.observer.stop.assert_called_once_with()
        self.observer.join.assert_called_once()

    async def test_registry_directory_is_created(self):
        nested = Path(self.tmpdir, "state", "sessions.json")
        watcher = RegistryWatcher(nested)
        self.addCleanup(watcher.unwatch)
        watcher.watch(self.callback)
        self.assertTrue(nested.parent.is_dir())

    async def test_file_events_reach_the_loop(self):
        self.watcher.watch(self.callback)
        self.touch()

        self.handler().dispatch(FileModifiedEvent(str(self.path)))
        await self.settle()
        self.callback.assert_not_called()

        self.clock.advance(0.1)
        self.callback.assert_called_once_with()

    async def test_rename_over_registry_is_a_change(self):
        """Atomic saves show up as a move onto the registry's name."""
        self.watcher.watch(self.callback)
        self.touch()

        temp = os.path.join(self.tmpdir, "sessions.json.tmp123")
        self.handler().dispatch(FileMovedEvent(temp, str(self.path)))
        await self.settle()
        self.clock.advance(0.1)
        self.callback.assert_called_once_with()

    async def test_unrelated_events_are_ignored(self):
        self.watcher.watch(self.callback)
        self.touch()

        handler = self.handler()
        handler.dispatch(FileCreatedEvent(os.path.join(self.tmpdir, "other.json")))
        handler.dispatch(DirModifiedEvent(self.tmpdir))
        await self.settle()
        self.clock.advance(1)
        self.callback.assert_not_called()

    async def test_change_fires_callback_after_debounce(self):
        self.watcher.watch(self.callback)
        self.touch()

        self.assertTrue(self.watcher.check())
        self.callback.assert_not_called()

        self.clock.advance(0.099)
        self.callback.assert_not_called()
        self.clock.advance(0.001)
        self.callback.assert_called_once_with()

    async def test_unchanged_file_fires_nothing(self):
        self.watcher.watch(self.callback)
        self.assertFalse(self.watcher.check())
        self.clock.advance(10)
        self.callback.assert_not_called()

    async def test_burst_of_changes_coalesces(self):
        self.watcher.watch(self.callback)
        for _ in range(3):
            self.touch()
            self.watcher.check()
            self.clock.advance(0.05)

        self.clock.advance(0.1)
        self.callback.assert_called_once_with()

    async def test_notify_write_is_immediate_and_suppresses_echo(self):
        self.watcher.watch(self.callback)

        self.touch()
        self.watcher.notify_write()
        self.callback.assert_called_once_with()

        # The file event for the same write sees an unchanged mtime
        self.handler().dispatch(FileModifiedEvent(str(self.path)))
        await self.settle()
        self.clock.advance(1)
        self.callback.assert_called_once_with()

    async def test_changes_inside_suppression_window_are_dropped(self):
        self.watcher.watch(self.callback)
        self.watcher.notify_write()

        self.clock.advance(0.05)
        self.touch()
        self.watcher.check()
        self.clock.advance(1)
        self.assertEqual(self.callback.call_count, 1)

        # After the window, changes are reported again
        self.touch()
        self.watcher.check()
        self.clock.advance(0.1)
        self.assertEqual(self.callback.call_count, 2)

    async def test_notify_write_cancels_pending_debounce(self):
        self.watcher.watch(self.callback)
        self.touch()
        self.watcher.check()

        self.watcher.notify_write()
        self.clock.advance(1)
        self.callback.assert_called_once_with()

    async def test_unwatch_stops_callbacks(self):
        self.watcher.watch(self.callback)
        self.touch()
        self.watcher.check()

        self.watcher.unwatch()
        self.clock.advance(1)
        self.watcher.notify_write()
        self.callback.assert_not_called()

    async def test_missing_file_then_created(self):
        self.path.unlink()
        self.watcher.watch(self.callback)
        self.assertFalse(self.watcher.check())

        self.path.write_text("{}")
        self.assertTrue(self.watcher.check())
        self.clock.advance(0.1)
        self.callback.assert_called_once_with()

    async def test_async_callback_is_scheduled(self):
        callback = AsyncMock()
        self.watcher.watch(callback)
        self.watcher.notify_write()
        await self.settle()
        callback.assert_awaited_once()

    async def test_callback_errors_are_logged(self):
        self.watcher.watch(MagicMock(side_effect=RuntimeError("refresh failed")))
        with self.assertLogs("agentspawn.registry_watcher", level="ERROR"):
            self.watcher.notify_write()

    async def test_async_callback_errors_are_logged(self):
        self.watcher.watch(AsyncMock(side_effect=RuntimeError("refresh failed")))
        with self.assertLogs("agentspawn.registry_watcher", level="ERROR"):
            self.watcher.notify_write()
            await self.settle()


class TestRegistryWatcherObserver(WatcherTestCase):
    """End to end with a real watchdog observer."""

    async def test_atomic_replace_by_another_writer(self):
        changed = asyncio.Event()
        watcher = RegistryWatcher(self.path, debounce_ms=10)
        self.addCleanup(watcher.unwatch)
        watcher.watch(changed.set)

        temp = Path(self.tmpdir, "sessions.json.tmp")
        temp.write_text('{"version": 1, "sessions": {"other": {}}}')
        os.replace(temp, self.path)

        await asyncio.wait_for(changed.wait(), timeout=5)


if __name__ == "__main__":
    unittest.main()
