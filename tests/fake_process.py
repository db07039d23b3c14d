"""Test doubles for agent processes and the event loop's timers."""

import asyncio
import json

from agentspawn.messaging import SessionListener


class FakeStdin:
    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes):
        self.data.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True


class FakeAgentProcess:
    """Stands in for an asyncio.subprocess.Process running the agent CLI.

    Tests push output with emit_* and end the process with exit(); signals
    sent by the code under test are recorded rather than delivered.
    """

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    def emit_line(self, line):
        if isinstance(line, str):
            line = line.encode()
        self.stdout.feed_data(line + b"\n")

    def emit_event(self, event: dict):
        self.emit_line(json.dumps(event))

    def emit_text(self, *texts: str):
        self.emit_event(
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": t} for t in texts]},
            }
        )

    def emit_stderr(self, text: str):
        self.stderr.feed_data(text.encode())

    def exit(self, returncode: int):
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.returncode = returncode
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self):
        self.signals.append("SIGTERM")

    def kill(self):
        self.signals.append("SIGKILL")


class FakeSpawner:
    """Replacement for asyncio.create_subprocess_exec."""

    def __init__(self, error: Exception = None):
        self.error = error
        self.calls: list[tuple[list[str], dict]] = []
        self.processes: list[FakeAgentProcess] = []

    async def __call__(self, *argv, **kwargs):
        self.calls.append((list(argv), kwargs))
        if self.error is not None:
            raise self.error
        process = FakeAgentProcess(pid=4242 + len(self.processes))
        self.processes.append(process)
        return process

    async def wait_for_process(self, index: int = 0) -> FakeAgentProcess:
        """Yield to the loop until the index-th process has been spawned."""
        for _ in range(100):
            if len(self.processes) > index:
                # Let the session finish writing stdin and start reading
                for _ in range(5):
                    await asyncio.sleep(0)
                return self.processes[index]
            await asyncio.sleep(0)
        raise AssertionError(f"process {index} was never spawned")


class FakeClock:
    """Replaces loop.call_later so tests decide when timers fire."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.now = 0.0
        self.timers: list[tuple[float, asyncio.TimerHandle, object, tuple]] = []

    def call_later(self, delay, callback, *args, context=None):
        when = self.now + delay
        handle = asyncio.TimerHandle(when, callback, args, self.loop)
        self.timers.append((when, handle, callback, args))
        return handle

    def pending(self) -> list[asyncio.TimerHandle]:
        return [handle for _when, handle, _cb, _args in self.timers if not handle.cancelled()]

    def advance(self, seconds: float):
        self.now += seconds
        due = sorted(
            (timer for timer in self.timers if timer[0] <= self.now + 1e-9),
            key=lambda timer: timer[0],
        )
        for timer in due:
            self.timers.remove(timer)
            _when, handle, callback, args = timer
            if not handle.cancelled():
                callback(*args)


class RecordingListener(SessionListener):
    """Records every notification as (kind, payload)."""

    def __init__(self):
        self.events = []

    def kinds(self) -> list[str]:
        return [kind for kind, _payload in self.events]

    def on_prompt_start(self, session_name, prompt_text):
        self.events.append(("prompt_start", prompt_text))

    def on_data(self, session_name, chunk):
        self.events.append(("data", chunk))

    def on_stderr(self, session_name, chunk):
        self.events.append(("stderr", chunk))

    def on_prompt_complete(self, event):
        self.events.append(("prompt_complete", event))

    def on_prompt_error(self, event):
        self.events.append(("prompt_error", event))

    def on_prompt_timeout(self, event):
        self.events.append(("prompt_timeout", event))
