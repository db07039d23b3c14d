"""Tests for listener dispatch and console rendering."""

import io
import unittest

from rich.console import Console

from agentspawn.messaging import (
    ConsoleSessionListener,
    PromptCompleteEvent,
    PromptErrorEvent,
    PromptTimeoutEvent,
    SessionListener,
    notify,
)


class Collecting(SessionListener):
    def __init__(self):
        self.chunks = []

    def on_data(self, session_name, chunk):
        self.chunks.append((session_name, chunk))


class Broken(SessionListener):
    def on_data(self, session_name, chunk):
        raise RuntimeError("listener bug")


class TestNotify(unittest.TestCase):

    def test_delivers_to_every_listener(self):
        first, second = Collecting(), Collecting()
        notify([first, second], "on_data", "worker", "hello")
        self.assertEqual(first.chunks, [("worker", "hello")])
        self.assertEqual(second.chunks, [("worker", "hello")])

    def test_failing_listener_is_logged_and_skipped(self):
        after = Collecting()
        with self.assertLogs("agentspawn.messaging", level="ERROR") as logs:
            notify([Broken(), after], "on_data", "worker", "hello")

        self.assertEqual(after.chunks, [("worker", "hello")])
        self.assertIn("Broken.on_data", logs.output[0])

    def test_base_listener_ignores_everything(self):
        listener = SessionListener()
        notify([listener], "on_prompt_start", "worker", "hi")
        notify(
            [listener],
            "on_prompt_complete",
            PromptCompleteEvent(
                session_name="worker", prompt_text="hi", response="", duration_ms=1
            ),
        )


class TestConsoleSessionListener(unittest.TestCase):

    def setUp(self):
        self.output = io.StringIO()
        console = Console(file=self.output, force_terminal=False, width=200)
        self.listener = ConsoleSessionListener(console)

    def test_prompt_start_and_streamed_text(self):
        self.listener.on_prompt_start("worker", "summarize [the] diff")
        self.listener.on_data("worker", "first ")
        self.listener.on_data("worker", "[bold]second[/bold]")

        text = self.output.getvalue()
        self.assertIn("[worker] summarize [the] diff", text)
        # Agent output is printed literally, not as console markup
        self.assertIn("first [bold]second[/bold]", text)

    def test_stderr_hidden_by_default(self):
        self.listener.on_stderr("worker", "warning: slow\n")
        self.assertEqual(self.output.getvalue(), "")

        self.listener.show_stderr = True
        self.listener.on_stderr("worker", "warning: slow\n")
        self.assertIn("warning: slow", self.output.getvalue())

    def test_terminal_events(self):
        self.listener.on_prompt_complete(
            PromptCompleteEvent(
                session_name="worker", prompt_text="hi", response="ok", duration_ms=2500
            )
        )
        self.listener.on_prompt_error(
            PromptErrorEvent(
                session_name="worker",
                prompt_text="hi",
                error="Claude exited with code 1 (General error)",
                exit_code=1,
            )
        )
        self.listener.on_prompt_timeout(
            PromptTimeoutEvent(
                session_name="worker",
                timeout_ms=1000,
                prompt_text="hi",
                partial_response="abc",
            )
        )

        text = self.output.getvalue()
        self.assertIn("done in 2.5s", text)
        self.assertIn("Claude exited with code 1 (General error)", text)
        self.assertIn("Prompt timed out after 1000ms (3 chars of partial response kept)", text)


if __name__ == "__main__":
    unittest.main()
