"""
Lifecycle notifications for sessions.

A session reports each prompt's progress to its listeners: one start, any
number of data/stderr chunks in arrival order, then exactly one terminal
event (complete, error or timeout). The same outcome is also delivered to
the caller of ``send_prompt``; the two never disagree.
"""

import logging
from typing import Iterable, Optional

from pydantic import BaseModel
from rich.console import Console
from rich.text import Text

logger = logging.getLogger(__name__)


class PromptCompleteEvent(BaseModel):
    session_name: str
    prompt_text: str
    response: str
    duration_ms: int


class PromptErrorEvent(BaseModel):
    session_name: str
    prompt_text: str
    error: str
    exit_code: Optional[int] = None
    classification: Optional[str] = None


class PromptTimeoutEvent(BaseModel):
    session_name: str
    timeout_ms: int
    prompt_text: str
    partial_response: str


class SessionListener:
    """Receives session lifecycle events. Override the methods you need."""

    def on_prompt_start(self, session_name: str, prompt_text: str) -> None:
        pass

    def on_data(self, session_name: str, chunk: str) -> None:
        pass

    def on_stderr(self, session_name: str, chunk: str) -> None:
        pass

    def on_prompt_complete(self, event: PromptCompleteEvent) -> None:
        pass

    def on_prompt_error(self, event: PromptErrorEvent) -> None:
        pass

    def on_prompt_timeout(self, event: PromptTimeoutEvent) -> None:
        pass


def notify(listeners: Iterable[SessionListener], method: str, *args) -> None:
    """Deliver an event to every listener; a failing listener does not stop the rest."""
    for listener in list(listeners):
        try:
            getattr(listener, method)(*args)
        except Exception:
            logger.exception(
                f"Session listener {listener.__class__.__name__}.{method} failed"
            )


class ConsoleSessionListener(SessionListener):
    """Renders session events to a rich console for live output views."""

    def __init__(self, console: Optional[Console] = None, show_stderr: bool = False):
        self.console = console or Console()
        self.show_stderr = show_stderr

    def on_prompt_start(self, session_name: str, prompt_text: str) -> None:
        header = Text()
        header.append(f"[{session_name}] ", style="bold cyan")
        header.append(prompt_text, style="dim")
        self.console.print(header)

    def on_data(self, session_name: str, chunk: str) -> None:
        self.console.print(chunk, end="", markup=False, highlight=False)

    def on_stderr(self, session_name: str, chunk: str) -> None:
        if self.show_stderr:
            self.console.print(Text(chunk.rstrip("\n"), style="dim yellow"))

    def on_prompt_complete(self, event: PromptCompleteEvent) -> None:
        done = Text()
        done.append(f"\n[{event.session_name}] ", style="bold cyan")
        done.append(f"done in {event.duration_ms / 1000:.1f}s", style="green")
        self.console.print(done)

    def on_prompt_error(self, event: PromptErrorEvent) -> None:
        error_msg = Text()
        error_msg.append(f"\n[{event.session_name}] ", style="bold cyan")
        error_msg.append(event.error, style="bold red")
        self.console.print(error_msg)

    def on_prompt_timeout(self, event: PromptTimeoutEvent) -> None:
        warning = Text()
        warning.append(f"\n[{event.session_name}] ", style="bold cyan")
        warning.append(
            f"Prompt timed out after {event.timeout_ms}ms", style="bold yellow"
        )
        if event.partial_response:
            warning.append(
                f" ({len(event.partial_response)} chars of partial response kept)",
                style="dim",
            )
        self.console.print(warning)
