"""
Exit classification and backoff for deciding whether a failed agent
process is worth retrying.

A configuration error (binary missing, bad arguments) must never be
retried forever, while transient terminations (SIGTERM, resource limits)
should be.
"""

import random
import signal as signal_module
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class ExitClassification(str, Enum):
    SUCCESS = "Success"
    RETRYABLE = "Retryable"
    PERMANENT = "Permanent"


@dataclass(frozen=True)
class ExitStatus:
    """Classification of a process termination plus a human readable reason."""

    classification: ExitClassification
    reason: str


SignalLike = Union[str, int, signal_module.Signals, None]

_RETRYABLE_SIGNALS = {"SIGTERM", "SIGINT"}
_FATAL_SIGNALS = {"SIGSEGV", "SIGABRT"}

_PERMANENT_CODES = {
    2: "Misuse of shell command",
    126: "Command not executable",
    127: "Command not found",
    128: "Invalid exit argument",
}


def _signal_name(sig: SignalLike) -> Optional[str]:
    if sig is None:
        return None
    if isinstance(sig, signal_module.Signals):
        return sig.name
    if isinstance(sig, int):
        try:
            return signal_module.Signals(sig).name
        except ValueError:
            return f"signal {sig}"
    return str(sig)


def classify_exit_code(code: Optional[int], signal: SignalLike = None) -> ExitStatus:
    """
    Classify a process exit to determine retry behavior.

    Args:
        code: Process exit code (None if killed by a signal)
        signal: Signal that killed the process, as a name such as "SIGTERM",
            a signal.Signals member or a signal number (None if it exited)

    Returns:
        ExitStatus with the classification and a reason
    """
    if code == 0:
        return ExitStatus(ExitClassification.SUCCESS, "Normal termination")

    name = _signal_name(signal)
    if name:
        if name in _RETRYABLE_SIGNALS:
            return ExitStatus(ExitClassification.RETRYABLE, f"Killed by {name}")
        if name == "SIGKILL":
            return ExitStatus(ExitClassification.RETRYABLE, "Force killed (SIGKILL)")
        if name in _FATAL_SIGNALS:
            return ExitStatus(ExitClassification.PERMANENT, f"Fatal signal: {name}")
        return ExitStatus(ExitClassification.RETRYABLE, f"Signal: {name}")

    if code is not None:
        if code == 1:
            return ExitStatus(
                ExitClassification.RETRYABLE, "General error (exit code 1)"
            )
        if code in _PERMANENT_CODES:
            return ExitStatus(
                ExitClassification.PERMANENT,
                f"{_PERMANENT_CODES[code]} (exit code {code})",
            )
        if 129 <= code <= 192:
            # 128 + signal number, e.g. 130 = 128 + SIGINT
            sig_num = code - 128
            return ExitStatus(
                ExitClassification.RETRYABLE,
                f"Terminated by signal {sig_num} (exit code {code})",
            )
        return ExitStatus(ExitClassification.RETRYABLE, f"Exit code {code}")

    return ExitStatus(ExitClassification.RETRYABLE, "Unknown termination")


def classify_returncode(returncode: Optional[int]) -> ExitStatus:
    """Classify a subprocess ``returncode`` (negative means killed by signal)."""
    if returncode is not None and returncode < 0:
        return classify_exit_code(None, -returncode)
    return classify_exit_code(returncode, None)


def calculate_backoff(
    attempt: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 30000,
    jitter_ms: int = 500,
) -> int:
    """
    Calculate exponential backoff with jitter.

    Formula: min(max_delay, base_delay * 2^attempt) + uniform(0, jitter)

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay_ms: Base delay in milliseconds
        max_delay_ms: Maximum delay cap in milliseconds
        jitter_ms: Random jitter range in milliseconds

    Returns:
        Delay in whole milliseconds
    """
    capped = min(base_delay_ms * (2 ** attempt), max_delay_ms)
    return int(capped + random.uniform(0, jitter_ms))
