"""
errors.py — Exception taxonomy.

Nothing in subpump retries; every error is surfaced to the caller as soon as
it is detected.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from subpump.runner import CommandResult


class ProcessError(Exception):
    """Base class for every error raised by subpump."""


class SpawnError(ProcessError):
    """The OS refused to create the process (missing binary, permissions, bad cwd)."""

    def __init__(self, command: Sequence[str], reason: str) -> None:
        self.command = list(command)
        self.reason = reason
        super().__init__(f"Failed to spawn {self.command[0] if self.command else '<empty>'}: {reason}")


class ResultError(ProcessError):
    """A finished (or killed) process whose result the caller should see."""

    def __init__(self, result: CommandResult, message: str) -> None:
        self.result = result
        super().__init__(message)


class NonZeroExitError(ResultError):
    def __init__(self, result: CommandResult) -> None:
        super().__init__(
            result,
            f"Command {result.command_str!r} exited with code {result.exit_code}",
        )


class ProcessTimeoutError(ResultError):
    def __init__(self, result: CommandResult, timeout_millis: int) -> None:
        self.timeout_millis = timeout_millis
        super().__init__(
            result,
            f"Command {result.command_str!r} timed out after {timeout_millis}ms",
        )


class ProcessStateError(ProcessError, RuntimeError):
    """An operation is not valid in the handle's current lifecycle phase."""


class EndOfStreamError(ProcessError, EOFError):
    """The stream ended before an exact-length read was satisfied."""

    def __init__(self, requested: int, available: int) -> None:
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient bytes, expected: {requested}, read: {available}")
