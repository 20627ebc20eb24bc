"""subpump — spawn subprocesses and pump their streams without deadlocking."""

from subpump.errors import (
    EndOfStreamError,
    NonZeroExitError,
    ProcessError,
    ProcessStateError,
    ProcessTimeoutError,
    ResultError,
    SpawnError,
)
from subpump.process import ProcessState, SubProcess, spawn
from subpump.redirects import (
    CallbackOutput,
    FileRedirect,
    Inherit,
    Pipe,
    Readlines,
    SourceInput,
)
from subpump.runner import CapturedOutput, CommandResult, call
from subpump.streams import ProcessInputStream, ProcessOutputStream

__version__ = "0.1.0"

__all__ = [
    "CallbackOutput",
    "CapturedOutput",
    "CommandResult",
    "EndOfStreamError",
    "FileRedirect",
    "Inherit",
    "NonZeroExitError",
    "Pipe",
    "ProcessError",
    "ProcessInputStream",
    "ProcessOutputStream",
    "ProcessState",
    "ProcessStateError",
    "ProcessTimeoutError",
    "Readlines",
    "ResultError",
    "SourceInput",
    "SpawnError",
    "SubProcess",
    "call",
    "spawn",
]
