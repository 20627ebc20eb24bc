"""
redirects.py — Where a child's stdin/stdout/stderr come from and go to.

Each policy answers two questions:
  redirect_from()/redirect_to()   how the OS should wire the descriptor
  input_pumper()/output_pumper()  the background work (if any) needed to move bytes

Inherit, Pipe and FileRedirect are pure OS wiring. SourceInput, CallbackOutput
and Readlines ask for a pipe and a pumper that shovels bytes through it.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Iterable, Iterator, Union

from subpump.pumpers import drain, drain_lines, feed
from subpump.streams import ProcessInputStream, ProcessOutputStream

PumperBody = Callable[[], None]


# ── Wiring directives ─────────────────────────────────────────────────────────────

class RedirectKind(enum.Enum):
    INHERIT = "inherit"
    PIPE = "pipe"
    FILE = "file"


@dataclass(frozen=True)
class Redirect:
    kind: RedirectKind
    path: str | None = None
    append: bool = False


_INHERIT = Redirect(RedirectKind.INHERIT)
_PIPE = Redirect(RedirectKind.PIPE)


# ── Policies ──────────────────────────────────────────────────────────────────────

class _InheritPolicy:
    """Share the descriptor with the current process."""

    def redirect_from(self) -> Redirect:
        return _INHERIT

    def redirect_to(self) -> Redirect:
        return _INHERIT

    def input_pumper(self, stdin: ProcessInputStream, chunk_size: int) -> PumperBody | None:
        return None

    def output_pumper(self, out: ProcessOutputStream, chunk_size: int) -> PumperBody | None:
        return None

    def __repr__(self) -> str:
        return "Inherit"


class _PipePolicy:
    """Create an OS pipe and leave it to the caller via SubProcess.stdin/stdout/stderr."""

    def redirect_from(self) -> Redirect:
        return _PIPE

    def redirect_to(self) -> Redirect:
        return _PIPE

    def input_pumper(self, stdin: ProcessInputStream, chunk_size: int) -> PumperBody | None:
        return None

    def output_pumper(self, out: ProcessOutputStream, chunk_size: int) -> PumperBody | None:
        return None

    def __repr__(self) -> str:
        return "Pipe"


Inherit = _InheritPolicy()
Pipe = _PipePolicy()


@dataclass(frozen=True)
class FileRedirect:
    """Read stdin from, or write stdout/stderr to, a file. The OS does the copying."""

    path: str | os.PathLike
    append: bool = False

    def redirect_from(self) -> Redirect:
        if self.append:
            raise ValueError("append=True only applies to stdout/stderr redirects")
        return Redirect(RedirectKind.FILE, os.fspath(self.path))

    def redirect_to(self) -> Redirect:
        return Redirect(RedirectKind.FILE, os.fspath(self.path), append=self.append)

    def input_pumper(self, stdin: ProcessInputStream, chunk_size: int) -> PumperBody | None:
        return None

    def output_pumper(self, out: ProcessOutputStream, chunk_size: int) -> PumperBody | None:
        return None


@dataclass(frozen=True)
class SourceInput:
    """
    Feed stdin from ``source`` on a background thread, then close it.

    ``source`` may be bytes-like, a str (sent as UTF-8), a binary file object,
    or an iterable of bytes/str chunks.
    """

    source: object

    def redirect_from(self) -> Redirect:
        return _PIPE

    def input_pumper(self, stdin: ProcessInputStream, chunk_size: int) -> PumperBody | None:
        return partial(feed, iter_source(self.source, chunk_size), stdin)


@dataclass(frozen=True)
class CallbackOutput:
    """
    Hand every chunk read from stdout/stderr to ``callback(data, count)``.

    ``pre_read`` runs once on the pumper thread before the first read.
    """

    callback: Callable[[bytes, int], None]
    pre_read: Callable[[], None] | None = field(default=None)

    def redirect_to(self) -> Redirect:
        return _PIPE

    def output_pumper(self, out: ProcessOutputStream, chunk_size: int) -> PumperBody | None:
        return partial(drain, out, self.callback, self.pre_read, chunk_size)


@dataclass(frozen=True)
class Readlines:
    """Hand every decoded line of stdout/stderr to ``callback(line)``."""

    callback: Callable[[str], None]
    encoding: str = "utf-8"

    def redirect_to(self) -> Redirect:
        return _PIPE

    def output_pumper(self, out: ProcessOutputStream, chunk_size: int) -> PumperBody | None:
        return partial(drain_lines, out, self.callback, self.encoding)


ProcessInput = Union[_InheritPolicy, _PipePolicy, FileRedirect, SourceInput]
ProcessOutput = Union[_InheritPolicy, _PipePolicy, FileRedirect, CallbackOutput, Readlines]

_INPUT_POLICIES = (_InheritPolicy, _PipePolicy, FileRedirect, SourceInput)
_OUTPUT_POLICIES = (_InheritPolicy, _PipePolicy, FileRedirect, CallbackOutput, Readlines)


# ── Sources ───────────────────────────────────────────────────────────────────────

def iter_source(source: object, chunk_size: int = 8192) -> Iterator[bytes]:
    """Yield ``source`` as a sequence of byte chunks."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        for start in range(0, len(data), chunk_size):
            yield data[start:start + chunk_size]
    elif isinstance(source, str):
        yield from iter_source(source.encode("utf-8"), chunk_size)
    elif hasattr(source, "read"):
        while True:
            chunk = source.read(chunk_size)
            if not chunk:
                return
            yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk
    elif isinstance(source, Iterable):
        for chunk in source:
            yield chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
    else:
        raise TypeError(f"Cannot use {type(source).__name__} as a stdin source")


# ── Coercion ──────────────────────────────────────────────────────────────────────

def as_input(value: object) -> ProcessInput:
    """Turn a convenience value into a stdin policy."""
    if value is None:
        return Pipe
    if isinstance(value, _INPUT_POLICIES):
        return value
    if isinstance(value, os.PathLike):
        return FileRedirect(value)
    if isinstance(value, (CallbackOutput, Readlines)):
        raise TypeError(f"{type(value).__name__} can only redirect stdout/stderr")
    if not (isinstance(value, (bytes, bytearray, memoryview, str, Iterable)) or hasattr(value, "read")):
        raise TypeError(f"Cannot use {type(value).__name__} as a stdin source")
    return SourceInput(value)


def as_output(value: object) -> ProcessOutput:
    """Turn a convenience value into a stdout/stderr policy."""
    if value is None:
        return Pipe
    if isinstance(value, _OUTPUT_POLICIES):
        return value
    if isinstance(value, os.PathLike):
        return FileRedirect(value)
    if isinstance(value, SourceInput):
        raise TypeError("SourceInput can only redirect stdin")
    if callable(value):
        return CallbackOutput(value)
    raise TypeError(f"Cannot use {type(value).__name__} as an output redirect")
