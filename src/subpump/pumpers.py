"""
pumpers.py — Background threads that move bytes for redirected streams.

One PumperTask per stream direction. A pumper blocks only on its own source,
so a child filling its stdout pipe can never wedge the thread feeding its
stdin (and vice versa).

A pipe closing under a pumper (the child exited or was destroyed) is normal
termination and is handled inside the pumper bodies, around the stream I/O
only. Anything else (typically a user callback raising) escapes the body, is
logged, and is kept on the task so the caller can re-raise it.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

from subpump.streams import ProcessInputStream, ProcessOutputStream

logger = logging.getLogger(__name__)


class PumperTask:
    """A named daemon thread with a completion signal."""

    def __init__(self, name: str, body: Callable[[], None]) -> None:
        self.name = name
        self.exception: BaseException | None = None
        self._body = body
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        logger.debug("Pumper %s started", self.name)
        try:
            self._body()
        except Exception as exc:
            self.exception = exc
            logger.exception("Pumper %s failed", self.name)
        finally:
            self._done.set()
            logger.debug("Pumper %s finished", self.name)

    def start(self) -> None:
        self._thread.start()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the pumper to finish. Returns True if it did."""
        return self._done.wait(timeout)


# ── Pumper bodies ─────────────────────────────────────────────────────────────────

# BrokenPipeError, EBADF, "I/O operation on closed file": the other end of the
# pipe went away. That is how destroy() reaches a pumper.
_CLOSED_PIPE = (OSError, ValueError)


def feed(chunks: Iterable[bytes], stdin: ProcessInputStream) -> None:
    """Copy every chunk into the child's stdin, then close it."""
    try:
        for chunk in chunks:
            if not chunk:
                continue
            try:
                stdin.write(chunk)
            except _CLOSED_PIPE as exc:
                logger.debug("stdin closed while feeding: %s", exc)
                return
        try:
            stdin.flush()
        except _CLOSED_PIPE as exc:
            logger.debug("stdin closed while flushing: %s", exc)
    finally:
        try:
            stdin.close()
        except _CLOSED_PIPE as exc:
            logger.debug("stdin close failed: %s", exc)


def _read_or_eof(read: Callable[[], object], eof: object) -> object:
    try:
        return read()
    except _CLOSED_PIPE as exc:
        logger.debug("Output stream closed while reading: %s", exc)
        return eof


def drain(
    out: ProcessOutputStream,
    callback: Callable[[bytes, int], None],
    pre_read: Callable[[], None] | None = None,
    chunk_size: int = 8192,
) -> None:
    """
    Read whatever is available and hand it to ``callback(data, count)`` until EOF.

    If the callback raises, the rest of the stream is still read (and
    discarded) so the child never blocks on a full pipe; the callback's
    exception is raised once the stream ends.
    """
    buf = bytearray(chunk_size)
    view = memoryview(buf)
    failure: Exception | None = None
    if pre_read is not None:
        pre_read()
    while True:
        count = _read_or_eof(lambda: out.readinto(view), 0)
        if not count:
            break
        if failure is not None:
            continue
        try:
            callback(bytes(view[:count]), count)
        except Exception as exc:
            failure = exc
    if failure is not None:
        raise failure


def drain_lines(
    out: ProcessOutputStream,
    callback: Callable[[str], None],
    encoding: str = "utf-8",
) -> None:
    """Hand each decoded line to ``callback`` until EOF; a failing callback is handled as in drain()."""
    failure: Exception | None = None
    while True:
        line = _read_or_eof(lambda: out.readline(encoding, errors="replace"), None)
        if line is None:
            break
        if failure is not None:
            continue
        try:
            callback(line)
        except Exception as exc:
            failure = exc
    if failure is not None:
        raise failure
