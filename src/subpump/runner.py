"""
runner.py — Run a command to completion and capture stdout, stderr, and exit code.

Key design: stdout and stderr are drained concurrently by pumper threads while
the caller blocks on the process, so a chatty child can never fill a pipe and
stall. On timeout the child is killed and whatever was captured so far is
handed back inside the error.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from subpump.config import Settings, get_config
from subpump.errors import NonZeroExitError, ProcessTimeoutError
from subpump.process import SubProcess, spawn
from subpump.redirects import CallbackOutput, Pipe, as_input, as_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapturedOutput:
    """Bytes captured from one stream, with the usual decodings."""

    data: bytes = b""

    def __bytes__(self) -> bytes:
        return self.data

    def __len__(self) -> int:
        return len(self.data)

    def string(self, encoding: str = "utf-8", errors: str = "replace") -> str:
        return self.data.decode(encoding, errors)

    def trim(self, encoding: str = "utf-8") -> str:
        return self.string(encoding).strip()

    def lines(self, encoding: str = "utf-8") -> list[str]:
        """Split on \\n, \\r or \\r\\n; a trailing terminator does not add an empty line."""
        return self.string(encoding).splitlines()


@dataclass
class CommandResult:
    command: list[str]
    exit_code: int
    out: CapturedOutput = field(default_factory=CapturedOutput)
    err: CapturedOutput = field(default_factory=CapturedOutput)
    duration: float = 0.0

    @property
    def command_str(self) -> str:
        # Quote the way the platform shell would, so the string can be pasted back.
        if sys.platform == "win32":
            return subprocess.list2cmdline(self.command)
        return shlex.join(self.command)

    @property
    def stdout(self) -> str:
        return self.out.string()

    @property
    def stderr(self) -> str:
        return self.err.string()


def _collector(chunks: list[bytes]) -> CallbackOutput:
    def collect(data: bytes, count: int) -> None:
        chunks.append(data[:count])
    return CallbackOutput(collect)


def _raise_pumper_failure(proc: SubProcess) -> None:
    for task in proc.pumpers:
        if task.exception is not None:
            raise task.exception


def call(
    command: str | os.PathLike | Sequence[str | os.PathLike],
    cwd: str | os.PathLike | None = None,
    env: Mapping[str, str | None] | None = None,
    stdin: object = None,
    stdout: object = Pipe,
    stderr: object = Pipe,
    check: bool = True,
    timeout: int = -1,
    propagate_env: bool = True,
    merge_errors: bool = False,
    settings: Settings | None = None,
) -> CommandResult:
    """
    Run a command, wait for it, and return its exit code and captured output.

    Args:
        command:  Program followed by its arguments, e.g. ["pytest", "tests/"]
        stdin:    bytes/str/file/path/iterable to feed, or any input policy.
                  None (or Pipe) gives the child an immediately-closed stdin.
        stdout:   Pipe captures into CommandResult.out; any other output policy
                  sends the bytes there instead and leaves ``out`` empty.
        stderr:   Same as stdout, captured into CommandResult.err.
        check:    Raise NonZeroExitError when the exit code is not 0.
        timeout:  Milliseconds before the child is killed; negative means no limit.

    Returns:
        CommandResult with captured stdout, stderr, exit code, and wall-clock duration.

    Raises:
        SpawnError:          the process could not be started.
        NonZeroExitError:    ``check`` is set and the exit code is not 0.
        ProcessTimeoutError: ``timeout`` elapsed; carries the partial output.
    """
    settings = settings or get_config()
    stdin_policy = as_input(stdin)
    stdout_policy = as_output(stdout)
    stderr_policy = as_output(stderr)

    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    if stdout_policy is Pipe:
        stdout_policy = _collector(out_chunks)
    if stderr_policy is Pipe and not merge_errors:
        stderr_policy = _collector(err_chunks)

    start = time.monotonic()
    proc = spawn(
        command,
        cwd=cwd,
        env=env,
        stdin=stdin_policy,
        stdout=stdout_policy,
        stderr=stderr_policy,
        propagate_env=propagate_env,
        merge_errors=merge_errors,
        buffer_size=settings.buffer_size,
        chunk_size=settings.chunk_size,
    )

    def result() -> CommandResult:
        # Pumpers may still be appending after a timeout; join() on a copy.
        return CommandResult(
            command=proc.command,
            exit_code=proc.exit_code(),
            out=CapturedOutput(b"".join(list(out_chunks))),
            err=CapturedOutput(b"".join(list(err_chunks))),
            duration=time.monotonic() - start,
        )

    try:
        if stdin_policy is Pipe:
            proc.stdin.close()

        if not proc.wait_for(timeout):
            proc.destroy_forcibly()
            proc.wait_for()
            # Grandchildren may still hold the pipes open; don't wait on them forever.
            if not proc.join_pumpers(settings.drain_grace):
                logger.warning(
                    "Output pumpers for pid=%s still running %.1fs after kill; returning partial output",
                    proc.pid,
                    settings.drain_grace,
                )
            raise ProcessTimeoutError(result(), timeout)

        proc.join_pumpers()
    except BaseException:
        proc.destroy_forcibly()
        raise
    finally:
        proc.release_streams()

    _raise_pumper_failure(proc)
    completed = result()
    logger.debug("%s exited with %s in %.2fs", completed.command_str, completed.exit_code, completed.duration)
    if check and completed.exit_code != 0:
        raise NonZeroExitError(completed)
    return completed

