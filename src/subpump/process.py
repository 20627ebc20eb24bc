"""
process.py — The SubProcess handle and the spawn() operation.

spawn() asks each redirect policy how to wire its descriptor, starts the OS
process, then asks the same policies for pumpers and starts them. The handle's
lifecycle only moves forward: SPAWNING → RUNNING → TERMINATED.
"""

from __future__ import annotations

import enum
import logging
import os
import subprocess
import threading
import time
from typing import IO, Mapping, Sequence

from subpump.config import DEFAULT_DRAIN_GRACE, get_config
from subpump.errors import ProcessStateError, SpawnError
from subpump.pumpers import PumperTask
from subpump.redirects import (
    Pipe,
    Redirect,
    RedirectKind,
    as_input,
    as_output,
)
from subpump.streams import ProcessInputStream, ProcessOutputStream

logger = logging.getLogger(__name__)


class ProcessState(enum.IntEnum):
    SPAWNING = 0
    RUNNING = 1
    TERMINATED = 2


class SubProcess:
    """
    A spawned child process that may or may not have finished.

    Liveness and exit status always come from the OS; the handle never
    invents an exit code. Entering TERMINATED does not stop pumpers, which
    keep draining until they see end of stream.
    """

    def __init__(
        self,
        wrapped: subprocess.Popen,
        command: Sequence[str],
        buffer_size: int,
        drain_grace: float = DEFAULT_DRAIN_GRACE,
    ) -> None:
        self.wrapped = wrapped
        self.command = list(command)
        self.drain_grace = drain_grace
        self.stdin = ProcessInputStream(wrapped.stdin)
        self.stdout = ProcessOutputStream(wrapped.stdout, buffer_size)
        self.stderr = ProcessOutputStream(wrapped.stderr, buffer_size)
        self.input_pumper: PumperTask | None = None
        self.output_pumper: PumperTask | None = None
        self.error_pumper: PumperTask | None = None
        self._state = ProcessState.SPAWNING
        self._state_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<SubProcess pid={self.pid} state={self._state.name} command={self.command!r}>"

    def __enter__(self) -> SubProcess:
        return self

    def __exit__(self, *exc_info) -> None:
        # Like Popen: stop the child, reap it, then give back its pipes.
        self.close()
        self.wait_for()
        self.join_pumpers(self.drain_grace)
        self.release_streams()

    # ── lifecycle phase ─────────────────────────────────────────────────────────

    def _advance(self, state: ProcessState) -> None:
        with self._state_lock:
            if state <= self._state:
                return
            self._state = state
        if state is ProcessState.TERMINATED:
            logger.debug("Process pid=%s terminated with code %s", self.pid, self.wrapped.returncode)

    def _start_pumpers(
        self,
        input_pumper: PumperTask | None,
        output_pumper: PumperTask | None,
        error_pumper: PumperTask | None,
    ) -> None:
        self.input_pumper = input_pumper
        self.output_pumper = output_pumper
        self.error_pumper = error_pumper
        for task in self.pumpers:
            task.start()
        self._advance(ProcessState.RUNNING)

    def _poll(self) -> int | None:
        code = self.wrapped.poll()
        if code is not None:
            self._advance(ProcessState.TERMINATED)
        return code

    @property
    def state(self) -> ProcessState:
        if self._state is not ProcessState.TERMINATED:
            self._poll()
        return self._state

    @property
    def pid(self) -> int:
        return self.wrapped.pid

    @property
    def pumpers(self) -> list[PumperTask]:
        return [t for t in (self.input_pumper, self.output_pumper, self.error_pumper) if t is not None]

    # ── queries ─────────────────────────────────────────────────────────────────

    def exit_code(self) -> int:
        """
        The child's exit code. Negative values mean "killed by that signal" (POSIX).

        Raises ProcessStateError if the child has not terminated yet.
        """
        code = self._poll()
        if code is None:
            raise ProcessStateError(f"Process pid={self.pid} has not terminated")
        return code

    def is_alive(self) -> bool:
        return self._poll() is None

    # ── termination ─────────────────────────────────────────────────────────────

    def destroy(self) -> None:
        """Ask the child to stop (SIGTERM on POSIX)."""
        if self._poll() is None:
            logger.debug("Terminating pid=%s", self.pid)
            self.wrapped.terminate()

    def destroy_forcibly(self) -> None:
        """Kill the child (SIGKILL on POSIX)."""
        if self._poll() is None:
            logger.debug("Killing pid=%s", self.pid)
            self.wrapped.kill()

    def close(self) -> None:
        self.destroy()

    def wait_for(self, timeout_millis: int = -1) -> bool:
        """
        Block until the child terminates or ``timeout_millis`` elapses.

        A negative timeout waits indefinitely. Returns True if the child has
        terminated by the time this returns.
        """
        if timeout_millis is None or timeout_millis < 0:
            self.wrapped.wait()
        else:
            try:
                self.wrapped.wait(timeout=timeout_millis / 1000)
            except subprocess.TimeoutExpired:
                return False
        self._advance(ProcessState.TERMINATED)
        return True

    def join_pumpers(self, timeout: float | None = None) -> bool:
        """
        Wait for every pumper to finish, sharing one ``timeout`` (seconds).

        Returns True if all of them finished.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for task in self.pumpers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not task.join(remaining):
                return False
        return True

    def release_streams(self) -> None:
        """
        Close the pipes to and from the child.

        A stream whose pumper is still running is left open; that pumper owns
        it until end of stream.
        """
        pairs = (
            (self.stdin, self.input_pumper),
            (self.stdout, self.output_pumper),
            (self.stderr, self.error_pumper),
        )
        for stream, task in pairs:
            if task is None or task.done:
                stream.close()


# ── Spawning ──────────────────────────────────────────────────────────────────────

def _argv(command: str | os.PathLike | Sequence[str | os.PathLike]) -> list[str]:
    if isinstance(command, (str, os.PathLike)):
        command = [command]
    argv = [os.fspath(arg) for arg in command]
    if not argv:
        raise ValueError("command must not be empty")
    return argv


def _build_env(
    overlay: Mapping[str, str | None] | None,
    propagate_env: bool,
) -> dict[str, str] | None:
    """Overlay ``overlay`` on the inherited environment. A None value unsets the variable."""
    if overlay is None and propagate_env:
        return None
    env: dict[str, str] = dict(os.environ) if propagate_env else {}
    for key, value in (overlay or {}).items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = value
    return env


def _wire(redirect: Redirect, reading: bool, opened: list[IO[bytes]]):
    """Translate a wiring directive into a Popen stdin/stdout/stderr argument."""
    if redirect.kind is RedirectKind.INHERIT:
        return None
    if redirect.kind is RedirectKind.PIPE:
        return subprocess.PIPE
    mode = "rb" if reading else ("ab" if redirect.append else "wb")
    handle = open(redirect.path, mode)
    opened.append(handle)
    return handle


def spawn(
    command: str | os.PathLike | Sequence[str | os.PathLike],
    cwd: str | os.PathLike | None = None,
    env: Mapping[str, str | None] | None = None,
    stdin: object = Pipe,
    stdout: object = Pipe,
    stderr: object = Pipe,
    propagate_env: bool = True,
    merge_errors: bool = False,
    buffer_size: int | None = None,
    chunk_size: int | None = None,
) -> SubProcess:
    """
    Start ``command`` and return its handle without waiting for it.

    Args:
        command:       Program followed by its arguments.
        cwd:           Working directory (defaults to the current one).
        env:           Variables overlaid on the inherited environment.
        stdin:         Input policy, or a value accepted by redirects.as_input().
        stdout/stderr: Output policies, or values accepted by redirects.as_output().
        propagate_env: When False the child sees only ``env``.
        merge_errors:  Send stderr into the stdout pipe.
        buffer_size:   Capacity of each ProcessOutputStream buffer.
        chunk_size:    Transient buffer size used by pumpers.

    Raises:
        SpawnError: the OS could not create the process.
    """
    settings = get_config(buffer_size=buffer_size, chunk_size=chunk_size)
    argv = _argv(command)
    stdin_policy = as_input(stdin)
    stdout_policy = as_output(stdout)
    stderr_policy = as_output(stderr)
    if merge_errors and stderr_policy is not Pipe:
        raise ValueError("merge_errors=True cannot be combined with a stderr redirect")

    opened: list[IO[bytes]] = []
    try:
        stdin_arg = _wire(stdin_policy.redirect_from(), True, opened)
        stdout_arg = _wire(stdout_policy.redirect_to(), False, opened)
        stderr_arg = subprocess.STDOUT if merge_errors else _wire(stderr_policy.redirect_to(), False, opened)
        wrapped = subprocess.Popen(
            argv,
            cwd=os.fspath(cwd) if cwd is not None else None,
            env=_build_env(env, propagate_env),
            stdin=stdin_arg,
            stdout=stdout_arg,
            stderr=stderr_arg,
            bufsize=0,
        )
    except OSError as exc:
        raise SpawnError(argv, exc.strerror or str(exc)) from exc
    finally:
        # The child holds its own copies of redirected file descriptors.
        for handle in opened:
            handle.close()

    logger.debug("Spawned pid=%s argv=%s cwd=%s", wrapped.pid, argv, cwd)
    proc = SubProcess(wrapped, argv, settings.buffer_size, settings.drain_grace)

    def task(stream: str, body) -> PumperTask | None:
        return PumperTask(f"subpump-{stream}-{wrapped.pid}", body) if body is not None else None

    proc._start_pumpers(
        task("stdin", stdin_policy.input_pumper(proc.stdin, settings.chunk_size)),
        task("stdout", stdout_policy.output_pumper(proc.stdout, settings.chunk_size)),
        None if merge_errors else task("stderr", stderr_policy.output_pumper(proc.stderr, settings.chunk_size)),
    )
    return proc
