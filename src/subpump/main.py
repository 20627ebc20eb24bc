"""
main.py — CLI entry point (Typer app).

Runs COMMAND through runner.call(), echoing its output live while capturing
it, then prints a short summary: success line, failure panel, or timeout panel.
"""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from subpump import __version__
from subpump.config import get_config
from subpump.errors import NonZeroExitError, ProcessTimeoutError, SpawnError
from subpump.formatter import print_failure, print_spawn_error, print_success, print_timeout
from subpump.redirects import CallbackOutput, FileRedirect, Inherit
from subpump.runner import CapturedOutput, CommandResult, call

app = typer.Typer(
    name="subpump",
    help="Run a command with its output streamed live and summarised on exit.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

EXIT_TIMEOUT = 124
EXIT_SPAWN_FAILED = 127


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"subpump {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    logging.getLogger("subpump").setLevel("DEBUG" if verbose else get_config().log_level)


def _parse_env(pairs: list[str] | None) -> dict[str, str] | None:
    if not pairs:
        return None
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


class _Tee:
    """Collect a stream's chunks and, unless quiet, copy them to our own stream."""

    def __init__(self, sink, quiet: bool) -> None:
        self.chunks: list[bytes] = []
        self._sink = sink
        self._quiet = quiet
        self._lock = threading.Lock()

    def __call__(self, data: bytes, count: int) -> None:
        self.chunks.append(data[:count])
        if self._quiet:
            return
        with self._lock:
            buffer = getattr(self._sink, "buffer", None)
            if buffer is not None:
                self._sink.flush()
                buffer.write(data[:count])
                buffer.flush()
            else:
                self._sink.write(data[:count].decode("utf-8", errors="replace"))
                self._sink.flush()

    @property
    def captured(self) -> CapturedOutput:
        return CapturedOutput(b"".join(self.chunks))


def _exit_status(code: int) -> int:
    # Killed by signal N shows up as -N; report it the way shells do.
    return 128 - code if code < 0 else code


@app.command(
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def main(
    ctx: typer.Context,
    timeout: Annotated[int, typer.Option("--timeout", help="Kill the command after this many milliseconds (-1 = never).")] = -1,
    cwd: Annotated[Path | None, typer.Option("--cwd", help="Working directory for the command.")] = None,
    env: Annotated[list[str] | None, typer.Option("--env", help="KEY=VALUE added to the environment (repeatable).")] = None,
    stdin: Annotated[str | None, typer.Option("--stdin", help="File to feed as stdin, or '-' to share this terminal's stdin.")] = None,
    stdout: Annotated[Path | None, typer.Option("--stdout", help="Write stdout to this file instead of the terminal.")] = None,
    append: Annotated[bool, typer.Option("--append", help="Append to the --stdout file instead of truncating it.")] = False,
    no_check: Annotated[bool, typer.Option("--no-check", help="Always exit 0 when the command ran, whatever its exit code.")] = False,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Capture output without echoing it.")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log process lifecycle events.")] = False,
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version and exit."),
    ] = None,
) -> None:
    """
    Run COMMAND [ARGS]... and summarise how it went.

    Example: subpump --timeout 5000 -- pytest tests/
    """
    command = ctx.args
    if not command:
        console.print("[red]Error:[/red] No command provided. Example: subpump -- pytest tests/")
        raise typer.Exit(1)

    _configure_logging(verbose)

    if stdin == "-":
        stdin_policy = Inherit
    elif stdin is not None:
        stdin_policy = FileRedirect(Path(stdin))
    else:
        stdin_policy = None

    out_tee = _Tee(sys.stdout, quiet)
    err_tee = _Tee(sys.stderr, quiet)
    stdout_policy = FileRedirect(stdout, append=append) if stdout is not None else CallbackOutput(out_tee)

    def with_capture(result: CommandResult) -> CommandResult:
        return replace(result, out=out_tee.captured, err=err_tee.captured)

    try:
        result = call(
            command,
            cwd=cwd,
            env=_parse_env(env),
            stdin=stdin_policy,
            stdout=stdout_policy,
            stderr=CallbackOutput(err_tee),
            check=not no_check,
            timeout=timeout,
        )
    except SpawnError as exc:
        print_spawn_error(exc, console)
        raise typer.Exit(EXIT_SPAWN_FAILED)
    except ProcessTimeoutError as exc:
        exc.result = with_capture(exc.result)
        print_timeout(exc, console)
        raise typer.Exit(EXIT_TIMEOUT)
    except NonZeroExitError as exc:
        exc.result = with_capture(exc.result)
        print_failure(exc, console)
        raise typer.Exit(_exit_status(exc.result.exit_code))

    if result.exit_code == 0:
        print_success(result, console)
        raise typer.Exit(0)

    # --no-check: the command failed but we were asked not to treat that as an error.
    print_failure(NonZeroExitError(with_capture(result)), console)
    raise typer.Exit(0)
