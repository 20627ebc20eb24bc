"""
formatter.py — Rich terminal output for the subpump command line.

Public API:
  print_success(result, console)
  print_failure(error, console)
  print_timeout(error, console)
  print_spawn_error(error, console)
"""

from __future__ import annotations

import sys

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from subpump.errors import NonZeroExitError, ProcessTimeoutError, SpawnError
from subpump.runner import CommandResult

# ── Shared console (overridable per-call for testing) ────────────────────────────

# Windows consoles may default to cp1252, which cannot encode the ✓/✗ glyphs.
def _make_console() -> Console:
    if sys.platform == "win32":
        try:
            if hasattr(sys.stdout, "reconfigure"):
                sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        except (OSError, ValueError):
            pass
    return Console(legacy_windows=False)


_console = _make_console()


def _con(console: Console | None) -> Console:
    return console if console is not None else _console


# ── Colour tokens ────────────────────────────────────────────────────────────────

_RED       = "bold red"
_RED_DIM   = "red"
_GREEN     = "bold green"
_YELLOW    = "bold yellow"
_CYAN_DIM  = "dim cyan"
_DIM       = "dim"

STDERR_TAIL_LINES = 10


# ── Helpers ──────────────────────────────────────────────────────────────────────

def _tail(lines: list[str], limit: int = STDERR_TAIL_LINES) -> list[str]:
    if len(lines) <= limit:
        return lines
    return [f"… {len(lines) - limit} earlier lines"] + lines[-limit:]


def _result_table(result: CommandResult) -> Table:
    """Two-column summary: command, exit code, duration, byte counts."""
    tbl = Table.grid(padding=(0, 2))
    tbl.add_column(style=_CYAN_DIM, no_wrap=True)
    tbl.add_column()

    tbl.add_row("command", result.command_str)
    tbl.add_row("exit code", str(result.exit_code))
    tbl.add_row("duration", f"{result.duration:.2f}s")
    tbl.add_row("stdout", f"{len(result.out)} bytes")
    tbl.add_row("stderr", f"{len(result.err)} bytes")
    return tbl


def _stderr_block(result: CommandResult) -> list:
    lines = result.err.lines()
    if not lines:
        return []
    items: list = [Text(), Text("stderr", style=_DIM)]
    for line in _tail(lines):
        items.append(Text(f"  {line}", style=_RED_DIM))
    return items


# ── Public renderers ─────────────────────────────────────────────────────────────

def print_success(result: CommandResult, console: Console | None = None) -> None:
    con = _con(console)
    con.print()
    con.print(f"[{_GREEN}]✓[/{_GREEN}] Command succeeded in {result.duration:.2f}s")


def print_failure(error: NonZeroExitError, console: Console | None = None) -> None:
    """The command ran but exited non-zero."""
    con = _con(console)
    result = error.result

    header = Text()
    header.append("✗  ", style=_RED)
    header.append(f"exited with code {result.exit_code}", style=_RED)

    panel = Panel(
        Group(header, Text(), _result_table(result), *_stderr_block(result)),
        title="[bold]subpump[/bold]",
        border_style=_DIM,
        padding=(0, 1),
    )
    con.print()
    con.print(panel)


def print_timeout(error: ProcessTimeoutError, console: Console | None = None) -> None:
    """The command was killed after its timeout; show what it produced first."""
    con = _con(console)
    result = error.result

    header = Text()
    header.append("⏱  ", style=_YELLOW)
    header.append(f"timed out after {error.timeout_millis}ms and was killed", style=_YELLOW)

    items: list = [header, Text(), _result_table(result)]
    partial = result.out.lines()
    if partial:
        items += [Text(), Text("partial stdout", style=_DIM)]
        items += [Text(f"  {line}") for line in _tail(partial)]
    items += _stderr_block(result)

    panel = Panel(
        Group(*items),
        title="[bold]subpump[/bold]",
        border_style=_DIM,
        padding=(0, 1),
    )
    con.print()
    con.print(panel)


def print_spawn_error(error: SpawnError, console: Console | None = None) -> None:
    """The OS could not start the command at all."""
    con = _con(console)

    header = Text()
    header.append("✗  ", style=_RED)
    header.append(f"could not start {error.command[0] if error.command else 'command'}", style=_RED)

    panel = Panel(
        Group(header, Text(f"  {error.reason}", style=_RED_DIM)),
        title="[bold]subpump[/bold]",
        border_style=_DIM,
        padding=(0, 1),
    )
    con.print()
    con.print(panel)
