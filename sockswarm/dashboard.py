"""Rich live dashboard fed by the run's progress query."""

from __future__ import annotations

import asyncio
import sys

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .logging_config import get_logger
from .models import ProgressSnapshot, RunState
from .runner import LoadTestRun

logger = get_logger("dashboard")

LIVE_REFRESH_PER_SEC = 2
DASHBOARD_POLL_SEC = 0.25
# When stdout is not a TTY (Docker without -it, CI), one status line per interval
STREAMING_FALLBACK_INTERVAL_SEC = 1.0


def build_progress_table(progress: ProgressSnapshot) -> Table:
    """Build a single Rich table with current progress."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")
    table.add_row("State", progress.state.value)
    table.add_row("Clients completed", f"{progress.completed}/{progress.total_expected}")
    table.add_row("Progress", f"{progress.progress_percent:.1f}%")
    table.add_row("Connected clients", str(progress.connected_clients))
    table.add_row("Messages sent", str(progress.messages_sent))
    table.add_row("Messages received", str(progress.messages_received))
    table.add_row("Errors", str(progress.error_count))
    table.add_row("Elapsed", f"{progress.elapsed_seconds:.1f}s")
    return table


def create_live_panel(run: LoadTestRun) -> Panel:
    """Create Rich Panel for live display."""
    progress = run.progress()
    title = Text()
    title.append("sockswarm ", style="bold magenta")
    title.append(f"| {run.target.url} | {progress.elapsed_seconds:.1f}s", style="dim")
    title.append(f" | {progress.progress_percent:.0f}%", style="bold yellow")
    return Panel(build_progress_table(progress), title=title, border_style="blue")


def format_progress_line(progress: ProgressSnapshot) -> str:
    return (
        f"sockswarm | {progress.elapsed_seconds:.1f}s | {progress.state.value} | "
        f"clients={progress.completed}/{progress.total_expected} connected={progress.connected_clients} "
        f"sent={progress.messages_sent} received={progress.messages_received} errors={progress.error_count}\n"
    )


def _stdout_is_tty() -> bool:
    """True if stdout is a TTY (interactive terminal). False in Docker without -it, CI, pipes."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


async def _run_streaming_fallback(run: LoadTestRun, run_task: asyncio.Task) -> None:
    """Print one line per interval when not a TTY so output streams in real time."""
    while not run_task.done():
        sys.stdout.write(format_progress_line(run.progress()))
        sys.stdout.flush()
        await asyncio.wait({run_task}, timeout=STREAMING_FALLBACK_INTERVAL_SEC)


async def watch_run(run: LoadTestRun, run_task: asyncio.Task, console: Console | None = None) -> None:
    """Display progress until run_task finishes."""
    if not _stdout_is_tty():
        await _run_streaming_fallback(run, run_task)
        return
    console = console or Console()
    with Live(create_live_panel(run), console=console, refresh_per_second=LIVE_REFRESH_PER_SEC) as live:
        while not run_task.done():
            live.update(create_live_panel(run))
            await asyncio.wait({run_task}, timeout=DASHBOARD_POLL_SEC)
        if run.state is RunState.COMPLETED:
            live.update(create_live_panel(run))
