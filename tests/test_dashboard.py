"""Unit tests for dashboard (progress table, panel, streaming fallback)."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

from rich.console import Console

from sockswarm.credentials import StaticCredentialSource
from sockswarm.dashboard import build_progress_table, create_live_panel, format_progress_line, watch_run
from sockswarm.models import EngineTimings, ProgressSnapshot, RunState, TargetSettings, TestConfiguration
from sockswarm.runner import LoadTestRun


def _progress() -> ProgressSnapshot:
    return ProgressSnapshot(
        state=RunState.STEADY_STATE,
        completed=2,
        total_expected=5,
        progress_percent=40.0,
        connected_clients=3,
        messages_sent=27,
        messages_received=25,
        error_count=1,
        elapsed_seconds=3.25,
    )


def _run() -> LoadTestRun:
    return LoadTestRun(
        TestConfiguration(target_users=5, messages_per_client=10, message_interval_ms=100),
        TargetSettings(url="https://ws.example.com"),
        StaticCredentialSource([]),
        timings=EngineTimings(settle_delay_sec=0.01),
    )


def test_build_progress_table() -> None:
    table = build_progress_table(_progress())
    assert table.row_count == 8


def test_format_progress_line() -> None:
    line = format_progress_line(_progress())
    assert line.endswith("\n")
    assert "steady_state" in line
    assert "clients=2/5" in line
    assert "sent=27 received=25 errors=1" in line


def test_create_live_panel_idle_run() -> None:
    panel = create_live_panel(_run())
    console = Console(record=True, width=120)
    console.print(panel)
    out = console.export_text()
    assert "https://ws.example.com" in out
    assert "Clients completed" in out
    assert "0/5" in out


def test_watch_run_streams_when_not_tty(capsys) -> None:
    run = _run()

    async def scenario() -> None:
        task = asyncio.create_task(asyncio.sleep(0.01))
        with patch("sockswarm.dashboard._stdout_is_tty", return_value=False):
            await watch_run(run, task)

    asyncio.run(scenario())
    assert "sockswarm |" in capsys.readouterr().out


def test_watch_run_live_until_done() -> None:
    run = _run()
    console = Console(record=True, width=120, force_terminal=True)

    async def scenario() -> None:
        task = asyncio.create_task(run.run())
        with patch("sockswarm.dashboard._stdout_is_tty", return_value=True):
            await watch_run(run, task, console=console)
        await task

    asyncio.run(scenario())
    assert run.state is RunState.COMPLETED
    assert run.progress().progress_percent == 100.0
