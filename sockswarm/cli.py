"""CLI entry point for sockswarm.

- Uses uvloop for a faster event loop when installed
- GC disabled during the run for steadier latency figures
- SIGINT/SIGTERM trigger a graceful stop that still prints the report
"""

from __future__ import annotations

import argparse
import asyncio
import gc
import signal
import sys
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Any, Coroutine

_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

from . import __version__
from .config import (
    CredentialSettings,
    SwarmConfig,
    credential_source,
    load_config,
    validate_config,
    DEFAULT_MESSAGE_INTERVAL_MS,
    DEFAULT_MESSAGES_PER_CLIENT,
    DEFAULT_RAMP_UP_DELAY_MS,
    DEFAULT_TARGET_USERS,
)
from .dashboard import watch_run
from .exceptions import SwarmConfigError, SwarmCredentialError, SwarmError, SwarmRunnerError
from .logging_config import LOG_FORMATS, configure_logging, get_logger
from .models import TargetSettings, TestConfiguration
from .report import generate_json_report
from .runner import LoadTestRun

logger = get_logger("cli")


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run coroutine on uvloop when available, GC disabled for the duration."""
    gc_was_enabled = gc.isenabled()
    gc.disable()
    try:
        if _HAS_UVLOOP:
            return uvloop.run(coro)
        return asyncio.run(coro)
    finally:
        if gc_was_enabled:
            gc.enable()
        gc.collect()


def _apply_overrides(config: SwarmConfig, args: argparse.Namespace) -> SwarmConfig:
    """Apply CLI flags on top of a loaded (or default) config."""
    test = config.test
    test = replace(
        test,
        target_users=args.users if args.users is not None else test.target_users,
        messages_per_client=args.messages if args.messages is not None else test.messages_per_client,
        message_interval_ms=args.interval_ms if args.interval_ms is not None else test.message_interval_ms,
        ramp_up_delay_ms=args.ramp_up_ms if args.ramp_up_ms is not None else test.ramp_up_delay_ms,
    )
    target = config.target
    if args.url:
        target = replace(target, url=args.url)
    if args.event:
        target = replace(target, event=args.event)
    credentials = config.credentials
    if args.credentials_url:
        credentials = CredentialSettings(url=args.credentials_url, cookie_name=credentials.cookie_name)
    elif args.credentials_file:
        credentials = CredentialSettings(file=args.credentials_file, cookie_name=credentials.cookie_name)
    merged = SwarmConfig(test=test, target=target, credentials=credentials)
    validate_config(merged)
    return merged


def _build_config(args: argparse.Namespace) -> SwarmConfig:
    if args.config:
        base = load_config(Path(args.config))
    else:
        base = SwarmConfig(
            test=TestConfiguration(
                target_users=DEFAULT_TARGET_USERS,
                messages_per_client=DEFAULT_MESSAGES_PER_CLIENT,
                message_interval_ms=DEFAULT_MESSAGE_INTERVAL_MS,
                ramp_up_delay_ms=DEFAULT_RAMP_UP_DELAY_MS,
            ),
            target=TargetSettings(url=""),
            credentials=CredentialSettings(),
        )
    return _apply_overrides(base, args)


def _on_stop_done(stop_tasks: set[asyncio.Task], task: asyncio.Task) -> None:
    stop_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Stop request failed", exc_info=exc)


def _install_stop_handlers(run: LoadTestRun) -> set[asyncio.Task]:
    """Route SIGINT/SIGTERM to a manual stop (Unix event loops only).

    Returns the set holding in-flight stop tasks; each removes itself when done.
    """
    stop_tasks: set[asyncio.Task] = set()
    if sys.platform == "win32":
        return stop_tasks
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        logger.info("%s received, stopping run...", signame)
        task = loop.create_task(run.stop())
        stop_tasks.add(task)
        task.add_done_callback(partial(_on_stop_done, stop_tasks))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_stop, sig.name)
    return stop_tasks


async def _execute(config: SwarmConfig, live: bool, json_path: str | None) -> str:
    run = LoadTestRun(config.test, config.target, credential_source(config.credentials))
    stop_tasks = _install_stop_handlers(run)
    run_task = asyncio.create_task(run.run())
    if live:
        await watch_run(run, run_task)
    report_text = await run_task
    if stop_tasks:
        await asyncio.wait(stop_tasks)
    if json_path and run.report is not None:
        generate_json_report(json_path, run.report)
        logger.info("JSON report written to %s", json_path)
    return report_text


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="sockswarm",
        description="Concurrent Socket.IO session load tester: many authenticated clients, "
        "scripted send/acknowledge traffic, latency and throughput report.",
    )
    parser.add_argument("-f", "--config", default=None, help="Path to YAML config (optional when --url and a credential flag are given)")
    parser.add_argument("--url", default=None, help="Override config: target server URL")
    parser.add_argument("--event", default=None, help="Override config: event name to emit")
    creds = parser.add_mutually_exclusive_group()
    creds.add_argument("--credentials-url", default=None, dest="credentials_url", metavar="URL", help="Credential endpoint (GET URL?count=N returns a JSON array of cookie values)")
    creds.add_argument("--credentials-file", default=None, dest="credentials_file", metavar="PATH", help="File with one Cookie header value per line")
    parser.add_argument("--users", type=int, default=None, help="Override config: number of simulated clients")
    parser.add_argument("--messages", type=int, default=None, help="Override config: messages per client")
    parser.add_argument("--interval-ms", type=int, default=None, dest="interval_ms", metavar="MS", help="Override config: interval between messages (ms)")
    parser.add_argument("--ramp-up-ms", type=int, default=None, dest="ramp_up_ms", metavar="MS", help="Override config: delay between client starts (ms)")
    parser.add_argument("--json", metavar="PATH", dest="json_path", help="Also write the report as JSON to PATH")
    parser.add_argument("--no-live", action="store_true", help="Disable live progress display (headless mode)")
    parser.add_argument("--log-level", default=None, metavar="LEVEL", help="Log level (default: $SOCKSWARM_LOG_LEVEL or INFO)")
    parser.add_argument("--log-format", default=None, choices=LOG_FORMATS, help="Log line format (default: $SOCKSWARM_LOG_FORMAT or text)")
    parser.add_argument("-v", "--version", action="version", version=f"sockswarm {__version__}")
    args = parser.parse_args()
    if args.log_level or args.log_format:
        configure_logging(args.log_level, args.log_format, force=True)

    def handle_error(e: BaseException) -> int:
        if isinstance(e, SwarmError):
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return 1

    try:
        config = _build_config(args)
    except SwarmConfigError as e:
        return handle_error(e)

    try:
        report_text = _run_async(_execute(config, live=not args.no_live, json_path=args.json_path))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    except (SwarmConfigError, SwarmCredentialError, SwarmRunnerError) as e:
        return handle_error(e)
    except Exception as e:
        return handle_error(e)
    print(report_text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
