"""Run lifecycle: Idle -> Starting -> RampingUp -> SteadyState -> Finalizing -> Completed.

Finalizing is entered exactly once, from whichever comes first:
- every expected client completed
- the global run timeout
- a manual stop
- no credentials to start any client with

Finalizing tears the pool down, waits a short settle delay so in-flight
messages can resolve, force-settles what is left, then renders the report.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

from .credentials import CredentialSource
from .exceptions import SwarmCredentialError, SwarmRunnerError
from .logging_config import get_logger
from .metrics import MetricsSnapshot
from .models import (
    ClientSession,
    EngineTimings,
    ErrorCategory,
    ProgressSnapshot,
    RunReport,
    RunState,
    TargetSettings,
    TestConfiguration,
)
from .pool import ClientPool
from .report import build_report, render_text
from .transport import ConnectionFactory, socketio_connection_factory

logger = get_logger("runner")

STOP_ALREADY_COMPLETED = "Test already completed."
STOP_NOT_RUNNING = "No test is running."

REASON_ALL_COMPLETED = "all clients completed"
REASON_NO_CREDENTIALS = "no credentials available"
REASON_TIMEOUT = "run timeout"
REASON_MANUAL_STOP = "manual stop"
REASON_RAMP_UP_FAILED = "ramp-up failed"


class LoadTestRun:
    """One load-test run. Not reusable: create a new instance per run.

    Args:
        config: Load parameters
        target: Endpoint to connect sessions to
        credentials: Source of per-session credentials
        timings: Engine timers (defaults are the production values)
        connection_factory: Override the Socket.IO transport (tests use fakes)
    """

    def __init__(
        self,
        config: TestConfiguration,
        target: TargetSettings,
        credentials: CredentialSource,
        timings: EngineTimings | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.config = config
        self.target = target
        self.timings = timings or EngineTimings()
        self._credentials = credentials
        self._connection_factory = connection_factory
        self._state = RunState.IDLE
        self._metrics = MetricsSnapshot()
        self._pool: ClientPool | None = None
        self._expected = 0
        self._start_dt: datetime | None = None
        self._finalized: asyncio.Future[str] | None = None
        self._finalize_task: asyncio.Task | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._ramp_error: BaseException | None = None
        self._report: RunReport | None = None
        self._ended_at: float | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def metrics(self) -> MetricsSnapshot:
        return self._metrics

    @property
    def pool(self) -> ClientPool | None:
        return self._pool

    @property
    def report(self) -> RunReport | None:
        """Structured report, available once Completed."""
        return self._report

    def _advance(self, new_state: RunState) -> bool:
        """Move forward to new_state. Same state is a no-op; backward is an invariant violation."""
        if new_state is self._state:
            return False
        if new_state.order < self._state.order:
            raise SwarmRunnerError(
                "Invalid run state transition",
                context={"from": self._state.value, "to": new_state.value},
            )
        logger.debug("Run state %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        return True

    @property
    def _finalizing(self) -> bool:
        return self._state.order >= RunState.FINALIZING.order

    async def run(self) -> str:
        """Execute the run to completion and return the rendered report."""
        if self._state is not RunState.IDLE:
            raise SwarmRunnerError("Run already started", context={"state": self._state.value})
        loop = asyncio.get_running_loop()
        self._advance(RunState.STARTING)
        self._metrics = MetricsSnapshot()
        self._start_dt = datetime.now(timezone.utc)
        self._finalized = loop.create_future()
        logger.info(
            "Starting load test: target=%s, users=%d, messages_per_client=%d, interval=%dms, ramp_up=%dms",
            self.target.url, self.config.target_users, self.config.messages_per_client,
            self.config.message_interval_ms, self.config.ramp_up_delay_ms,
        )

        try:
            credentials = await self._credentials.fetch(self.config.target_users)
        except SwarmCredentialError:
            if self._finalizing:
                # stopped while fetching; the stop already produced the report
                logger.warning("Credential fetch failed after the run was stopped")
                return await asyncio.shield(self._finalized)
            self._metrics.record_error(ErrorCategory.CREDENTIAL_FETCH)
            logger.exception("Load test failed to start")
            self._advance(RunState.COMPLETED)
            self._finalized.cancel()
            raise
        credentials = credentials[: self.config.target_users]
        if len(credentials) < self.config.target_users:
            logger.warning(
                "Credential source returned %d of %d requested credential(s)",
                len(credentials), self.config.target_users,
            )

        factory = self._connection_factory or socketio_connection_factory(self.target)
        self._pool = ClientPool(
            self.config,
            self.target.event,
            self._metrics,
            self.timings,
            factory,
            self._on_client_completed,
        )
        if not credentials:
            self._begin_finalize(REASON_NO_CREDENTIALS)
        elif not self._finalizing:
            self._expected = len(credentials)
            self._timeout_handle = loop.call_later(
                self.timings.run_timeout_sec, self._begin_finalize, REASON_TIMEOUT,
            )
            self._advance(RunState.RAMPING_UP)
            ramp = self._pool.start(credentials)
            ramp.add_done_callback(self._on_ramp_done)

        try:
            text = await asyncio.shield(self._finalized)
        finally:
            if self._timeout_handle is not None:
                self._timeout_handle.cancel()

        if self._ramp_error is not None:
            raise SwarmRunnerError("Ramp-up failed", original_error=self._ramp_error)
        return text

    def _on_ramp_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Ramp-up failed", exc_info=exc)
            self._ramp_error = exc
            self._begin_finalize(REASON_RAMP_UP_FAILED)
            return
        if self._state is RunState.RAMPING_UP:
            self._advance(RunState.STEADY_STATE)

    def _on_client_completed(self, session: ClientSession) -> None:
        pool = self._pool
        if pool is None:
            return
        logger.debug(
            "Client %s completed (%d/%d)", session.client_id, pool.completed_count, self._expected,
        )
        if pool.completed_count >= self._expected:
            self._begin_finalize(REASON_ALL_COMPLETED)

    def _begin_finalize(self, reason: str) -> None:
        if self._finalizing:
            return
        self._advance(RunState.FINALIZING)
        logger.info("Finalizing run: %s", reason)
        self._finalize_task = asyncio.get_running_loop().create_task(self._finalize(reason))

    async def _finalize(self, reason: str) -> None:
        if self._finalized is None:
            raise SwarmRunnerError("Cannot finalize a run that was never started", context={"reason": reason})
        try:
            if self._timeout_handle is not None:
                self._timeout_handle.cancel()
            if self._pool is not None:
                await self._pool.shutdown()
                await asyncio.sleep(self.timings.settle_delay_sec)
                swept = self._pool.sweep(0)
                if swept:
                    logger.debug("Final sweep settled %d pending message(s)", swept)
                self._log_client_breakdown(self._pool)
            self._ended_at = time.perf_counter()
            self._advance(RunState.COMPLETED)
            self._report = build_report(
                self._metrics,
                self.config,
                start_dt=self._start_dt or datetime.now(timezone.utc),
                end_dt=datetime.now(timezone.utc),
                finalize_reason=reason,
                now=self._ended_at,
            )
            text = render_text(self._report, self.timings)
            summary = self._report.summary
            logger.info(
                "Load test finished (%s): sent=%d, received=%d, errors=%d",
                self._report.kind.value, summary.messages_sent, summary.messages_received, summary.errors,
            )
        except Exception as e:  # noqa: BLE001
            if not self._finalized.done():
                self._finalized.set_exception(e)
            return
        if not self._finalized.done():
            self._finalized.set_result(text)

    def _log_client_breakdown(self, pool: ClientPool) -> None:
        logger.debug(
            "Clients created: %d, expected messages: %d, sent: %d, received: %d",
            len(pool.sessions), self._expected * self.config.messages_per_client,
            self._metrics.messages_sent, self._metrics.messages_received,
        )
        for s in pool.sessions:
            logger.debug(
                "Client %d - sent: %d, received: %d, pending: %d",
                s.client_id, s.messages_sent, s.messages_received, len(s.pending),
            )

    async def stop(self) -> str:
        """Force the run to finish. Returns the report, or a no-op message if not applicable."""
        if self._state is RunState.COMPLETED:
            return STOP_ALREADY_COMPLETED
        if self._state is RunState.IDLE or self._finalized is None:
            return STOP_NOT_RUNNING
        logger.info("Manual stop requested")
        self._begin_finalize(REASON_MANUAL_STOP)
        return await asyncio.shield(self._finalized)

    def progress(self) -> ProgressSnapshot:
        """Current progress. Valid in any state."""
        pool = self._pool
        completed = pool.completed_count if pool is not None else 0
        total = self._expected if self._expected else self.config.target_users
        if self._state is RunState.COMPLETED:
            pct = 100.0
        else:
            pct = min(100.0, 100.0 * completed / total) if total else 0.0
        elapsed = self._metrics.elapsed_seconds(self._ended_at) if self._state is not RunState.IDLE else 0.0
        return ProgressSnapshot(
            state=self._state,
            completed=completed,
            total_expected=total,
            progress_percent=pct,
            connected_clients=pool.connected_count if pool is not None else 0,
            messages_sent=self._metrics.messages_sent,
            messages_received=self._metrics.messages_received,
            error_count=self._metrics.errors,
            elapsed_seconds=elapsed,
        )


async def run_load_test(
    config: TestConfiguration,
    target: TargetSettings,
    credentials: CredentialSource,
    timings: EngineTimings | None = None,
    connection_factory: ConnectionFactory | None = None,
) -> str:
    """Run one load test to completion and return its text report."""
    run = LoadTestRun(config, target, credentials, timings=timings, connection_factory=connection_factory)
    return await run.run()
