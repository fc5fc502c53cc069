"""Client pool: staggered session start, connect timeout, lifecycle tracking.

One task per client. The task awaits the connect (bounded by the connect
timeout) and then runs the traffic loop; cancelling it cancels whichever is
in progress. A client counts as completed exactly once: quota reached,
connect failed or timed out, or connection dropped early.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

from .exchange import MS_PER_SEC, run_traffic, sweep_pending
from .exceptions import SwarmRunnerError
from .logging_config import get_logger
from .metrics import MetricsSnapshot
from .models import ClientSession, Credential, EngineTimings, ErrorCategory, TestConfiguration
from .transport import ConnectFailure, ConnectionFactory, ConnectionHooks

logger = get_logger("pool")

# Upper bound on waiting for connections to close during shutdown (seconds)
SHUTDOWN_CLOSE_TIMEOUT_SEC = 5.0


class ClientPool:
    """Creates, ramps up and tracks the sessions of one run."""

    def __init__(
        self,
        config: TestConfiguration,
        event: str,
        metrics: MetricsSnapshot,
        timings: EngineTimings,
        connection_factory: ConnectionFactory,
        on_client_completed: Callable[[ClientSession], None],
    ) -> None:
        self._config = config
        self._event = event
        self._metrics = metrics
        self._timings = timings
        self._connection_factory = connection_factory
        self._on_client_completed = on_client_completed
        self._hooks = ConnectionHooks(on_disconnect=self._handle_disconnect, on_error=self._handle_error)
        self._sessions: list[ClientSession] = []
        self._ramp_task: asyncio.Task | None = None
        self._completed = 0

    @property
    def sessions(self) -> list[ClientSession]:
        return self._sessions

    @property
    def completed_count(self) -> int:
        return self._completed

    @property
    def connected_count(self) -> int:
        return sum(1 for s in self._sessions if s.connected)

    def start(self, credentials: list[Credential]) -> asyncio.Task:
        """Begin ramp-up over credentials (at most target_users). Returns the ramp-up task."""
        selected = credentials[: self._config.target_users]
        self._ramp_task = asyncio.create_task(self._ramp_up(selected))
        return self._ramp_task

    async def _ramp_up(self, credentials: list[Credential]) -> None:
        delay = self._config.ramp_up_delay_ms / MS_PER_SEC
        for client_id, credential in enumerate(credentials):
            self._launch(client_id, credential)
            if delay > 0 and client_id < len(credentials) - 1:
                await asyncio.sleep(delay)
        logger.info("Ramp-up finished: %d client(s) started", len(credentials))

    def _launch(self, client_id: int, credential: Credential) -> ClientSession:
        session = ClientSession(client_id, credential)
        session.connect_started_at = time.perf_counter()
        session.connection = self._connection_factory(session, self._hooks)
        self._metrics.record_connection_started()
        self._sessions.append(session)
        session.task = asyncio.create_task(self._drive(session), name=f"client-{client_id}")
        session.task.add_done_callback(lambda task, s=session: self._on_task_done(s, task))
        return session

    def _on_task_done(self, session: ClientSession, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        # Unexpected failure inside one client stays local to that client
        logger.error("Client %s crashed", session.client_id, exc_info=exc)
        session.connected = False
        self._metrics.record_error(ErrorCategory.GENERIC)
        self._mark_completed(session)

    async def _drive(self, session: ClientSession) -> None:
        connection = session.connection
        if connection is None:
            raise SwarmRunnerError("Client has no connection", context={"client_id": session.client_id})
        timeout = self._timings.connect_timeout_sec
        try:
            await asyncio.wait_for(connection.connect(timeout), timeout=timeout)
        except asyncio.TimeoutError:
            self._fail(session, ErrorCategory.TIMEOUT, f"no connect within {timeout:.1f}s")
            await self._close_quietly(session)
            return
        except ConnectFailure as e:
            self._fail(session, e.category, e.detail)
            await self._close_quietly(session)
            return

        now = time.perf_counter()
        session.connect_ended_at = now
        session.connected = True
        self._metrics.record_connection_success((now - session.connect_started_at) * MS_PER_SEC)
        logger.debug("Client %s connected", session.client_id)

        await run_traffic(
            session,
            self._config,
            self._event,
            self._metrics,
            self._timings,
            self._mark_completed,
        )

    def _fail(self, session: ClientSession, category: ErrorCategory, detail: str) -> None:
        session.failed = True
        self._metrics.record_connection_failure(category)
        logger.warning("Client %s failed to connect (%s): %s", session.client_id, category.value, detail)
        self._mark_completed(session)

    def _mark_completed(self, session: ClientSession) -> None:
        if session.completed:
            return
        session.completed = True
        self._completed += 1
        self._on_client_completed(session)

    def _handle_disconnect(self, session: ClientSession) -> None:
        if not session.connected:
            return
        session.connected = False
        if session.messages_sent < self._config.messages_per_client and not session.completed:
            logger.info(
                "Client %s disconnected early after %d/%d message(s)",
                session.client_id, session.messages_sent, self._config.messages_per_client,
            )
        self._mark_completed(session)

    def _handle_error(self, session: ClientSession, data: Any) -> None:
        self._metrics.record_error(ErrorCategory.SOCKET)
        logger.debug("Client %s socket error: %r", session.client_id, data)

    async def _close_quietly(self, session: ClientSession) -> None:
        if session.connection is None:
            return
        try:
            await session.connection.close()
        except Exception as e:  # noqa: BLE001
            logger.debug("Client %s close failed: %s", session.client_id, e)

    def sweep(self, max_age_sec: float) -> int:
        """Sweep stale pending messages across all sessions. Returns number settled."""
        return sum(sweep_pending(s, self._metrics, max_age_sec) for s in self._sessions)

    async def shutdown(self) -> None:
        """Stop ramp-up, cancel client tasks (pending connect timeouts included), disconnect all."""
        tasks: list[asyncio.Task] = []
        if self._ramp_task is not None and not self._ramp_task.done():
            self._ramp_task.cancel()
            tasks.append(self._ramp_task)
        current = asyncio.current_task()
        for session in self._sessions:
            task = session.task
            if task is not None and task is not current and not task.done():
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        closers = [self._close_quietly(s) for s in self._sessions]
        if closers:
            try:
                await asyncio.wait_for(asyncio.gather(*closers), timeout=SHUTDOWN_CLOSE_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                logger.warning("Timed out closing connections during shutdown")
        for session in self._sessions:
            session.connected = False
