"""Per-session message exchange: scripted sends, settlement, stale sweep.

Each dispatched message is tracked as a PendingRequest until exactly one of
three settlers resolves it:
- the server's acknowledgement callback (observed round trip)
- the short fallback timer (no ack; counted delivered, elapsed time as latency)
- the periodic sweep (entry older than the stale threshold)

Unacknowledged messages count as received once the fallback fires. Against
a server that drops messages silently this inflates the message success rate.
"""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable

from .exceptions import SwarmRunnerError
from .logging_config import get_logger
from .metrics import MetricsSnapshot
from .models import ClientSession, EngineTimings, ErrorCategory, PendingRequest, TestConfiguration

logger = get_logger("exchange")

MS_PER_SEC = 1000.0


def build_message(session: ClientSession) -> dict[str, Any]:
    """Position update payload. Id is unique per run: client id, sequence, epoch ms."""
    now = datetime.now(timezone.utc)
    message_id = f"{session.client_id}-{session.messages_sent}-{int(now.timestamp() * 1000)}"
    return {
        "messageId": message_id,
        "versionId": f"load-test-{session.identity}-{session.client_id}",
        "position": {
            "x": random.random() * 100,
            "y": random.random() * 100,
            "z": random.random() * 100,
            "timestamp": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "orientation": {
                "qx": random.random(),
                "qy": random.random(),
                "qz": random.random(),
                "qw": random.random(),
            },
        },
    }


def settle(
    session: ClientSession,
    message_id: str,
    metrics: MetricsSnapshot,
    now: float | None = None,
) -> bool:
    """Resolve a pending message once. Returns False if already settled or unknown."""
    pending = session.pending.get(message_id)
    if pending is None or pending.settled:
        return False
    now = now if now is not None else time.perf_counter()
    pending.settled = True
    if pending.fallback is not None:
        pending.fallback.cancel()
        pending.fallback = None
    metrics.record_latency((now - pending.send_time) * MS_PER_SEC)
    session.messages_received += 1
    del session.pending[message_id]
    return True


def sweep_pending(
    session: ClientSession,
    metrics: MetricsSnapshot,
    max_age_sec: float,
    now: float | None = None,
) -> int:
    """Force-settle entries older than max_age_sec. 0 settles everything. Returns count."""
    now = now if now is not None else time.perf_counter()
    stale = [
        message_id
        for message_id, pending in session.pending.items()
        if not pending.settled and (max_age_sec <= 0 or (now - pending.send_time) > max_age_sec)
    ]
    return sum(1 for message_id in stale if settle(session, message_id, metrics, now))


async def _sweep_loop(session: ClientSession, metrics: MetricsSnapshot, timings: EngineTimings) -> None:
    while True:
        await asyncio.sleep(timings.sweep_interval_sec)
        swept = sweep_pending(session, metrics, timings.stale_pending_sec)
        if swept:
            logger.debug("Client %s: swept %d stale pending message(s)", session.client_id, swept)


async def run_traffic(
    session: ClientSession,
    config: TestConfiguration,
    event: str,
    metrics: MetricsSnapshot,
    timings: EngineTimings,
    on_complete: Callable[[ClientSession], None],
) -> None:
    """Send messages_per_client messages, one per interval, then close and complete.

    Returns early, without completing, if the connection drops; the
    disconnect hook accounts for that case.
    """
    connection = session.connection
    if connection is None:
        raise SwarmRunnerError("Client has no connection", context={"client_id": session.client_id})

    loop = asyncio.get_running_loop()
    interval = config.message_interval_ms / MS_PER_SEC
    sweeper = asyncio.create_task(_sweep_loop(session, metrics, timings))
    try:
        while True:
            await asyncio.sleep(interval)
            if not session.connected:
                return
            if session.messages_sent >= config.messages_per_client:
                break

            message = build_message(session)
            message_id = message["messageId"]
            pending = PendingRequest(message_id, time.perf_counter())
            session.pending[message_id] = pending

            def _on_ack(*_args: Any, _message_id: str = message_id) -> None:
                settle(session, _message_id, metrics)

            try:
                await connection.emit(event, message, _on_ack)
            except asyncio.CancelledError:
                session.pending.pop(message_id, None)
                raise
            except Exception as e:  # noqa: BLE001
                session.pending.pop(message_id, None)
                metrics.record_error(ErrorCategory.SOCKET)
                logger.debug("Client %s: emit failed: %s", session.client_id, e)
                continue

            if not pending.settled:
                pending.fallback = loop.call_later(
                    timings.ack_fallback_sec, settle, session, message_id, metrics,
                )
            session.messages_sent += 1
            metrics.record_sent()
    finally:
        sweeper.cancel()

    on_complete(session)
    await connection.close()
