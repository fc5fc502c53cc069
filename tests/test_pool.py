"""Unit tests for ClientPool: ramp-up, completion accounting, shutdown."""

from __future__ import annotations

import asyncio

import pytest

from sockswarm.exceptions import SwarmRunnerError
from sockswarm.metrics import MetricsSnapshot
from sockswarm.models import ClientSession, Credential, ErrorCategory, TestConfiguration
from sockswarm.pool import ClientPool


def _credentials(n: int) -> list[Credential]:
    return [Credential(token=f"connect.sid=t{i}", identity=f"user-{i}-0") for i in range(n)]


def _pool(config, timings, factory, completed: list) -> tuple[ClientPool, MetricsSnapshot]:
    metrics = MetricsSnapshot()
    pool = ClientPool(config, "update-position", metrics, timings, factory, completed.append)
    return pool, metrics


def test_start_caps_at_target_users(fast_timings, fake_factory) -> None:
    config = TestConfiguration(target_users=2, messages_per_client=1, message_interval_ms=5)
    completed: list = []

    async def scenario() -> ClientPool:
        pool, _ = _pool(config, fast_timings, fake_factory(), completed)
        await pool.start(_credentials(4))
        while pool.completed_count < 2:
            await asyncio.sleep(0.01)
        await pool.shutdown()
        return pool

    pool = asyncio.run(scenario())
    assert len(pool.sessions) == 2
    assert len(completed) == 2


def test_client_completed_exactly_once_on_drop_and_close(fast_timings, fake_factory) -> None:
    config = TestConfiguration(target_users=1, messages_per_client=2, message_interval_ms=5)
    completed: list = []

    async def scenario() -> None:
        pool, _ = _pool(config, fast_timings, fake_factory(drop_after=2), completed)
        await pool.start(_credentials(1))
        await asyncio.sleep(0.1)
        await pool.shutdown()

    asyncio.run(scenario())
    assert len(completed) == 1


def test_failed_connect_is_completed_and_tallied(fast_timings, fake_factory) -> None:
    config = TestConfiguration(target_users=3, messages_per_client=2, message_interval_ms=5)
    completed: list = []

    async def scenario() -> tuple[ClientPool, MetricsSnapshot]:
        pool, metrics = _pool(config, fast_timings, fake_factory(fail=ErrorCategory.UNAUTHORIZED), completed)
        await pool.start(_credentials(3))
        await asyncio.sleep(0.02)
        return pool, metrics

    pool, metrics = asyncio.run(scenario())
    assert pool.completed_count == 3
    assert metrics.connections_started == 3
    assert metrics.connections_failed == 3
    assert metrics.error_counts == {"authentication_error": 3}
    assert all(s.failed and not s.connected for s in pool.sessions)


def test_socket_error_event_tallied(fast_timings, fake_factory) -> None:
    config = TestConfiguration(target_users=1, messages_per_client=1, message_interval_ms=5)
    factory = fake_factory()

    async def scenario() -> MetricsSnapshot:
        pool, metrics = _pool(config, fast_timings, factory, [])
        await pool.start(_credentials(1))
        conn = factory.connections[0]
        conn.hooks.on_error(conn.session, {"message": "parse error"})
        await pool.shutdown()
        return metrics

    assert asyncio.run(scenario()).error_counts == {"socket_error": 1}


def test_shutdown_cancels_pending_connects(fast_timings, fake_factory) -> None:
    config = TestConfiguration(target_users=4, messages_per_client=1, message_interval_ms=5, ramp_up_delay_ms=50)
    factory = fake_factory(hang=True)

    async def scenario() -> ClientPool:
        pool, _ = _pool(config, fast_timings, factory, [])
        pool.start(_credentials(4))
        await asyncio.sleep(0.06)
        await pool.shutdown()
        return pool

    pool = asyncio.run(scenario())
    # ramp-up stopped before every client was launched
    assert 1 <= len(pool.sessions) < 4
    assert all(s.task.cancelled() for s in pool.sessions)
    assert pool.connected_count == 0
    assert all(c.closed for c in factory.connections)


def test_drive_without_connection_raises(small_config, fast_timings, fake_factory) -> None:
    pool, _ = _pool(small_config, fast_timings, fake_factory(), [])
    session = ClientSession(0, _credentials(1)[0])
    with pytest.raises(SwarmRunnerError):
        asyncio.run(pool._drive(session))
