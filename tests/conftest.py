"""Pytest fixtures for sockswarm tests: fake connections, fast timings, temp configs."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from sockswarm.models import ClientSession, EngineTimings, ErrorCategory, TargetSettings, TestConfiguration
from sockswarm.transport import ConnectFailure, ConnectionHooks


class FakeConnection:
    """In-memory stand-in for a Socket.IO connection.

    Args:
        fail: connect raises ConnectFailure with this category
        hang: connect never returns (until cancelled)
        ack: acknowledge each emit on the next loop iteration
        drop_after: drop the connection after this many emits
        emit_failures: number of initial emits that raise
    """

    def __init__(
        self,
        session: ClientSession,
        hooks: ConnectionHooks,
        *,
        fail: ErrorCategory | None = None,
        hang: bool = False,
        ack: bool = True,
        drop_after: int | None = None,
        emit_failures: int = 0,
    ) -> None:
        self.session = session
        self.hooks = hooks
        self.fail = fail
        self.hang = hang
        self.ack = ack
        self.drop_after = drop_after
        self.emit_failures = emit_failures
        self.connected = False
        self.closed = False
        self.emitted: list[tuple[str, Any]] = []

    async def connect(self, timeout: float) -> None:
        if self.hang:
            await asyncio.Event().wait()
        if self.fail is not None:
            raise ConnectFailure(self.fail, "fake failure")
        self.connected = True

    async def emit(self, event: str, data: Any, callback: Callable[..., Any]) -> None:
        if self.emit_failures > 0:
            self.emit_failures -= 1
            raise RuntimeError("emit failed")
        self.emitted.append((event, data))
        loop = asyncio.get_running_loop()
        if self.ack:
            loop.call_soon(callback, {"ok": True})
        if self.drop_after is not None and len(self.emitted) >= self.drop_after:
            loop.call_soon(self._drop)

    async def close(self) -> None:
        self.closed = True
        self._drop()

    def _drop(self) -> None:
        if self.connected:
            self.connected = False
            self.hooks.on_disconnect(self.session)


class FakeFactory:
    """ConnectionFactory building FakeConnections; keeps every connection it made."""

    def __init__(self, **options: Any) -> None:
        self.options = options
        self.connections: list[FakeConnection] = []

    def __call__(self, session: ClientSession, hooks: ConnectionHooks) -> FakeConnection:
        conn = FakeConnection(session, hooks, **self.options)
        self.connections.append(conn)
        return conn


@pytest.fixture
def fast_timings() -> EngineTimings:
    return EngineTimings(
        connect_timeout_sec=1.0,
        ack_fallback_sec=0.05,
        sweep_interval_sec=0.05,
        stale_pending_sec=0.1,
        settle_delay_sec=0.01,
        run_timeout_sec=5.0,
    )


@pytest.fixture
def target() -> TargetSettings:
    return TargetSettings(url="http://127.0.0.1:9")


@pytest.fixture
def small_config() -> TestConfiguration:
    return TestConfiguration(target_users=5, messages_per_client=10, message_interval_ms=5, ramp_up_delay_ms=0)


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Minimal valid run config."""
    content = """
target:
  url: https://ws.example.com
  event: update-position
test:
  target_users: 3
  messages_per_client: 4
  message_interval_ms: 250
  ramp_up_delay_ms: 50
credentials:
  url: http://localhost:3006/api/users/get-cookies
"""
    p = tmp_path / "config.yaml"
    p.write_text(content, encoding="utf-8")
    return p


@pytest.fixture
def fake_factory() -> type[FakeFactory]:
    """The FakeFactory class; call it with FakeConnection options."""
    return FakeFactory
