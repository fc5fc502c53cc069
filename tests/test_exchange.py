"""Unit tests for message building, settlement and the stale sweep."""

from __future__ import annotations

import asyncio
import re

import pytest

from sockswarm.exceptions import SwarmRunnerError
from sockswarm.exchange import build_message, run_traffic, settle, sweep_pending
from sockswarm.metrics import MetricsSnapshot
from sockswarm.models import ClientSession, Credential, PendingRequest


def _session(client_id: int = 7) -> ClientSession:
    return ClientSession(client_id, Credential(token="connect.sid=abc", identity="user-7-1700000000000"))


def _pending(session: ClientSession, message_id: str, send_time: float) -> PendingRequest:
    p = PendingRequest(message_id, send_time)
    session.pending[message_id] = p
    return p


def test_build_message_shape() -> None:
    s = _session()
    s.messages_sent = 3
    msg = build_message(s)
    assert re.fullmatch(r"7-3-\d{13}", msg["messageId"])
    assert msg["versionId"] == "load-test-user-7-1700000000000-7"
    pos = msg["position"]
    assert all(0 <= pos[k] < 100 for k in ("x", "y", "z"))
    assert pos["timestamp"].endswith("Z")
    assert set(pos["orientation"]) == {"qx", "qy", "qz", "qw"}


def test_settle_records_latency_once() -> None:
    s = _session()
    m = MetricsSnapshot()
    _pending(s, "a", send_time=10.0)
    assert settle(s, "a", m, now=10.25) is True
    assert settle(s, "a", m, now=10.5) is False
    assert m.messages_received == 1
    assert s.messages_received == 1
    assert list(m.latencies) == [250.0]
    assert "a" not in s.pending


def test_settle_unknown_id_is_noop() -> None:
    s = _session()
    m = MetricsSnapshot()
    assert settle(s, "missing", m) is False
    assert m.messages_received == 0


def test_settle_cancels_fallback_timer() -> None:
    async def scenario() -> tuple[int, int]:
        s = _session()
        m = MetricsSnapshot()
        loop = asyncio.get_running_loop()
        p = _pending(s, "a", loop.time())
        p.fallback = loop.call_later(0.02, settle, s, "a", m)
        settle(s, "a", m)  # ack wins
        await asyncio.sleep(0.05)
        return m.messages_received, s.messages_received

    assert asyncio.run(scenario()) == (1, 1)


def test_fallback_then_late_ack_counts_once() -> None:
    async def scenario() -> int:
        s = _session()
        m = MetricsSnapshot()
        loop = asyncio.get_running_loop()
        _pending(s, "a", 0.0).fallback = loop.call_later(0.01, settle, s, "a", m)
        await asyncio.sleep(0.03)
        settle(s, "a", m)  # late ack
        return m.messages_received

    assert asyncio.run(scenario()) == 1


def test_sweep_settles_only_entries_older_than_threshold() -> None:
    s = _session()
    m = MetricsSnapshot()
    _pending(s, "old", send_time=0.0)
    _pending(s, "edge", send_time=1.0)
    _pending(s, "fresh", send_time=1.5)
    # exactly max_age old is not yet stale
    assert sweep_pending(s, m, max_age_sec=1.0, now=2.0) == 1
    assert set(s.pending) == {"edge", "fresh"}
    assert m.messages_received == 1
    assert list(m.latencies) == [2000.0]


def test_sweep_zero_age_settles_everything() -> None:
    s = _session()
    m = MetricsSnapshot()
    for i in range(4):
        _pending(s, f"m{i}", send_time=5.0)
    assert sweep_pending(s, m, max_age_sec=0, now=5.0) == 4
    assert not s.pending
    assert s.messages_received == 4


def test_run_traffic_requires_connection(small_config, fast_timings) -> None:
    s = _session()
    with pytest.raises(SwarmRunnerError):
        asyncio.run(run_traffic(s, small_config, "update-position", MetricsSnapshot(), fast_timings, lambda _s: None))
