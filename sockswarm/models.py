"""Data models for sockswarm.

Sized for many concurrent sessions:
- __slots__ on per-session and per-message classes (allocated once per client / per message)
- Frozen dataclasses for run parameters, never mutated after a run starts
- str Enums for states and error categories so they serialize as-is
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .transport import Connection


class RunState(str, Enum):
    """Lifecycle of a single load-test run. Transitions only move forward."""

    IDLE = "idle"
    STARTING = "starting"
    RAMPING_UP = "ramping_up"
    STEADY_STATE = "steady_state"
    FINALIZING = "finalizing"
    COMPLETED = "completed"

    @property
    def order(self) -> int:
        return _RUN_STATE_ORDER.index(self)


_RUN_STATE_ORDER = list(RunState)


class ErrorCategory(str, Enum):
    """Tagged failure categories. Values are the labels shown in reports."""

    TIMEOUT = "connection_timeout"
    UNAUTHORIZED = "authentication_error"
    NOT_FOUND = "endpoint_not_found"
    REFUSED = "connection_refused"
    DNS_FAILURE = "dns_resolution_error"
    GENERIC = "connection_error"
    SOCKET = "socket_error"
    CREDENTIAL_FETCH = "credential_fetch_failed"


class ReportKind(str, Enum):
    """Which branch of the final report applies."""

    NORMAL = "normal"
    NO_CREDENTIALS = "no_credentials"
    ALL_CONNECTIONS_FAILED = "all_connections_failed"


@dataclass(slots=True, frozen=True)
class TestConfiguration:
    """Per-run load parameters. Immutable."""

    __test__ = False  # not a pytest test class

    target_users: int
    messages_per_client: int
    message_interval_ms: int
    ramp_up_delay_ms: int = 0


@dataclass(slots=True, frozen=True)
class TargetSettings:
    """Where and how sessions connect."""

    url: str
    socketio_path: str = "/socket.io"
    event: str = "update-position"
    transports: tuple[str, ...] = ("websocket",)
    client_type: str = "load-test"


@dataclass(slots=True, frozen=True)
class EngineTimings:
    """Fixed engine timers (seconds). Injectable so tests can shrink them."""

    connect_timeout_sec: float = 10.0
    # Fallback delay after which an unacknowledged message counts as delivered
    ack_fallback_sec: float = 0.05
    sweep_interval_sec: float = 1.0
    stale_pending_sec: float = 1.0
    # Delay between entering Finalizing and the final sweep
    settle_delay_sec: float = 1.0
    run_timeout_sec: float = 300.0


@dataclass(slots=True, frozen=True)
class Credential:
    """Opaque authentication token plus the identity it belongs to."""

    token: str
    identity: str


class PendingRequest:
    """A dispatched message waiting for settlement (ack, fallback or sweep)."""

    __slots__ = ("message_id", "send_time", "settled", "fallback")

    def __init__(self, message_id: str, send_time: float) -> None:
        self.message_id = message_id
        self.send_time = send_time
        self.settled = False
        self.fallback: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        return f"PendingRequest(id={self.message_id!r}, settled={self.settled})"


class ClientSession:
    """One simulated user: its connection plus message-exchange state.

    Owned by exactly one run. ``task`` drives connect (bounded by the
    connect timeout) and then the traffic loop; cancelling it cancels both.
    """

    __slots__ = (
        "client_id", "credential", "connection", "messages_sent", "messages_received",
        "connect_started_at", "connect_ended_at", "pending", "task",
        "connected", "completed", "failed",
    )

    def __init__(self, client_id: int, credential: Credential) -> None:
        self.client_id = client_id
        self.credential = credential
        self.connection: Connection | None = None
        self.messages_sent = 0
        self.messages_received = 0
        self.connect_started_at = 0.0
        self.connect_ended_at: float | None = None
        self.pending: dict[str, PendingRequest] = {}
        self.task: asyncio.Task | None = None
        self.connected = False
        self.completed = False
        self.failed = False

    @property
    def identity(self) -> str:
        return self.credential.identity

    def __repr__(self) -> str:
        return (
            f"ClientSession(id={self.client_id}, sent={self.messages_sent}, "
            f"received={self.messages_received}, pending={len(self.pending)})"
        )


@dataclass(slots=True)
class ProgressSnapshot:
    """Point-in-time view of a run, valid in any state."""

    state: RunState
    completed: int
    total_expected: int
    progress_percent: float
    connected_clients: int
    messages_sent: int
    messages_received: int
    error_count: int
    elapsed_seconds: float


@dataclass(slots=True)
class MetricsSummary:
    """Figures derived from a MetricsSnapshot at a given instant."""

    duration_seconds: float
    connections_started: int
    connections_successful: int
    connections_failed: int
    avg_connection_time_ms: float
    messages_sent: int
    messages_received: int
    min_latency_ms: float
    max_latency_ms: float
    avg_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    connection_rate: float
    messages_per_second: float
    bytes_per_second: float
    errors: int
    error_rate_pct: float
    error_counts: dict[str, int] = field(default_factory=dict)

    @property
    def connection_success_rate_pct(self) -> float:
        if self.connections_started == 0:
            return 0.0
        return 100.0 * self.connections_successful / self.connections_started

    @property
    def message_success_rate_pct(self) -> float:
        if self.messages_sent == 0:
            return 0.0
        return 100.0 * self.messages_received / self.messages_sent


@dataclass(slots=True)
class RunReport:
    """Structured terminal snapshot of a run."""

    kind: ReportKind
    config: TestConfiguration
    summary: MetricsSummary
    start_datetime: str
    end_datetime: str
    finalize_reason: str
