"""Socket.IO transport: one AsyncClient and aiohttp session per client session.

Connection failures leave this module as ConnectFailure carrying an
ErrorCategory. The category is decided here, from exception types and
handshake status codes found along the cause chain, so callers never have to
interpret error text.
"""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp
import socketio

from .logging_config import get_logger
from .models import ClientSession, ErrorCategory, TargetSettings

logger = get_logger("transport")

# Server rejection text (connect_error payload) -> category, checked in order
_REJECTION_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.UNAUTHORIZED, ("unauthorized", "unauthorised", "forbidden", "401", "403")),
    (ErrorCategory.NOT_FOUND, ("not found", "404")),
)
_AUTH_STATUSES = frozenset({401, 403})
_NOT_FOUND_STATUSES = frozenset({404})


class ConnectFailure(Exception):
    """A connection attempt failed; ``category`` says why."""

    def __init__(self, category: ErrorCategory, detail: str = "") -> None:
        super().__init__(detail or category.value)
        self.category = category
        self.detail = detail


class Connection(Protocol):
    """What the engine needs from a client connection."""

    @property
    def connected(self) -> bool: ...

    async def connect(self, timeout: float) -> None: ...

    async def emit(self, event: str, data: Any, callback: Callable[..., Any]) -> None: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class ConnectionHooks:
    """Callbacks a connection invokes for events the engine tracks."""

    on_disconnect: Callable[[ClientSession], None]
    on_error: Callable[[ClientSession, Any], None]


ConnectionFactory = Callable[[ClientSession, ConnectionHooks], Connection]


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield exc and everything it was raised from or during, including aiohttp os_error."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        err = stack.pop()
        if id(err) in seen:
            continue
        seen.add(id(err))
        yield err
        os_error = getattr(err, "os_error", None)
        if isinstance(os_error, BaseException):
            stack.append(os_error)
        if err.__cause__ is not None:
            stack.append(err.__cause__)
        if err.__context__ is not None:
            stack.append(err.__context__)


def _status_of(err: BaseException) -> int | None:
    if isinstance(err, aiohttp.ClientResponseError):
        return err.status
    return None


def _classify_rejection(rejection: Any) -> ErrorCategory:
    """Category for a server-sent connect_error payload (string or {"message": ...})."""
    if isinstance(rejection, dict):
        rejection = rejection.get("message")
    if not isinstance(rejection, str):
        return ErrorCategory.GENERIC
    text = rejection.lower()
    for category, keywords in _REJECTION_KEYWORDS:
        if any(k in text for k in keywords):
            return category
    return ErrorCategory.GENERIC


def classify_connect_error(exc: BaseException, rejection: Any = None) -> ErrorCategory:
    """Map a failed connect to an ErrorCategory. First matching category wins.

    Order: timeout, unauthorized, not found, refused, name resolution; then the
    server's rejection payload if any; GENERIC otherwise.
    """
    chain = list(_exception_chain(exc))
    if any(isinstance(e, (asyncio.TimeoutError, TimeoutError)) for e in chain):
        return ErrorCategory.TIMEOUT
    statuses = {_status_of(e) for e in chain}
    if statuses & _AUTH_STATUSES:
        return ErrorCategory.UNAUTHORIZED
    if statuses & _NOT_FOUND_STATUSES:
        return ErrorCategory.NOT_FOUND
    if any(isinstance(e, ConnectionRefusedError) for e in chain):
        return ErrorCategory.REFUSED
    if any(isinstance(e, socket.gaierror) for e in chain):
        return ErrorCategory.DNS_FAILURE
    return _classify_rejection(rejection)


def _with_query(url: str, params: dict[str, str]) -> str:
    parts = urlsplit(url)
    query = urlencode(params)
    if parts.query:
        query = f"{parts.query}&{query}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class SocketIOConnection:
    """One session's Socket.IO client. No reconnection: a drop ends the session.

    Each connection owns its aiohttp session and cookie jar. engineio moves the
    Cookie header into the jar for the websocket upgrade, so a jar shared
    between sessions would mix credentials. Both are created on connect, inside
    the running loop, and released by close().
    """

    def __init__(
        self,
        session: ClientSession,
        target: TargetSettings,
        hooks: ConnectionHooks,
    ) -> None:
        self._session = session
        self._target = target
        self._hooks = hooks
        self._rejection: Any = None
        self._http: aiohttp.ClientSession | None = None
        self._client: socketio.AsyncClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.connected

    def _open_client(self) -> socketio.AsyncClient:
        # unsafe: keep cookies for IP-address hosts too
        self._http = aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(unsafe=True))
        client = socketio.AsyncClient(
            reconnection=False,
            handle_sigint=False,
            http_session=self._http,
        )
        client.on("connect_error", self._handle_connect_error)
        client.on("disconnect", self._handle_disconnect)
        client.on("error", self._handle_error)
        return client

    async def connect(self, timeout: float) -> None:
        if self._client is None:
            self._client = self._open_client()
        url = _with_query(
            self._target.url,
            {"clientType": self._target.client_type, "userId": self._session.identity},
        )
        try:
            await self._client.connect(
                url,
                headers={"Cookie": self._session.credential.token},
                transports=list(self._target.transports),
                socketio_path=self._target.socketio_path,
                wait_timeout=timeout,
            )
        except socketio.exceptions.ConnectionError as exc:
            category = classify_connect_error(exc, self._rejection)
            raise ConnectFailure(category, str(exc)) from exc

    async def emit(self, event: str, data: Any, callback: Callable[..., Any]) -> None:
        if self._client is None:
            raise RuntimeError(f"client {self._session.client_id} emitted before connect")
        await self._client.emit(event, data, callback=callback)

    async def close(self) -> None:
        try:
            if self._client is not None and self._client.connected:
                await self._client.disconnect()
        finally:
            if self._http is not None and not self._http.closed:
                await self._http.close()

    async def _handle_connect_error(self, data: Any = None) -> None:
        self._rejection = data
        logger.debug("Client %s connect_error: %r", self._session.client_id, data)

    async def _handle_disconnect(self, *args: Any) -> None:
        self._hooks.on_disconnect(self._session)

    async def _handle_error(self, data: Any = None) -> None:
        self._hooks.on_error(self._session, data)


def socketio_connection_factory(target: TargetSettings) -> ConnectionFactory:
    """Build a factory that opens SocketIOConnections against target."""

    def _factory(session: ClientSession, hooks: ConnectionHooks) -> Connection:
        return SocketIOConnection(session, target, hooks)

    return _factory
