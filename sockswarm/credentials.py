"""Session credential sources.

A source hands out up to N credentials in one batch. Fewer than requested is
valid; failure to fetch any batch at all raises SwarmCredentialError.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Protocol

import httpx
import orjson

from .exceptions import SwarmCredentialError
from .logging_config import get_logger
from .models import Credential

logger = get_logger("credentials")

DEFAULT_COOKIE_NAME = "connect.sid"
DEFAULT_FETCH_TIMEOUT_SEC = 30.0


def _identity(index: int) -> str:
    return f"user-{index}-{int(time.time() * 1000)}"


class CredentialSource(Protocol):
    async def fetch(self, count: int) -> list[Credential]: ...


class HttpCredentialSource:
    """Fetch raw session cookies from an HTTP endpoint: GET url?count=N -> ["raw", ...].

    Each raw value is sent as ``{cookie_name}={raw}`` in the Cookie header.
    """

    def __init__(
        self,
        url: str,
        cookie_name: str = DEFAULT_COOKIE_NAME,
        timeout: float = DEFAULT_FETCH_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.cookie_name = cookie_name
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, count: int) -> list[Credential]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self.url, params={"count": count})
                response.raise_for_status()
            raw = orjson.loads(response.content)
        except httpx.HTTPError as e:
            raise SwarmCredentialError(
                f"Failed to fetch credentials: {e}",
                context={"url": self.url, "count": count},
                original_error=e,
            ) from e
        except orjson.JSONDecodeError as e:
            raise SwarmCredentialError(
                "Credential endpoint did not return JSON",
                context={"url": self.url},
                original_error=e,
            ) from e

        if not isinstance(raw, list):
            raise SwarmCredentialError(
                "Credential endpoint must return a JSON array",
                context={"url": self.url, "actual_type": type(raw).__name__},
            )
        logger.info("Requested %d credential(s), received %d", count, len(raw))
        return [
            Credential(token=f"{self.cookie_name}={value}", identity=_identity(i))
            for i, value in enumerate(raw[:count])
        ]


class StaticCredentialSource:
    """Credentials from a fixed list of tokens (used as-is in the Cookie header)."""

    def __init__(self, tokens: list[str]) -> None:
        self._tokens = list(tokens)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticCredentialSource":
        """One token per line; blank lines and lines starting with '#' are skipped."""
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise SwarmCredentialError(
                f"Cannot read credentials file: {e}",
                context={"path": str(path)},
                original_error=e,
            ) from e
        tokens = [
            line.strip()
            for line in text.splitlines()
            if line.strip() and not line.lstrip().startswith("#")
        ]
        return cls(tokens)

    async def fetch(self, count: int) -> list[Credential]:
        return [Credential(token=t, identity=_identity(i)) for i, t in enumerate(self._tokens[:count])]
