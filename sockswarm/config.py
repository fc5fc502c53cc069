"""YAML configuration loader for sockswarm runs."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .credentials import DEFAULT_COOKIE_NAME, CredentialSource, HttpCredentialSource, StaticCredentialSource
from .exceptions import SwarmConfigError
from .logging_config import get_logger
from .models import TargetSettings, TestConfiguration

logger = get_logger("config")

DEFAULT_TARGET_USERS = 10
DEFAULT_MESSAGES_PER_CLIENT = 10
DEFAULT_MESSAGE_INTERVAL_MS = 1000
DEFAULT_RAMP_UP_DELAY_MS = 200


@dataclass(slots=True)
class CredentialSettings:
    """Where session credentials come from: an HTTP endpoint or a token file."""

    url: str | None = None
    file: str | None = None
    cookie_name: str = DEFAULT_COOKIE_NAME


@dataclass(slots=True)
class SwarmConfig:
    """Everything a CLI run needs."""

    test: TestConfiguration
    target: TargetSettings
    credentials: CredentialSettings


def validate_test_config(c: TestConfiguration) -> None:
    """Validate TestConfiguration bounds. Raises SwarmConfigError if invalid."""
    if c.target_users < 1:
        raise SwarmConfigError("target_users must be >= 1")
    if c.messages_per_client < 1:
        raise SwarmConfigError("messages_per_client must be >= 1")
    if c.message_interval_ms < 1:
        raise SwarmConfigError("message_interval_ms must be >= 1")
    if c.ramp_up_delay_ms < 0:
        raise SwarmConfigError("ramp_up_delay_ms must be >= 0")


def validate_config(config: SwarmConfig) -> None:
    """Validate a full SwarmConfig. Raises SwarmConfigError if invalid."""
    validate_test_config(config.test)
    if not config.target.url or not config.target.url.startswith(("http://", "https://", "ws://", "wss://")):
        raise SwarmConfigError(
            "target url must be an http(s):// or ws(s):// URL",
            context={"url": config.target.url},
        )
    creds = config.credentials
    if creds.url and creds.file:
        raise SwarmConfigError("credentials: set either url or file, not both")
    if not creds.url and not creds.file:
        raise SwarmConfigError("credentials: url or file is required")


def credential_source(settings: CredentialSettings) -> CredentialSource:
    """Build the credential source described by settings."""
    if settings.url:
        return HttpCredentialSource(settings.url, cookie_name=settings.cookie_name)
    if settings.file:
        return StaticCredentialSource.from_file(settings.file)
    raise SwarmConfigError("credentials: url or file is required")


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise SwarmConfigError(
            f"'{key}' must be a mapping",
            context={"actual_type": type(value).__name__},
        )
    return value


def parse_config(raw: dict[str, Any]) -> SwarmConfig:
    """Build and validate a SwarmConfig from an already-parsed mapping."""
    target_raw = _section(raw, "target")
    test_raw = _section(raw, "test")
    creds_raw = _section(raw, "credentials")
    try:
        transports = target_raw.get("transports") or ["websocket"]
        config = SwarmConfig(
            test=TestConfiguration(
                target_users=int(test_raw.get("target_users", DEFAULT_TARGET_USERS)),
                messages_per_client=int(test_raw.get("messages_per_client", DEFAULT_MESSAGES_PER_CLIENT)),
                message_interval_ms=int(test_raw.get("message_interval_ms", DEFAULT_MESSAGE_INTERVAL_MS)),
                ramp_up_delay_ms=int(test_raw.get("ramp_up_delay_ms", DEFAULT_RAMP_UP_DELAY_MS)),
            ),
            target=TargetSettings(
                url=str(target_raw.get("url") or "").strip(),
                socketio_path=str(target_raw.get("socketio_path", "/socket.io")),
                event=str(target_raw.get("event", "update-position")),
                transports=tuple(str(t) for t in transports),
                client_type=str(target_raw.get("client_type", "load-test")),
            ),
            credentials=CredentialSettings(
                url=creds_raw.get("url"),
                file=creds_raw.get("file"),
                cookie_name=str(creds_raw.get("cookie_name", DEFAULT_COOKIE_NAME)),
            ),
        )
    except (TypeError, ValueError) as e:
        raise SwarmConfigError(f"Invalid config value: {e}", original_error=e) from e

    validate_config(config)
    return config


def load_config(path: str | Path) -> SwarmConfig:
    """Load run configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated SwarmConfig instance

    Raises:
        SwarmConfigError: If file not found, invalid YAML, or validation fails
    """
    p = Path(path)
    if not p.exists():
        raise SwarmConfigError(
            f"Config file not found: {path}",
            context={"path": str(path)}
        )

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML config file")
        raise SwarmConfigError(
            f"Invalid YAML syntax in config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e
    except OSError as e:
        logger.exception("Failed to read config file")
        raise SwarmConfigError(
            f"Cannot read config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    if not isinstance(raw, dict):
        raise SwarmConfigError(
            "Config must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__}
        )

    try:
        config = parse_config(raw)
    except SwarmConfigError as e:
        e.with_context(path=str(path))
        raise
    logger.debug(
        "Loaded config: url=%s, users=%d, messages=%d",
        config.target.url, config.test.target_users, config.test.messages_per_client,
    )
    return config
