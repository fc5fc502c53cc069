"""Logging setup for sockswarm.

All modules log under the ``sockswarm`` logger. It is configured once, on the
first get_logger call, from SOCKSWARM_LOG_LEVEL / SOCKSWARM_LOG_FORMAT; the CLI
may reconfigure it from --log-level / --log-format before a run starts.
Output goes to stderr so the report on stdout stays clean.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

LOG_LEVEL_ENV = "SOCKSWARM_LOG_LEVEL"
LOG_FORMAT_ENV = "SOCKSWARM_LOG_FORMAT"  # "json" | "text" (default)
LOG_FORMATS = ("text", "json")

ROOT_LOGGER = "sockswarm"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    """Return ``sockswarm.<name>`` (or the root ``sockswarm`` logger), configuring it on first use."""
    logger = logging.getLogger(ROOT_LOGGER if name == ROOT_LOGGER else f"{ROOT_LOGGER}.{name}")
    if not logging.getLogger(ROOT_LOGGER).handlers:
        configure_logging()
    return logger


def configure_logging(level: str | None = None, fmt: str | None = None, *, force: bool = False) -> logging.Logger:
    """Attach the sockswarm stderr handler.

    Args:
        level: Level name; falls back to SOCKSWARM_LOG_LEVEL, then INFO
        fmt: "text" or "json"; falls back to SOCKSWARM_LOG_FORMAT, then text
        force: Replace a handler installed earlier (used by the CLI flags)
    """
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers and not force:
        return root
    for old in list(root.handlers):
        root.removeHandler(old)

    level_name = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    fmt_name = (fmt or os.environ.get(LOG_FORMAT_ENV) or "text").lower()

    handler = logging.StreamHandler(sys.stderr)
    if fmt_name == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))
    root.addHandler(handler)
    return root


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode("utf-8")
