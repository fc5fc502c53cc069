"""Custom exceptions for sockswarm.

All sockswarm-specific exceptions inherit from SwarmError for unified error handling.
Each exception preserves the original cause chain for debugging.
"""

from __future__ import annotations

from typing import Any


class SwarmError(Exception):
    """Base exception for all sockswarm errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "SwarmError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class SwarmConfigError(SwarmError):
    """Raised when configuration is invalid or file cannot be loaded.

    Common causes:
    - Config file not found
    - Invalid YAML syntax
    - Missing target URL or credential source
    - Invalid field values (e.g., target_users < 1)
    """


class SwarmCredentialError(SwarmError):
    """Raised when session credentials cannot be obtained.

    Fatal to a run: no client is created when this is raised.

    Common causes:
    - Credential endpoint unreachable or returned an error status
    - Response body is not a JSON array
    - Credential file missing or unreadable
    """


class SwarmRunnerError(SwarmError):
    """Raised when a run cannot proceed (e.g. started twice, invalid state transition)."""
