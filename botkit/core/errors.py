"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and user-facing replies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and replies.

    Fields are optional to keep shapes consistent without forcing every
    error to fill all of them.
    """

    code: str
    message: str
    hint: str
    limiter: str
    remaining: int
    reset_at: float
    retry_after: float
    command: str
    plugin: str
    permissions: list[str]
    invocation_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class RateLimitExceededError(AppError):
    """Raised by ``consume`` when an identifier is over its quota.

    Expected and recoverable: callers should back off or tell the user when
    to retry (``details["retry_after"]``).
    """

    @property
    def retry_after(self) -> float:
        return float((self.details or {}).get("retry_after", 0.0))


class LimiterNotFoundError(AppError):
    """Raised when an unregistered limiter name is used (configuration bug)."""


class PluginAppError(AppError):
    """Raised when a plugin fails validation or its lifecycle hooks."""


class CommandNotFoundError(AppError):
    """Raised when dispatch targets an unknown command."""


class PermissionDeniedError(AppError):
    """Raised when the invoking user lacks a command's permissions."""


class CooldownActiveError(AppError):
    """Raised when a command is invoked again before its cooldown elapsed."""

    @property
    def retry_after(self) -> float:
        return float((self.details or {}).get("retry_after", 0.0))
