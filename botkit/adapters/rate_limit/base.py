"""Rate limiter interfaces.

Callers (the manager, the command dispatcher) depend on this abstraction
rather than the concrete in-memory implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping

KeyGenerator = Callable[[str, Mapping[str, Any]], str]
LimitReachedCallback = Callable[[str, "RateLimitWindow", Mapping[str, Any]], None]


@dataclass
class RateLimitWindow:
    """Per-key window record.

    Attributes:
        count: Requests seen in the current window (blocked ones included).
        window_start: Epoch seconds when the current window opened.
        reset_at: Epoch seconds when the window closes and the count resets.
        last_request_at: Epoch seconds of the most recent request.
    """

    count: int
    window_start: float
    reset_at: float
    last_request_at: float


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check/consume operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: Epoch seconds when the key's window resets.
        retry_after_seconds: Suggested wait time in seconds when blocked.
        total_hits: Requests counted in the current window, this one included.
        time_to_reset: Seconds until ``reset_at``.
        key: Bucket key produced by the key generator.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: float | None
    total_hits: int = 0
    time_to_reset: float = 0.0
    key: str = ""


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    def is_allowed(
        self, identifier: str, context: Mapping[str, Any] | None = None
    ) -> RateLimitResult:
        """Count one request for ``identifier`` and report whether it may proceed."""
        raise NotImplementedError

    @abstractmethod
    def consume(
        self, identifier: str, context: Mapping[str, Any] | None = None
    ) -> RateLimitResult:
        """Like ``is_allowed`` but raises RateLimitExceededError when blocked."""
        raise NotImplementedError

    @abstractmethod
    def reset(self, identifier: str, context: Mapping[str, Any] | None = None) -> bool:
        """Forget one identifier's window. Returns whether a record existed."""
        raise NotImplementedError

    @abstractmethod
    def reset_all(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_stats(self) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def destroy(self) -> None:
        raise NotImplementedError
