"""In-memory sliding-window rate limiter.

Notes:
- Per-process only: several bot processes each enforce their own limits.
- Single-threaded: state is only touched from the event loop thread.
- Two reset mechanisms coexist. Each key rolls its own window
  (``now >= record.reset_at`` resets that key), which is the contract callers
  rely on. Optionally, a limiter-wide window also wipes every key when it
  rolls over; this bounds memory from abandoned identifiers but can release
  a blocked key before its own window ends. Disable it with
  ``shared_window_reset=False``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from botkit.adapters.rate_limit.base import (
    AbstractRateLimiter,
    KeyGenerator,
    LimitReachedCallback,
    RateLimitResult,
    RateLimitWindow,
)
from botkit.core.errors import RateLimitExceededError
from botkit.utils.scheduling import PeriodicTask

logger = logging.getLogger(__name__)

_EMPTY_CONTEXT: Mapping[str, Any] = {}


def default_key_generator(identifier: str, context: Mapping[str, Any]) -> str:
    return identifier


class SlidingWindowRateLimiter(AbstractRateLimiter):
    """Allow at most ``max_requests`` per identifier per rolling window.

    Exceeding the limit still consumes a slot: repeated calls keep counting
    and stay blocked until the window resets.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 60.0,
        max_requests: int = 10,
        key_generator: KeyGenerator | None = None,
        on_limit_reached: LimitReachedCallback | None = None,
        shared_window_reset: bool = True,
        name: str = "default",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            window_seconds: Size of the rolling window in seconds.
            max_requests: Maximum number of allowed requests per window.
            key_generator: Maps (identifier, context) to the bucket key.
            on_limit_reached: Side-effect callback invoked for every blocked request.
            shared_window_reset: Also clear all keys when the limiter-wide window rolls over.
            name: Limiter name used in logs and errors.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If max_requests or window_seconds are invalid.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self.name = name
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.shared_window_reset = shared_window_reset
        self._key_generator = key_generator or default_key_generator
        self._on_limit_reached = on_limit_reached
        self._clock = clock

        self._clients: dict[str, RateLimitWindow] = {}
        self._reset_at = self._clock() + window_seconds

        self._cleanup_task = PeriodicTask(
            f"rate-limit-cleanup:{name}", window_seconds, self._run_cleanup
        )
        self.start()

    @property
    def reset_at(self) -> float:
        """Epoch seconds when the limiter-wide window rolls over."""
        return self._reset_at

    def start(self) -> bool:
        """Start the periodic sweep of stale keys if an event loop is running."""

        return self._cleanup_task.start()

    def _generate_key(self, identifier: str, context: Mapping[str, Any]) -> str:
        if not identifier:
            raise ValueError("identifier must be a non-empty string")
        return self._key_generator(identifier, context)

    def _get_or_reset_window(self, key: str, now: float) -> RateLimitWindow:
        """Get the key's window, creating or rolling it over when needed."""

        record = self._clients.get(key)
        if record is None:
            record = RateLimitWindow(
                count=0,
                window_start=now,
                reset_at=now + self.window_seconds,
                last_request_at=now,
            )
            self._clients[key] = record
        elif now >= record.reset_at:
            record.count = 0
            record.window_start = now
            record.reset_at = now + self.window_seconds
        return record

    def _build_result(self, *, key: str, record: RateLimitWindow, now: float) -> RateLimitResult:
        allowed = record.count <= self.max_requests
        time_to_reset = max(0.0, record.reset_at - now)
        return RateLimitResult(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - record.count),
            reset_at=record.reset_at,
            retry_after_seconds=None if allowed else time_to_reset,
            total_hits=record.count,
            time_to_reset=time_to_reset,
            key=key,
        )

    def _notify_limit_reached(
        self, key: str, record: RateLimitWindow, context: Mapping[str, Any]
    ) -> None:
        if self._on_limit_reached is None:
            return
        try:
            self._on_limit_reached(key, record, context)
        except Exception:
            logger.exception(
                "rate_limit.callback_failed",
                extra={"limiter": self.name, "key": key},
            )

    def is_allowed(
        self, identifier: str, context: Mapping[str, Any] | None = None
    ) -> RateLimitResult:
        """Count one request for ``identifier`` and report whether it may proceed.

        Args:
            identifier: Caller identity (e.g. user id).
            context: Extra data passed to the key generator and callback.

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            ValueError: If identifier is empty.
        """
        ctx = context if context is not None else _EMPTY_CONTEXT
        key = self._generate_key(identifier, ctx)
        now = self._clock()

        if self.shared_window_reset and now >= self._reset_at:
            self._clients.clear()
            self._reset_at = now + self.window_seconds

        record = self._get_or_reset_window(key, now)
        record.last_request_at = now
        record.count += 1

        result = self._build_result(key=key, record=record, now=now)
        if not result.allowed:
            self._notify_limit_reached(key, record, ctx)
        return result

    def consume(
        self, identifier: str, context: Mapping[str, Any] | None = None
    ) -> RateLimitResult:
        """Consume one request or raise when the identifier is over quota.

        Raises:
            RateLimitExceededError: When the request is blocked.
        """
        result = self.is_allowed(identifier, context)
        if result.allowed:
            return result

        logger.warning(
            "rate_limit.exceeded",
            extra={
                "limiter": self.name,
                "key": result.key,
                "limit": result.limit,
                "total_hits": result.total_hits,
                "retry_after_s": result.retry_after_seconds,
            },
        )
        raise RateLimitExceededError(
            code="rate_limit_exceeded",
            message="Rate limit exceeded",
            details={
                "limiter": self.name,
                "remaining": result.remaining,
                "reset_at": result.reset_at,
                "retry_after": result.time_to_reset,
            },
        )

    def reset(self, identifier: str, context: Mapping[str, Any] | None = None) -> bool:
        ctx = context if context is not None else _EMPTY_CONTEXT
        return self._clients.pop(self._generate_key(identifier, ctx), None) is not None

    def reset_all(self) -> None:
        """Forget every key and restart the limiter-wide window."""

        self._clients.clear()
        self._reset_at = self._clock() + self.window_seconds

    def cleanup(self) -> int:
        """Drop keys whose window has ended.

        Returns:
            Number of keys removed.
        """

        now = self._clock()
        stale_keys = [key for key, record in self._clients.items() if now >= record.reset_at]
        for key in stale_keys:
            del self._clients[key]
        return len(stale_keys)

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        active = [record for record in self._clients.values() if now < record.reset_at]
        return {
            "total_clients": len(self._clients),
            "active_clients": len(active),
            "blocked_clients": sum(1 for record in active if record.count > self.max_requests),
            "window_seconds": self.window_seconds,
            "max_requests": self.max_requests,
            "reset_at": self._reset_at,
        }

    def destroy(self) -> None:
        """Stop the background sweep and drop every key. Safe to call twice."""

        self._cleanup_task.stop()
        self._clients.clear()

    def _run_cleanup(self) -> None:
        removed = self.cleanup()
        if removed:
            logger.debug(
                "rate_limit.cleanup",
                extra={"limiter": self.name, "removed": removed},
            )
