"""Registry of named rate limiters with process-wide aggregate statistics.

The bot registers one limiter per concern ("commands", "messages", "api")
at startup and tears them all down together at shutdown.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from botkit.adapters.rate_limit.base import RateLimitResult, RateLimitWindow
from botkit.adapters.rate_limit.in_memory import SlidingWindowRateLimiter
from botkit.core.config import RateLimitSettings
from botkit.core.errors import LimiterNotFoundError
from botkit.schemas.limits import RateLimiterConfig

logger = logging.getLogger(__name__)


def prefixed_key(prefix: str) -> Callable[[str, Mapping[str, Any]], str]:
    """Key generator namespacing identifiers, e.g. ``cmd_<user id>``."""

    def _generate(identifier: str, context: Mapping[str, Any]) -> str:
        return f"{prefix}_{identifier}"

    return _generate


class RateLimitManager:
    """Named limiters plus {total_requests, blocked_requests, start_time}."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._limiters: dict[str, SlidingWindowRateLimiter] = {}
        self.total_requests = 0
        self.blocked_requests = 0
        self.start_time = clock()

    def __contains__(self, name: object) -> bool:
        return name in self._limiters

    @property
    def names(self) -> list[str]:
        return list(self._limiters)

    def create_limiter(
        self,
        name: str,
        config: RateLimiterConfig | None = None,
        **overrides: Any,
    ) -> SlidingWindowRateLimiter:
        """Create and register a limiter under ``name``.

        A limiter already registered under the same name is destroyed and
        replaced.

        Args:
            name: Registry name used by check_limit/consume_limit.
            config: Limiter configuration; defaults apply when omitted.
            overrides: Individual RateLimiterConfig fields overriding ``config``.

        Returns:
            The registered limiter.
        """
        base = config or RateLimiterConfig()
        if overrides:
            base = RateLimiterConfig.model_validate({**dict(base), **overrides})

        user_callback = base.on_limit_reached

        def _on_limit_reached(key: str, window: RateLimitWindow, context: Mapping[str, Any]) -> None:
            self.blocked_requests += 1
            if user_callback is not None:
                user_callback(key, window, context)

        previous = self._limiters.pop(name, None)
        if previous is not None:
            logger.warning("rate_limit.limiter_replaced", extra={"limiter": name})
            previous.destroy()

        limiter = SlidingWindowRateLimiter(
            window_seconds=base.window_seconds,
            max_requests=base.max_requests,
            key_generator=base.key_generator,
            on_limit_reached=_on_limit_reached,
            shared_window_reset=base.shared_window_reset,
            name=name,
            clock=self._clock,
        )
        self._limiters[name] = limiter

        logger.info(
            "rate_limit.limiter_created",
            extra={
                "limiter": name,
                "window_s": base.window_seconds,
                "max_requests": base.max_requests,
            },
        )
        return limiter

    def get_limiter(self, name: str) -> SlidingWindowRateLimiter:
        """Return the limiter registered under ``name``.

        Raises:
            LimiterNotFoundError: If no limiter has that name.
        """
        limiter = self._limiters.get(name)
        if limiter is None:
            raise LimiterNotFoundError(
                code="limiter_not_found",
                message=f"Rate limiter '{name}' not found",
                details={"limiter": name},
            )
        return limiter

    def check_limit(
        self, name: str, identifier: str, context: Mapping[str, Any] | None = None
    ) -> RateLimitResult:
        """Count a request against ``name`` and return the decision without raising."""

        limiter = self.get_limiter(name)
        self.total_requests += 1
        return limiter.is_allowed(identifier, context)

    def consume_limit(
        self, name: str, identifier: str, context: Mapping[str, Any] | None = None
    ) -> RateLimitResult:
        """Count a request against ``name``.

        Raises:
            LimiterNotFoundError: If no limiter has that name.
            RateLimitExceededError: When the identifier is over quota.
        """
        limiter = self.get_limiter(name)
        self.total_requests += 1
        # blocked requests are counted by the wrapped on_limit_reached callback
        return limiter.consume(identifier, context)

    def reset_limiter(self, name: str, identifier: str | None = None) -> bool:
        """Reset one identifier, or the whole limiter when identifier is None.

        Returns:
            False for an unknown limiter name or an identifier with no record.
        """
        limiter = self._limiters.get(name)
        if limiter is None:
            return False

        if identifier is not None:
            return limiter.reset(identifier)

        limiter.reset_all()
        return True

    def get_stats(self, name: str | None = None) -> dict[str, Any] | None:
        """Return one limiter's stats, or the global aggregate plus all limiters."""

        if name is not None:
            limiter = self._limiters.get(name)
            return limiter.get_stats() if limiter else None

        blocked_rate = (
            (self.blocked_requests / self.total_requests) * 100
            if self.total_requests > 0
            else 0.0
        )
        return {
            "global": {
                "total_requests": self.total_requests,
                "blocked_requests": self.blocked_requests,
                "start_time": self.start_time,
                "uptime": self._clock() - self.start_time,
                "blocked_rate": round(blocked_rate, 2),
            },
            "limiters": {
                limiter_name: limiter.get_stats()
                for limiter_name, limiter in self._limiters.items()
            },
        }

    def start(self) -> None:
        """Start background sweeps of limiters created before the loop ran."""

        for limiter in self._limiters.values():
            limiter.start()

    def destroy(self) -> None:
        for limiter in self._limiters.values():
            limiter.destroy()
        self._limiters.clear()


def create_default_limiters(
    manager: RateLimitManager, rate_limit_settings: RateLimitSettings
) -> RateLimitManager:
    """Register the bot's "commands", "messages" and "api" limiters."""

    def _log_command_limit(key: str, window: RateLimitWindow, context: Mapping[str, Any]) -> None:
        logger.warning(
            "rate_limit.commands_exceeded",
            extra={"key": key, "count": window.count},
        )

    manager.create_limiter(
        "commands",
        RateLimiterConfig(
            window_seconds=rate_limit_settings.commands_window_seconds,
            max_requests=rate_limit_settings.commands_max_requests,
            key_generator=prefixed_key("cmd"),
            on_limit_reached=_log_command_limit,
            shared_window_reset=rate_limit_settings.shared_window_reset,
        ),
    )
    manager.create_limiter(
        "messages",
        RateLimiterConfig(
            window_seconds=rate_limit_settings.messages_window_seconds,
            max_requests=rate_limit_settings.messages_max_requests,
            key_generator=prefixed_key("msg"),
            shared_window_reset=rate_limit_settings.shared_window_reset,
        ),
    )
    manager.create_limiter(
        "api",
        RateLimiterConfig(
            window_seconds=rate_limit_settings.api_window_seconds,
            max_requests=rate_limit_settings.api_max_requests,
            key_generator=prefixed_key("api"),
            shared_window_reset=rate_limit_settings.shared_window_reset,
        ),
    )
    return manager
