"""Rate limiting adapters.

Callers depend on ``AbstractRateLimiter`` and the named ``RateLimitManager``;
the in-memory sliding-window limiter is the only backend.
"""

from botkit.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    RateLimitWindow,
)
from botkit.adapters.rate_limit.in_memory import SlidingWindowRateLimiter
from botkit.adapters.rate_limit.manager import RateLimitManager, create_default_limiters

__all__ = [
    "AbstractRateLimiter",
    "RateLimitManager",
    "RateLimitResult",
    "RateLimitWindow",
    "SlidingWindowRateLimiter",
    "create_default_limiters",
]
