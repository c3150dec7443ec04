"""Pydantic schema for named rate limiter configuration."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class RateLimiterConfig(BaseModel):
    """Configuration for one named limiter registered with the manager.

    Callables are stored as-is; the key generator receives
    ``(identifier, context)`` and the callback ``(key, window, context)``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    window_seconds: float = Field(
        60.0,
        gt=0,
        description="Rolling window size in seconds.",
    )
    max_requests: int = Field(
        10,
        ge=1,
        description="Requests allowed per identifier per window.",
    )
    key_generator: Optional[Callable[[str, Mapping[str, Any]], str]] = Field(
        None,
        description="Maps an identifier and context to the bucket key.",
    )
    on_limit_reached: Optional[Callable[..., None]] = Field(
        None,
        description="Side-effect hook invoked for every blocked request.",
    )
    shared_window_reset: bool = Field(
        True,
        description="Also wipe every key when the limiter-wide window rolls over.",
    )
