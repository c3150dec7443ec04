"""Turn exceptions raised by the command pipeline into chat replies.

Design:
- Throttling errors -> "try again in N seconds"
- Other AppError subclasses -> their own message
- Unexpected Exception -> generic reply (safety net, nothing leaked)
- Every handled error is logged with the current invocation_id
"""

import logging
import math

from botkit.core.errors import (
    AppError,
    CommandNotFoundError,
    CooldownActiveError,
    PermissionDeniedError,
    RateLimitExceededError,
)
from botkit.core.logging import get_invocation_id

logger = logging.getLogger(__name__)

GENERIC_ERROR_REPLY = "An unexpected error occurred. Please try again later."


def format_retry_after(seconds: float) -> str:
    """Render a wait time as whole seconds, never less than one."""

    whole = max(1, math.ceil(seconds))
    unit = "second" if whole == 1 else "seconds"
    return f"{whole} {unit}"


def app_error_reply(exc: AppError) -> str:
    """Build the reply for a domain error.

    - RateLimitExceededError -> slow down, with the wait time
    - CooldownActiveError -> cooldown notice, with the wait time
    - CommandNotFoundError / PermissionDeniedError -> fixed wording
    - anything else -> ``exc.message``
    """
    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "has_details": bool(exc.details),
            "invocation_id": get_invocation_id(),
        },
    )

    if isinstance(exc, RateLimitExceededError):
        return f"You're doing that too fast. Try again in {format_retry_after(exc.retry_after)}."
    if isinstance(exc, CooldownActiveError):
        command = (exc.details or {}).get("command", "this command")
        return (
            f"`{command}` is on cooldown. "
            f"Try again in {format_retry_after(exc.retry_after)}."
        )
    if isinstance(exc, CommandNotFoundError):
        command = (exc.details or {}).get("command", "")
        return f"Unknown command: {command}" if command else "Unknown command."
    if isinstance(exc, PermissionDeniedError):
        return "You don't have permission to use this command."
    return exc.message


def general_error_reply(exc: Exception) -> str:
    """Fallback for unexpected errors; details go to the log only."""

    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "invocation_id": get_invocation_id(),
        },
    )
    return GENERIC_ERROR_REPLY


def build_error_reply(exc: Exception) -> str:
    """Map any exception to the text sent back to the user."""

    if isinstance(exc, AppError):
        return app_error_reply(exc)
    return general_error_reply(exc)
