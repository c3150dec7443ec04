"""Command middleware for invocation id propagation and timing.

Every command invocation carries an id so all log lines emitted while it
runs (rate limiting, cache, plugin hooks) can be correlated.

The middleware:
- Reuses ``invocation.invocation_id`` or generates a UUID
- Binds it, with the command name and user id, to the logging context
- Measures the duration of the rest of the chain
- Restores the previous context afterwards

Usage:
    await invocation_id_middleware(invocation, call_next)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from botkit.core.logging import bind_invocation, reset_invocation

logger = logging.getLogger(__name__)


async def invocation_id_middleware(
    invocation: Any,
    call_next: Callable[[], Awaitable[Any]],
) -> Any:
    """Run ``call_next`` with an invocation id bound to the logging context.

    Args:
        invocation: Object with ``invocation_id``, ``command_name`` and
            ``user_id`` attributes.
        call_next: Rest of the command pipeline.

    Returns:
        Whatever the pipeline returns.
    """

    invocation_id = getattr(invocation, "invocation_id", None) or str(uuid.uuid4())
    invocation.invocation_id = invocation_id
    token = bind_invocation(
        invocation_id,
        command=getattr(invocation, "command_name", None),
        user_id=getattr(invocation, "user_id", None),
    )
    start = time.perf_counter()
    try:
        return await call_next()
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("command.finished", extra={"duration_ms": round(duration_ms, 2)})
        reset_invocation(token)
