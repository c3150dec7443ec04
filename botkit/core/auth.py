"""Command permission checks.

Owners (BOT_OWNERS, comma-separated user ids) bypass every permission.
Everyone else must hold all permissions a command requires; the platform
adapter fills ``CommandInvocation.user_permissions`` from the chat service.
"""

from __future__ import annotations

import logging
from typing import Iterable

from botkit.core.config import settings
from botkit.core.errors import PermissionDeniedError

logger = logging.getLogger(__name__)


def parse_owner_ids(owners_string: str | None) -> set[str]:
    """Parse comma-separated owner ids into a set.

    Examples:
        >>> parse_owner_ids("123, 456")
        {'123', '456'}
        >>> parse_owner_ids(None)
        set()
    """
    if not owners_string:
        return set()

    return {owner.strip() for owner in owners_string.split(",") if owner.strip()}


def is_owner(user_id: str) -> bool:
    return user_id in parse_owner_ids(settings.bot.owners)


def has_permissions(
    user_id: str,
    user_permissions: Iterable[str],
    required: Iterable[str],
) -> bool:
    """Default permission checker: owners pass, others need every permission."""

    required_set = set(required)
    if not required_set or is_owner(user_id):
        return True
    return required_set.issubset(set(user_permissions))


def ensure_permissions(
    command_name: str,
    user_id: str,
    user_permissions: Iterable[str],
    required: Iterable[str],
) -> None:
    """Raise if ``user_id`` may not run ``command_name``.

    Raises:
        PermissionDeniedError: If a required permission is missing.
    """
    required_list = sorted(set(required))
    if has_permissions(user_id, user_permissions, required_list):
        return

    missing = sorted(set(required_list) - set(user_permissions))
    logger.warning(
        "auth.permission_denied",
        extra={"command": command_name, "user_id": user_id, "missing": missing},
    )
    raise PermissionDeniedError(
        code="permission_denied",
        message=f"Missing permissions for {command_name}: {', '.join(missing)}",
        details={"command": command_name, "permissions": missing},
    )
