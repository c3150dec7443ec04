"""Command registry and the pipeline every command invocation goes through.

Pipeline for ``dispatch``:
1. Resolve the command by name or alias
2. Check permissions
3. Count the invocation against the "commands" rate limiter
4. Enforce the per-user command cooldown (tracked in the cache)
5. Run ``before_command`` hooks, which may replace the invocation
6. Run the plugin "command" middleware chain around ``execute``
7. Run ``after_command`` hooks and update the monitor counters
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import shlex
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from botkit.adapters.rate_limit.manager import RateLimitManager
from botkit.core.auth import ensure_permissions
from botkit.core.config import BotSettings, settings
from botkit.core.errors import (
    AppError,
    CommandNotFoundError,
    CooldownActiveError,
    ValidationAppError,
)
from botkit.core.exception_handlers import build_error_reply
from botkit.core.middleware import invocation_id_middleware
from botkit.services.performance_monitor import PerformanceMonitor
from botkit.services.plugin_manager import PluginManager
from botkit.utils.simple_cache import AdvancedCache, build_cache_key

logger = logging.getLogger(__name__)

COMMANDS_LIMITER = "commands"
MESSAGES_LIMITER = "messages"


@dataclass
class CommandInvocation:
    """One attempt by a user to run a command."""

    command_name: str
    user_id: str
    args: list[str] = field(default_factory=list)
    guild_id: str | None = None
    channel_id: str | None = None
    user_permissions: frozenset[str] = frozenset()
    invocation_id: str | None = None


@dataclass
class Command:
    """A named command. ``execute`` receives the invocation and may be async."""

    name: str
    execute: Callable[[CommandInvocation], Any]
    description: str = ""
    cooldown_seconds: float = 0.0
    permissions: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()


class PermissionChecker(Protocol):
    def __call__(self, command: Command, invocation: CommandInvocation) -> None:
        """Raise PermissionDeniedError when the invocation is not allowed."""


def default_permission_checker(command: Command, invocation: CommandInvocation) -> None:
    ensure_permissions(
        command.name,
        invocation.user_id,
        invocation.user_permissions,
        command.permissions,
    )


class CommandDispatcher:
    """Routes invocations to registered commands through the full pipeline."""

    def __init__(
        self,
        plugin_manager: PluginManager,
        rate_limit_manager: RateLimitManager | None,
        cache: AdvancedCache,
        monitor: PerformanceMonitor | None = None,
        *,
        bot_settings: BotSettings | None = None,
        permission_checker: PermissionChecker = default_permission_checker,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.plugin_manager = plugin_manager
        self.rate_limit_manager = rate_limit_manager
        self.cache = cache
        self.monitor = monitor
        self.settings = bot_settings or settings.bot
        self._permission_checker = permission_checker
        self._clock = clock
        self._commands: dict[str, Command] = {}
        self._aliases: dict[str, str] = {}

    # Registry

    def register(self, command: Command) -> Command:
        """Add a command.

        Raises:
            ValidationAppError: If the name or an alias is already taken.
        """
        key = command.name.lower()
        aliases = [alias.lower() for alias in command.aliases]
        taken = [
            name for name in [key, *aliases] if name in self._commands or name in self._aliases
        ]
        if taken:
            raise ValidationAppError(
                code="command_already_registered",
                message=f"Command name already registered: {', '.join(taken)}",
                details={"command": command.name},
            )

        self._commands[key] = command
        for alias in aliases:
            self._aliases[alias] = key
        logger.debug("command.registered", extra={"command": command.name})
        return command

    def unregister(self, name: str) -> bool:
        command = self._commands.pop(name.lower(), None)
        if command is None:
            return False
        for alias in command.aliases:
            self._aliases.pop(alias.lower(), None)
        return True

    def get_command(self, name: str) -> Command | None:
        name = name.lower()
        return self._commands.get(name) or self._commands.get(self._aliases.get(name, ""))

    @property
    def commands(self) -> list[Command]:
        return list(self._commands.values())

    # Parsing

    def parse_invocation(
        self,
        content: str,
        user_id: str,
        **invocation_fields: Any,
    ) -> CommandInvocation | None:
        """Build an invocation from a chat message, or None if it is not a command.

        Arguments are split shell-style so quoted values stay together.
        """
        prefix = self.settings.prefix
        if not content.startswith(prefix):
            return None

        body = content[len(prefix):].strip()
        try:
            parts = shlex.split(body)
        except ValueError:
            parts = body.split()
        if not parts:
            return None

        return CommandInvocation(
            command_name=parts[0].lower(),
            user_id=user_id,
            args=parts[1:],
            **invocation_fields,
        )

    # Pipeline

    async def dispatch(self, invocation: CommandInvocation) -> Any:
        """Run the full pipeline and return the command's result.

        Raises:
            CommandNotFoundError: Unknown command name.
            PermissionDeniedError: Missing permissions.
            RateLimitExceededError: The user is over the commands quota.
            CooldownActiveError: The command is still cooling down for this user.
            AppError: ``command_timeout`` when execution exceeds the timeout.
        """
        return await invocation_id_middleware(invocation, lambda: self._run(invocation))

    async def handle(self, invocation: CommandInvocation) -> Any:
        """Like ``dispatch``, but errors are turned into reply text."""

        async def _dispatch_or_reply() -> Any:
            try:
                return await self._run(invocation)
            except Exception as exc:
                return build_error_reply(exc)

        return await invocation_id_middleware(invocation, _dispatch_or_reply)

    async def handle_message(self, content: str, user_id: str, **invocation_fields: Any) -> Any:
        """Entry point for raw chat messages.

        Every message counts against the "messages" limiter; over-quota
        messages are dropped silently. Returns None when nothing should be
        sent back.
        """
        if self.monitor is not None:
            self.monitor.increment_counter("messages_processed")

        if self.rate_limit_manager is not None and MESSAGES_LIMITER in self.rate_limit_manager:
            decision = self.rate_limit_manager.check_limit(
                MESSAGES_LIMITER, user_id, {"channel_id": invocation_fields.get("channel_id")}
            )
            if not decision.allowed:
                logger.debug("message.dropped", extra={"user_id": user_id})
                return None

        invocation = self.parse_invocation(content, user_id, **invocation_fields)
        if invocation is None:
            return None
        return await self.handle(invocation)

    async def _run(self, invocation: CommandInvocation) -> Any:
        command = self.get_command(invocation.command_name)
        if command is None:
            raise CommandNotFoundError(
                code="command_not_found",
                message=f"Unknown command: {invocation.command_name}",
                details={"command": invocation.command_name},
            )

        self._permission_checker(command, invocation)

        if self.rate_limit_manager is not None and COMMANDS_LIMITER in self.rate_limit_manager:
            self.rate_limit_manager.consume_limit(
                COMMANDS_LIMITER,
                invocation.user_id,
                {"command": command.name, "guild_id": invocation.guild_id},
            )

        self._enforce_cooldown(command, invocation)

        hook_args = await self.plugin_manager.execute_hook("before_command", invocation)
        if hook_args and isinstance(hook_args[0], CommandInvocation):
            replaced = hook_args[0]
            if replaced.invocation_id is None:
                replaced.invocation_id = invocation.invocation_id
            invocation = replaced

        try:
            result = await self.plugin_manager.execute_middlewares(
                "command",
                invocation,
                lambda: self._execute(command, invocation),
            )
        except Exception as exc:
            if self.monitor is not None:
                self.monitor.increment_counter("errors")
            await self.plugin_manager.execute_hook("command_error", invocation, exc)
            raise

        if self.monitor is not None:
            self.monitor.increment_counter("commands_executed")
        await self.plugin_manager.execute_hook("after_command", invocation, result)
        return result

    def _enforce_cooldown(self, command: Command, invocation: CommandInvocation) -> None:
        if command.cooldown_seconds <= 0:
            return

        key = build_cache_key("cooldown", command.name, invocation.user_id)
        now = self._clock()
        expires_at = self.cache.get(key)
        if expires_at is not None and expires_at > now:
            retry_after = expires_at - now
            raise CooldownActiveError(
                code="cooldown_active",
                message=f"{command.name} is on cooldown",
                details={"command": command.name, "retry_after": retry_after},
            )

        self.cache.set(key, now + command.cooldown_seconds, ttl=command.cooldown_seconds)

    async def _execute(self, command: Command, invocation: CommandInvocation) -> Any:
        timeout = self.settings.command_timeout_seconds
        try:
            result = command.execute(invocation)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "command.timeout",
                extra={"command": command.name, "timeout_s": timeout},
            )
            raise AppError(
                code="command_timeout",
                message=f"{command.name} took too long to respond.",
                details={"command": command.name},
            ) from exc
        return result
