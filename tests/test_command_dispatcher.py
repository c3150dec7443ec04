"""Tests for the command pipeline: limits, cooldowns, permissions and plugins."""

from unittest.mock import Mock

import pytest

from botkit.adapters.rate_limit.manager import RateLimitManager
from botkit.core.config import BotSettings, MonitoringSettings
from botkit.core.errors import (
    AppError,
    CommandNotFoundError,
    CooldownActiveError,
    PermissionDeniedError,
    RateLimitExceededError,
    ValidationAppError,
)
from botkit.core.logging import get_invocation_id
from botkit.services.command_dispatcher import (
    Command,
    CommandDispatcher,
    CommandInvocation,
)
from botkit.services.performance_monitor import PerformanceMonitor
from botkit.services.plugin_manager import BasePlugin, PluginManager
from botkit.utils.simple_cache import AdvancedCache


@pytest.fixture
def runtime(clock):
    cache = AdvancedCache(max_size=100, clock=clock)
    limits = RateLimitManager(clock=clock)
    limits.create_limiter("commands", max_requests=2, window_seconds=60)
    limits.create_limiter("messages", max_requests=3, window_seconds=60)
    plugins = PluginManager()
    monitor = PerformanceMonitor(MonitoringSettings(), memory_probe=lambda: 0, clock=clock)
    dispatcher = CommandDispatcher(
        plugins,
        limits,
        cache,
        monitor,
        bot_settings=BotSettings(prefix="!", command_timeout_seconds=0.1),
        clock=clock,
    )
    yield dispatcher
    limits.destroy()
    cache.destroy()


def _ping(invocation: CommandInvocation) -> str:
    return "pong " + " ".join(invocation.args)


@pytest.mark.asyncio
async def test_dispatch_runs_command_and_counts(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="ping", execute=_ping))

    result = await runtime.dispatch(CommandInvocation("ping", "u1", ["a", "b"]))

    assert result == "pong a b"
    assert runtime.monitor.counters["commands_executed"] == 1
    assert runtime.rate_limit_manager.total_requests == 1


@pytest.mark.asyncio
async def test_dispatch_awaits_async_commands(runtime: CommandDispatcher) -> None:
    async def hello(invocation):
        return f"hello {invocation.user_id}"

    runtime.register(Command(name="hello", execute=hello))

    assert await runtime.dispatch(CommandInvocation("hello", "u1")) == "hello u1"


@pytest.mark.asyncio
async def test_aliases_resolve_to_command(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="ping", execute=_ping, aliases=("p",)))

    assert await runtime.dispatch(CommandInvocation("P", "u1")) == "pong "


def test_register_rejects_duplicate_names(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="ping", execute=_ping, aliases=("p",)))

    with pytest.raises(ValidationAppError):
        runtime.register(Command(name="p", execute=_ping))

    assert runtime.unregister("ping") is True
    assert runtime.get_command("p") is None
    assert runtime.unregister("ping") is False


@pytest.mark.asyncio
async def test_mixed_case_names_match_any_case(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="Ping", execute=_ping, aliases=("PP",)))

    assert runtime.get_command("Ping") is not None
    assert await runtime.dispatch(runtime.parse_invocation("!Ping", "u1")) == "pong "
    assert await runtime.dispatch(runtime.parse_invocation("!ping x", "u1")) == "pong x"
    assert await runtime.dispatch(CommandInvocation("pP", "u2")) == "pong "

    with pytest.raises(ValidationAppError):
        runtime.register(Command(name="ping", execute=_ping))
    with pytest.raises(ValidationAppError):
        runtime.register(Command(name="other", execute=_ping, aliases=("pp",)))

    assert runtime.unregister("PING") is True
    assert runtime.get_command("pp") is None


@pytest.mark.asyncio
async def test_unknown_command(runtime: CommandDispatcher) -> None:
    with pytest.raises(CommandNotFoundError):
        await runtime.dispatch(CommandInvocation("nope", "u1"))


@pytest.mark.asyncio
async def test_permissions_checked(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="ban", execute=lambda inv: "banned", permissions=("ban_members",)))

    with pytest.raises(PermissionDeniedError) as exc_info:
        await runtime.dispatch(CommandInvocation("ban", "u1"))
    assert exc_info.value.details["permissions"] == ["ban_members"]

    allowed = CommandInvocation("ban", "u2", user_permissions=frozenset({"ban_members"}))
    assert await runtime.dispatch(allowed) == "banned"


@pytest.mark.asyncio
async def test_owners_bypass_permissions(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="ban", execute=lambda inv: "banned", permissions=("ban_members",)))

    assert await runtime.dispatch(CommandInvocation("ban", "owner-1")) == "banned"


@pytest.mark.asyncio
async def test_rate_limit_applies_per_user(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="ping", execute=_ping))

    await runtime.dispatch(CommandInvocation("ping", "u1"))
    await runtime.dispatch(CommandInvocation("ping", "u1"))
    with pytest.raises(RateLimitExceededError):
        await runtime.dispatch(CommandInvocation("ping", "u1"))

    assert await runtime.dispatch(CommandInvocation("ping", "u2")) == "pong "
    assert runtime.rate_limit_manager.blocked_requests == 1


@pytest.mark.asyncio
async def test_cooldown_tracked_in_cache(runtime: CommandDispatcher, clock) -> None:
    runtime.register(Command(name="daily", execute=lambda inv: "reward", cooldown_seconds=10))

    assert await runtime.dispatch(CommandInvocation("daily", "u1")) == "reward"

    clock.advance(4)
    with pytest.raises(CooldownActiveError) as exc_info:
        await runtime.dispatch(CommandInvocation("daily", "u1"))
    assert exc_info.value.retry_after == pytest.approx(6)

    runtime.rate_limit_manager.reset_limiter("commands")
    clock.advance(7)
    assert await runtime.dispatch(CommandInvocation("daily", "u1")) == "reward"
    assert "cooldown:daily:u1" in runtime.cache


@pytest.mark.asyncio
async def test_errors_counted_and_reraised(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="boom", execute=Mock(side_effect=RuntimeError("kaboom"))))

    with pytest.raises(RuntimeError):
        await runtime.dispatch(CommandInvocation("boom", "u1"))

    assert runtime.monitor.counters["errors"] == 1
    assert runtime.monitor.counters["commands_executed"] == 0


@pytest.mark.asyncio
async def test_slow_command_times_out(runtime: CommandDispatcher) -> None:
    import asyncio

    async def slow(invocation):
        await asyncio.sleep(1)

    runtime.register(Command(name="slow", execute=slow))

    with pytest.raises(AppError) as exc_info:
        await runtime.dispatch(CommandInvocation("slow", "u1"))
    assert exc_info.value.code == "command_timeout"


class AuditPlugin(BasePlugin):
    name = "audit"
    version = "1.0.0"
    description = "records the pipeline"

    def __init__(self) -> None:
        super().__init__()
        self.events: list[str] = []
        self.hooks = {
            "before_command": self.before,
            "after_command": self.after,
            "command_error": self.on_error,
        }
        self.middlewares = {"command": self.around}

    def before(self, invocation):
        self.events.append(f"before:{invocation.command_name}")
        # hooks may hand a modified invocation to the rest of the pipeline
        return [CommandInvocation(invocation.command_name, invocation.user_id, ["from-hook"])]

    def after(self, invocation, result):
        self.events.append(f"after:{result}")

    def on_error(self, invocation, exc):
        self.events.append(f"error:{type(exc).__name__}")

    async def around(self, invocation, call_next):
        self.events.append(f"middleware:{invocation.invocation_id is not None}")
        return await call_next()


@pytest.mark.asyncio
async def test_plugins_wrap_the_pipeline(runtime: CommandDispatcher) -> None:
    plugin = AuditPlugin()
    await runtime.plugin_manager.register_plugin(plugin)
    runtime.register(Command(name="ping", execute=_ping))

    result = await runtime.dispatch(CommandInvocation("ping", "u1"))

    assert result == "pong from-hook"
    assert plugin.events == ["before:ping", "middleware:True", "after:pong from-hook"]


@pytest.mark.asyncio
async def test_error_hook_sees_failures(runtime: CommandDispatcher) -> None:
    plugin = AuditPlugin()
    await runtime.plugin_manager.register_plugin(plugin)
    runtime.register(Command(name="boom", execute=Mock(side_effect=KeyError("x"))))

    with pytest.raises(KeyError):
        await runtime.dispatch(CommandInvocation("boom", "u1"))

    assert plugin.events[-1] == "error:KeyError"


@pytest.mark.asyncio
async def test_invocation_id_bound_during_execution(runtime: CommandDispatcher) -> None:
    seen: list[str | None] = []
    runtime.register(Command(name="trace", execute=lambda inv: seen.append(get_invocation_id())))

    invocation = CommandInvocation("trace", "u1", invocation_id="inv-123")
    await runtime.dispatch(invocation)

    assert seen == ["inv-123"]
    assert get_invocation_id() is None


@pytest.mark.asyncio
async def test_handle_turns_errors_into_replies(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="boom", execute=Mock(side_effect=RuntimeError("secret detail"))))

    unknown = await runtime.handle(CommandInvocation("nope", "u1"))
    failure = await runtime.handle(CommandInvocation("boom", "u1"))

    assert unknown == "Unknown command: nope"
    assert "secret detail" not in failure
    assert "unexpected error" in failure


def test_parse_invocation(runtime: CommandDispatcher) -> None:
    invocation = runtime.parse_invocation('!Say "hello world" twice', "u1", channel_id="c1")

    assert invocation.command_name == "say"
    assert invocation.args == ["hello world", "twice"]
    assert invocation.channel_id == "c1"
    assert runtime.parse_invocation("just chatting", "u1") is None
    assert runtime.parse_invocation("!", "u1") is None


@pytest.mark.asyncio
async def test_handle_message_applies_message_limit(runtime: CommandDispatcher) -> None:
    runtime.register(Command(name="ping", execute=_ping))

    assert await runtime.handle_message("hello", "u1") is None
    assert await runtime.handle_message("!ping", "u1") == "pong "
    assert await runtime.handle_message("!ping", "u1") == "pong "
    # fourth message in the window is dropped silently
    assert await runtime.handle_message("!ping", "u1") is None

    assert runtime.monitor.counters["messages_processed"] == 4
