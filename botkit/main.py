"""Bot runtime wiring: cache, rate limits, plugins, monitoring and commands.

The chat platform adapter owns the connection; it creates a runtime, awaits
``start()``, forwards messages to ``runtime.dispatcher.handle_message`` and
awaits ``shutdown()`` on exit.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass

from botkit.adapters.rate_limit.manager import RateLimitManager, create_default_limiters
from botkit.core.config import Settings, settings as default_settings
from botkit.core.logging import configure_logging
from botkit.services.command_dispatcher import CommandDispatcher
from botkit.services.performance_monitor import PerformanceMonitor
from botkit.services.plugin_manager import PluginManager
from botkit.utils.simple_cache import AdvancedCache

logger = logging.getLogger(__name__)


@dataclass
class BotRuntime:
    settings: Settings
    cache: AdvancedCache
    rate_limits: RateLimitManager | None
    plugins: PluginManager
    monitor: PerformanceMonitor
    dispatcher: CommandDispatcher

    async def start(self) -> None:
        """Start background timers and load plugins. Requires a running loop."""

        self.cache.start()
        if self.rate_limits is not None:
            self.rate_limits.start()
        if self.settings.monitoring.enabled:
            self.monitor.start()
        if self.settings.bot.plugins_enabled:
            await self.plugins.load_all_plugins(self.settings.bot.plugins_package)

        logger.info(
            "bot.started",
            extra={
                "bot": self.settings.bot.name,
                "app_env": self.settings.app_env,
                "plugins": len(self.plugins),
            },
        )

    async def shutdown(self) -> None:
        """Stop timers and release plugins, limiters and cached data."""

        await self.plugins.destroy()
        self.monitor.destroy()
        if self.rate_limits is not None:
            self.rate_limits.destroy()
        self.cache.destroy()
        logger.info("bot.stopped", extra={"bot": self.settings.bot.name})


def create_runtime(app_settings: Settings | None = None) -> BotRuntime:
    """Build every component from settings without starting anything."""

    app_settings = app_settings or default_settings

    cache = AdvancedCache(
        max_size=app_settings.cache.max_size,
        default_ttl=app_settings.cache.default_ttl_seconds,
        cleanup_interval=app_settings.cache.cleanup_interval_seconds,
        max_memory_bytes=app_settings.cache.max_memory_mb * 1024 * 1024,
    )

    rate_limits = None
    if app_settings.rate_limit.enabled:
        rate_limits = create_default_limiters(RateLimitManager(), app_settings.rate_limit)

    plugins = PluginManager()
    monitor = PerformanceMonitor(app_settings.monitoring)
    monitor.add_recovery_callback(cache.cleanup_expired)

    dispatcher = CommandDispatcher(
        plugins,
        rate_limits,
        cache,
        monitor,
        bot_settings=app_settings.bot,
    )

    runtime = BotRuntime(
        settings=app_settings,
        cache=cache,
        rate_limits=rate_limits,
        plugins=plugins,
        monitor=monitor,
        dispatcher=dispatcher,
    )
    plugins.bot = runtime
    return runtime


async def run(app_settings: Settings | None = None) -> None:
    """Start a runtime and keep it alive until SIGINT/SIGTERM."""

    runtime = create_runtime(app_settings)
    await runtime.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await stop.wait()
    finally:
        await runtime.shutdown()


def main() -> None:
    configure_logging(default_settings.log)
    asyncio.run(run())


if __name__ == "__main__":
    main()
