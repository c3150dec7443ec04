"""Plugin registry with ordered hooks and continuation-passing middleware.

A plugin is any ``BasePlugin`` subclass. It can contribute:
- hooks: ``{"before_command": fn, ...}``; hooks for a name run in
  registration order, and a non-None return value replaces the argument list
  seen by the next hook.
- middlewares: ``{"command": fn, ...}``; each middleware receives
  ``(context, call_next)`` and decides whether and when to continue the chain.

Plugins are registered directly or discovered by importing modules from a
package (``load_all_plugins("botkit.plugins")``).
"""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil
import sys
from typing import Any, Awaitable, Callable

from botkit.core.errors import PluginAppError
from botkit.schemas.plugin import PluginInfo
from botkit.utils.events import EventEmitter

logger = logging.getLogger(__name__)

Hook = Callable[..., Any]
Middleware = Callable[[Any, Callable[[], Awaitable[Any]]], Any]

REQUIRED_FIELDS = ("name", "version", "description")


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class BasePlugin:
    """Base class for plugins.

    Subclasses override the metadata attributes and any lifecycle method
    they need, and fill ``self.hooks`` / ``self.middlewares`` in ``__init__``.
    """

    name: str = "BasePlugin"
    version: str = "1.0.0"
    description: str = "Base plugin class"
    author: str = "Unknown"
    dependencies: tuple[str, ...] = ()

    def __init__(self, manager: "PluginManager | None" = None, bot: Any = None) -> None:
        self.manager = manager
        self.bot = bot
        self.enabled = True
        self.hooks: dict[str, Hook] = {}
        self.middlewares: dict[str, Middleware] = {}
        self.logger = logging.getLogger(f"botkit.plugins.{self.name}")

    async def init(self) -> None:
        """Called once when the plugin is registered."""

    async def enable(self) -> None:
        """Called when the plugin is (re-)enabled."""

    async def disable(self) -> None:
        """Called when the plugin is disabled."""

    async def destroy(self) -> None:
        """Called when the plugin is unloaded; release resources here."""

    def log(self, message: str, **extra: Any) -> None:
        self.logger.info(message, extra={"plugin": self.name, **extra})

    def error(self, message: str, **extra: Any) -> None:
        self.logger.error(message, extra={"plugin": self.name, **extra})


class PluginManager(EventEmitter):
    """Registry of plugins keyed by name, plus hook/middleware dispatch.

    Emits "plugin_loaded", "plugin_unloaded", "plugin_enabled",
    "plugin_disabled" and "all_plugins_loaded".
    """

    def __init__(self, bot: Any = None) -> None:
        super().__init__()
        self.bot = bot
        self._plugins: dict[str, BasePlugin] = {}
        self._order: list[str] = []
        self._sources: dict[str, str] = {}
        self._hooks: dict[str, list[tuple[str, Hook]]] = {}
        self._middlewares: dict[str, list[tuple[str, Middleware]]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    # Registration

    def validate_plugin(self, plugin: BasePlugin) -> None:
        """Check required metadata and that dependencies are registered.

        Raises:
            PluginAppError: If the plugin cannot be registered.
        """
        for field_name in REQUIRED_FIELDS:
            if not getattr(plugin, field_name, None):
                raise PluginAppError(
                    code="plugin_invalid",
                    message=f"Plugin missing required field: {field_name}",
                    details={"plugin": type(plugin).__name__},
                )

        if plugin.name in self._plugins:
            raise PluginAppError(
                code="plugin_already_loaded",
                message=f"Plugin already loaded: {plugin.name}",
                details={"plugin": plugin.name},
            )

        for dependency in plugin.dependencies:
            if dependency not in self._plugins:
                raise PluginAppError(
                    code="plugin_dependency_missing",
                    message=f"Plugin dependency not found: {dependency}",
                    details={"plugin": plugin.name, "hint": dependency},
                )

    async def register_plugin(self, plugin: BasePlugin, source: str | None = None) -> BasePlugin:
        """Validate, initialize and register a plugin instance.

        Args:
            plugin: Plugin instance.
            source: Module the plugin was loaded from (enables reload_plugin).

        Raises:
            PluginAppError: If validation or ``init`` fails.
        """
        self.validate_plugin(plugin)

        try:
            await plugin.init()
        except Exception as exc:
            logger.exception("plugin.init_failed", extra={"plugin": plugin.name})
            raise PluginAppError(
                code="plugin_init_failed",
                message=f"Plugin {plugin.name} failed to initialize: {exc}",
                details={"plugin": plugin.name},
            ) from exc

        self._plugins[plugin.name] = plugin
        self._order.append(plugin.name)
        if source:
            self._sources[plugin.name] = source

        for hook_name, handler in plugin.hooks.items():
            self._hooks.setdefault(hook_name, []).append((plugin.name, handler))
        for event_name, middleware in plugin.middlewares.items():
            self._middlewares.setdefault(event_name, []).append((plugin.name, middleware))

        logger.info(
            "plugin.loaded",
            extra={
                "plugin": plugin.name,
                "version": plugin.version,
                "hooks": sorted(plugin.hooks),
                "middlewares": sorted(plugin.middlewares),
            },
        )
        self.emit("plugin_loaded", plugin.name, plugin)
        return plugin

    async def load_plugin(self, module_name: str) -> list[BasePlugin]:
        """Import ``module_name`` and register every BasePlugin subclass it defines.

        Already-imported modules are reloaded so edited plugins are picked up.

        If one of them fails to register, the ones already registered from
        the same module are unloaded again before the error propagates.

        Raises:
            PluginAppError: If the module defines no plugin class.
        """
        if module_name in sys.modules:
            module = importlib.reload(sys.modules[module_name])
        else:
            module = importlib.import_module(module_name)

        plugin_classes = [
            obj
            for obj in vars(module).values()
            if inspect.isclass(obj)
            and issubclass(obj, BasePlugin)
            and obj is not BasePlugin
            and obj.__module__ == module.__name__
        ]
        if not plugin_classes:
            raise PluginAppError(
                code="plugin_class_missing",
                message=f"Module {module_name} does not define a plugin class",
            )

        loaded: list[BasePlugin] = []
        try:
            for plugin_class in plugin_classes:
                plugin = plugin_class(self, self.bot)
                loaded.append(await self.register_plugin(plugin, source=module_name))
        except Exception:
            for plugin in reversed(loaded):
                await self.unload_plugin(plugin.name)
                self._sources.pop(plugin.name, None)
            raise
        return loaded

    async def load_all_plugins(self, package: str) -> int:
        """Load every public module of ``package``.

        Modules whose name starts with '_' are skipped. Modules failing on a
        missing dependency are retried after the others, so alphabetical
        order does not matter. Other failures are logged and skipped.

        Returns:
            Number of plugins loaded.
        """
        try:
            pkg = importlib.import_module(package)
        except ImportError:
            logger.warning("plugin.package_missing", extra={"package": package})
            return 0

        pending = [
            f"{package}.{info.name}"
            for info in pkgutil.iter_modules(getattr(pkg, "__path__", []))
            if not info.name.startswith("_")
        ]
        loaded_count = 0

        while pending:
            retry: list[str] = []
            for module_name in pending:
                try:
                    loaded_count += len(await self.load_plugin(module_name))
                except PluginAppError as exc:
                    if exc.code == "plugin_dependency_missing":
                        retry.append(module_name)
                    else:
                        logger.error(
                            "plugin.load_failed",
                            extra={"module": module_name, "error_code": exc.code},
                        )
                except Exception:
                    logger.exception("plugin.load_failed", extra={"module": module_name})

            if len(retry) == len(pending):
                for module_name in retry:
                    logger.error(
                        "plugin.load_failed",
                        extra={"module": module_name, "error_code": "plugin_dependency_missing"},
                    )
                break
            pending = retry

        logger.info("plugin.all_loaded", extra={"package": package, "count": loaded_count})
        self.emit("all_plugins_loaded", loaded_count)
        return loaded_count

    async def unload_plugin(self, name: str) -> bool:
        """Destroy and unregister a plugin.

        Returns:
            False if the plugin is unknown or its ``destroy`` failed (it then
            stays registered).
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            return False

        try:
            await plugin.destroy()
        except Exception:
            logger.exception("plugin.unload_failed", extra={"plugin": name})
            return False

        for hook_name, hooks in self._hooks.items():
            self._hooks[hook_name] = [h for h in hooks if h[0] != name]
        for event_name, middlewares in self._middlewares.items():
            self._middlewares[event_name] = [m for m in middlewares if m[0] != name]

        del self._plugins[name]
        self._order.remove(name)

        logger.info("plugin.unloaded", extra={"plugin": name})
        self.emit("plugin_unloaded", name)
        return True

    async def reload_plugin(self, name: str) -> list[BasePlugin]:
        """Unload a plugin and load its module again.

        Raises:
            PluginAppError: If the plugin was not loaded from a module, or its
                ``destroy`` failed and it is still registered.
        """
        source = self._sources.get(name)
        if source is None:
            raise PluginAppError(
                code="plugin_not_reloadable",
                message=f"Plugin {name} was not loaded from a module",
                details={"plugin": name},
            )
        if name in self._plugins and not await self.unload_plugin(name):
            raise PluginAppError(
                code="plugin_unload_failed",
                message=f"Plugin {name} could not be unloaded for reload",
                details={"plugin": name},
            )
        return await self.load_plugin(source)

    async def enable_plugin(self, name: str) -> bool:
        plugin = self._plugins.get(name)
        if plugin is None:
            return False
        await plugin.enable()
        plugin.enabled = True
        self.emit("plugin_enabled", name)
        return True

    async def disable_plugin(self, name: str) -> bool:
        plugin = self._plugins.get(name)
        if plugin is None:
            return False
        await plugin.disable()
        plugin.enabled = False
        self.emit("plugin_disabled", name)
        return True

    # Lookup

    def get_plugin(self, name: str) -> BasePlugin | None:
        return self._plugins.get(name)

    def get_plugin_info(self, name: str) -> PluginInfo | None:
        plugin = self._plugins.get(name)
        if plugin is None:
            return None
        return PluginInfo(
            name=plugin.name,
            version=plugin.version,
            description=plugin.description,
            author=plugin.author,
            dependencies=list(plugin.dependencies),
            enabled=plugin.enabled,
            hooks=sorted(plugin.hooks),
            middlewares=sorted(plugin.middlewares),
        )

    def get_all_plugins(self) -> list[PluginInfo]:
        return [info for name in self._order if (info := self.get_plugin_info(name))]

    # Dispatch

    def _is_active(self, plugin_name: str) -> bool:
        plugin = self._plugins.get(plugin_name)
        return plugin is not None and plugin.enabled

    async def execute_hook(self, hook_name: str, *args: Any) -> list[Any]:
        """Run every handler registered for ``hook_name`` in order.

        Returns:
            The (possibly replaced) argument list after the last hook.
        """
        result = list(args)

        for plugin_name, handler in list(self._hooks.get(hook_name, [])):
            if not self._is_active(plugin_name):
                continue
            try:
                hook_result = await _resolve(handler(*result))
            except Exception:
                logger.exception(
                    "plugin.hook_failed",
                    extra={"hook": hook_name, "plugin": plugin_name},
                )
                continue

            if hook_result is not None:
                result = list(hook_result) if isinstance(hook_result, (list, tuple)) else [hook_result]

        return result

    async def execute_middlewares(
        self,
        event: str,
        context: Any,
        final: Callable[[], Any],
    ) -> Any:
        """Run the middleware chain for ``event`` around ``final``.

        A middleware that raises before calling ``call_next`` is logged and
        skipped. Once it has called ``call_next`` the error propagates, so the
        rest of the chain never runs twice.
        """
        chain = [
            (plugin_name, middleware)
            for plugin_name, middleware in self._middlewares.get(event, [])
            if self._is_active(plugin_name)
        ]

        async def call_at(index: int) -> Any:
            if index >= len(chain):
                return await _resolve(final())

            plugin_name, middleware = chain[index]
            called_next = False

            async def call_next() -> Any:
                nonlocal called_next
                called_next = True
                return await call_at(index + 1)

            try:
                return await _resolve(middleware(context, call_next))
            except Exception:
                if called_next:
                    raise
                logger.exception(
                    "plugin.middleware_failed",
                    extra={"event": event, "plugin": plugin_name},
                )
                return await call_at(index + 1)

        return await call_at(0)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_plugins": len(self._plugins),
            "loaded_plugins": list(self._plugins),
            "enabled_plugins": [name for name, plugin in self._plugins.items() if plugin.enabled],
            "total_hooks": sum(1 for hooks in self._hooks.values() if hooks),
            "total_middlewares": sum(1 for mws in self._middlewares.values() if mws),
            "load_order": list(self._order),
        }

    async def destroy(self) -> None:
        """Unload every plugin in reverse load order."""

        for name in reversed(list(self._order)):
            await self.unload_plugin(name)

        self._plugins.clear()
        self._order.clear()
        self._sources.clear()
        self._hooks.clear()
        self._middlewares.clear()
