"""Tests for plugin registration, hooks and middleware dispatch."""

import sys
import textwrap
from pathlib import Path
from unittest.mock import Mock

import pytest

from botkit.core.errors import PluginAppError
from botkit.services.plugin_manager import BasePlugin, PluginManager


class EchoPlugin(BasePlugin):
    name = "echo"
    version = "1.2.0"
    description = "Echoes things"

    def __init__(self, manager=None, bot=None) -> None:
        super().__init__(manager, bot)
        self.calls: list[tuple] = []
        self.hooks = {"before_command": self.before_command}

    def before_command(self, *args):
        self.calls.append(args)


class DependentPlugin(BasePlugin):
    name = "dependent"
    version = "1.0.0"
    description = "Needs echo"
    dependencies = ("echo",)


class BrokenInitPlugin(BasePlugin):
    name = "broken"
    version = "1.0.0"
    description = "Fails to start"

    async def init(self) -> None:
        raise RuntimeError("no database")


class NamelessPlugin(BasePlugin):
    name = ""


@pytest.fixture
def manager() -> PluginManager:
    return PluginManager()


@pytest.mark.asyncio
async def test_register_plugin_exposes_info_and_emits_event(manager: PluginManager) -> None:
    listener = Mock()
    manager.on("plugin_loaded", listener)

    plugin = await manager.register_plugin(EchoPlugin(manager))

    info = manager.get_plugin_info("echo")
    assert info.version == "1.2.0"
    assert info.hooks == ["before_command"]
    assert info.loaded is True
    assert manager.get_plugin("echo") is plugin
    listener.assert_called_once_with("echo", plugin)


@pytest.mark.asyncio
async def test_validation_errors(manager: PluginManager) -> None:
    with pytest.raises(PluginAppError) as missing_field:
        await manager.register_plugin(NamelessPlugin())
    assert missing_field.value.code == "plugin_invalid"

    with pytest.raises(PluginAppError) as missing_dep:
        await manager.register_plugin(DependentPlugin())
    assert missing_dep.value.code == "plugin_dependency_missing"

    await manager.register_plugin(EchoPlugin())
    with pytest.raises(PluginAppError) as duplicate:
        await manager.register_plugin(EchoPlugin())
    assert duplicate.value.code == "plugin_already_loaded"

    await manager.register_plugin(DependentPlugin())
    assert len(manager) == 2


@pytest.mark.asyncio
async def test_failed_init_is_not_registered(manager: PluginManager) -> None:
    with pytest.raises(PluginAppError) as exc_info:
        await manager.register_plugin(BrokenInitPlugin())

    assert exc_info.value.code == "plugin_init_failed"
    assert "broken" not in manager


@pytest.mark.asyncio
async def test_hooks_run_in_order_and_replace_arguments(manager: PluginManager) -> None:
    class Upper(BasePlugin):
        name = "upper"
        version = "1"
        description = "upper-cases"

        def __init__(self) -> None:
            super().__init__()
            self.hooks = {"transform": lambda text: text.upper()}

    class Exclaim(BasePlugin):
        name = "exclaim"
        version = "1"
        description = "adds emphasis"

        def __init__(self) -> None:
            super().__init__()

            async def add_bang(text):
                return text + "!"

            self.hooks = {"transform": add_bang}

    await manager.register_plugin(Upper())
    await manager.register_plugin(Exclaim())

    assert await manager.execute_hook("transform", "hi") == ["HI!"]
    assert await manager.execute_hook("unknown", "hi") == ["hi"]


@pytest.mark.asyncio
async def test_failing_hook_is_skipped(manager: PluginManager) -> None:
    class Faulty(BasePlugin):
        name = "faulty"
        version = "1"
        description = "raises"

        def __init__(self) -> None:
            super().__init__()
            self.hooks = {"before_command": Mock(side_effect=RuntimeError("boom"))}

    echo = EchoPlugin()
    await manager.register_plugin(Faulty())
    await manager.register_plugin(echo)

    assert await manager.execute_hook("before_command", "ctx") == ["ctx"]
    assert echo.calls == [("ctx",)]


@pytest.mark.asyncio
async def test_disabled_plugin_hooks_are_skipped(manager: PluginManager) -> None:
    echo = await manager.register_plugin(EchoPlugin())

    assert await manager.disable_plugin("echo") is True
    await manager.execute_hook("before_command", "ctx")
    assert echo.calls == []

    assert await manager.enable_plugin("echo") is True
    await manager.execute_hook("before_command", "ctx")
    assert echo.calls == [("ctx",)]

    assert await manager.disable_plugin("missing") is False


def _middleware_plugin(plugin_name: str, middleware) -> BasePlugin:
    plugin = BasePlugin()
    plugin.name = plugin_name
    plugin.middlewares = {"command": middleware}
    return plugin


@pytest.mark.asyncio
async def test_middleware_chain_wraps_final_handler(manager: PluginManager) -> None:
    trail: list[str] = []

    async def outer(context, call_next):
        trail.append("outer:before")
        result = await call_next()
        trail.append("outer:after")
        return f"<{result}>"

    def inner(context, call_next):
        trail.append(f"inner:{context}")
        return call_next()

    await manager.register_plugin(_middleware_plugin("outer", outer))
    await manager.register_plugin(_middleware_plugin("inner", inner))

    def final():
        trail.append("final")
        return "done"

    result = await manager.execute_middlewares("command", "ctx", final)

    assert result == "<done>"
    assert trail == ["outer:before", "inner:ctx", "final", "outer:after"]


@pytest.mark.asyncio
async def test_middleware_can_short_circuit(manager: PluginManager) -> None:
    final = Mock(return_value="executed")

    async def block(context, call_next):
        return "blocked"

    await manager.register_plugin(_middleware_plugin("gate", block))

    assert await manager.execute_middlewares("command", "ctx", final) == "blocked"
    final.assert_not_called()


@pytest.mark.asyncio
async def test_middleware_failing_before_next_is_skipped(manager: PluginManager) -> None:
    async def broken(context, call_next):
        raise RuntimeError("broken middleware")

    await manager.register_plugin(_middleware_plugin("broken", broken))

    assert await manager.execute_middlewares("command", "ctx", lambda: "ok") == "ok"


@pytest.mark.asyncio
async def test_error_after_next_propagates_without_rerunning(manager: PluginManager) -> None:
    final = Mock(return_value="ok")

    async def fails_late(context, call_next):
        await call_next()
        raise RuntimeError("post-processing failed")

    await manager.register_plugin(_middleware_plugin("late", fails_late))

    with pytest.raises(RuntimeError):
        await manager.execute_middlewares("command", "ctx", final)
    final.assert_called_once()


@pytest.mark.asyncio
async def test_unload_removes_hooks_and_emits(manager: PluginManager) -> None:
    listener = Mock()
    manager.on("plugin_unloaded", listener)
    echo = await manager.register_plugin(EchoPlugin())

    assert await manager.unload_plugin("echo") is True
    await manager.execute_hook("before_command", "ctx")

    assert echo.calls == []
    assert manager.get_plugin("echo") is None
    assert manager.get_stats()["total_hooks"] == 0
    listener.assert_called_once_with("echo")
    assert await manager.unload_plugin("echo") is False


@pytest.mark.asyncio
async def test_unload_keeps_plugin_when_destroy_fails(manager: PluginManager) -> None:
    class Sticky(EchoPlugin):
        name = "sticky"

        async def destroy(self) -> None:
            raise RuntimeError("cannot release")

    await manager.register_plugin(Sticky())

    assert await manager.unload_plugin("sticky") is False
    assert "sticky" in manager


@pytest.mark.asyncio
async def test_load_plugin_from_module(manager: PluginManager) -> None:
    plugins = await manager.load_plugin("botkit.plugins.command_stats")

    assert [plugin.name for plugin in plugins] == ["command_stats"]
    info = manager.get_plugin_info("command_stats")
    assert info.middlewares == ["command"]
    assert "after_command" in info.hooks


@pytest.mark.asyncio
async def test_load_plugin_without_plugin_class(manager: PluginManager) -> None:
    with pytest.raises(PluginAppError) as exc_info:
        await manager.load_plugin("botkit.plugins")

    assert exc_info.value.code == "plugin_class_missing"


@pytest.mark.asyncio
async def test_reload_plugin(manager: PluginManager) -> None:
    await manager.load_plugin("botkit.plugins.command_stats")
    before = manager.get_plugin("command_stats")

    reloaded = await manager.reload_plugin("command_stats")

    assert reloaded[0] is not before
    assert manager.get_plugin("command_stats") is reloaded[0]


@pytest.mark.asyncio
async def test_reload_requires_module_source(manager: PluginManager) -> None:
    await manager.register_plugin(EchoPlugin())

    with pytest.raises(PluginAppError) as exc_info:
        await manager.reload_plugin("echo")

    assert exc_info.value.code == "plugin_not_reloadable"


@pytest.mark.asyncio
async def test_reload_keeps_plugin_when_destroy_fails(
    manager: PluginManager, monkeypatch: pytest.MonkeyPatch
) -> None:
    await manager.load_plugin("botkit.plugins.command_stats")
    plugin = manager.get_plugin("command_stats")

    async def failing_destroy() -> None:
        raise RuntimeError("cannot release")

    monkeypatch.setattr(plugin, "destroy", failing_destroy)

    for _ in range(2):
        with pytest.raises(PluginAppError) as exc_info:
            await manager.reload_plugin("command_stats")
        assert exc_info.value.code == "plugin_unload_failed"
        assert manager.get_plugin("command_stats") is plugin

    monkeypatch.undo()
    reloaded = await manager.reload_plugin("command_stats")

    assert reloaded[0] is not plugin
    assert manager.get_stats()["load_order"] == ["command_stats"]


@pytest.fixture
def plugin_package(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    package_name = "sample_bot_plugins"
    package_dir = tmp_path / package_name
    package_dir.mkdir()
    (package_dir / "__init__.py").write_text("")
    (package_dir / "_private.py").write_text("raise RuntimeError('must be skipped')\n")
    (package_dir / "alpha.py").write_text(
        textwrap.dedent(
            """
            from botkit.services.plugin_manager import BasePlugin

            class Alpha(BasePlugin):
                name = "alpha"
                version = "1.0.0"
                description = "needs zulu"
                dependencies = ("zulu",)
            """
        )
    )
    (package_dir / "broken.py").write_text("import does_not_exist_anywhere\n")
    (package_dir / "zulu.py").write_text(
        textwrap.dedent(
            """
            from botkit.services.plugin_manager import BasePlugin

            class Zulu(BasePlugin):
                name = "zulu"
                version = "1.0.0"
                description = "base plugin"
            """
        )
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    yield package_name
    for module_name in [m for m in sys.modules if m.startswith(package_name)]:
        del sys.modules[module_name]


@pytest.mark.asyncio
async def test_load_all_plugins_resolves_dependency_order(
    manager: PluginManager, plugin_package: str
) -> None:
    listener = Mock()
    manager.on("all_plugins_loaded", listener)

    loaded = await manager.load_all_plugins(plugin_package)

    assert loaded == 2
    assert manager.get_stats()["load_order"] == ["zulu", "alpha"]
    listener.assert_called_once_with(2)


@pytest.mark.asyncio
async def test_load_all_plugins_missing_package(manager: PluginManager) -> None:
    assert await manager.load_all_plugins("no_such_plugin_package") == 0


@pytest.mark.asyncio
async def test_destroy_unloads_in_reverse_order(manager: PluginManager) -> None:
    order: list[str] = []

    class Tracked(BasePlugin):
        version = "1"
        description = "tracked"

        async def destroy(self) -> None:
            order.append(self.name)

    first = Tracked()
    first.name = "first"
    second = Tracked()
    second.name = "second"
    await manager.register_plugin(first)
    await manager.register_plugin(second)

    await manager.destroy()

    assert order == ["second", "first"]
    assert len(manager) == 0


@pytest.mark.asyncio
async def test_module_plugins_load_together_after_dependency_retry(
    manager: PluginManager, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    package_name = "bundled_bot_plugins"
    package_dir = tmp_path / package_name
    package_dir.mkdir()
    (package_dir / "__init__.py").write_text("")
    (package_dir / "bundle.py").write_text(
        textwrap.dedent(
            """
            from botkit.services.plugin_manager import BasePlugin

            class First(BasePlugin):
                name = "first"
                version = "1.0.0"
                description = "standalone"

            class Second(BasePlugin):
                name = "second"
                version = "1.0.0"
                description = "needs zulu"
                dependencies = ("zulu",)
            """
        )
    )
    (package_dir / "zulu.py").write_text(
        textwrap.dedent(
            """
            from botkit.services.plugin_manager import BasePlugin

            class Zulu(BasePlugin):
                name = "zulu"
                version = "1.0.0"
                description = "base plugin"
            """
        )
    )
    monkeypatch.syspath_prepend(str(tmp_path))

    try:
        loaded = await manager.load_all_plugins(package_name)
    finally:
        for module_name in [m for m in sys.modules if m.startswith(package_name)]:
            del sys.modules[module_name]

    assert loaded == 3
    assert manager.get_stats()["load_order"] == ["zulu", "first", "second"]
