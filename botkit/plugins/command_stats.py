"""Tracks how often each command runs and how long it takes."""

from __future__ import annotations

import time
from collections import Counter
from typing import Any, Awaitable, Callable

from botkit.services.plugin_manager import BasePlugin


class CommandStatsPlugin(BasePlugin):
    name = "command_stats"
    version = "1.0.0"
    description = "Counts command usage and records execution time"
    author = "botkit"

    def __init__(self, manager: Any = None, bot: Any = None) -> None:
        super().__init__(manager, bot)
        self.started: Counter[str] = Counter()
        self.completed: Counter[str] = Counter()
        self.failed: Counter[str] = Counter()
        self.total_duration_ms: Counter[str] = Counter()
        self.hooks = {
            "before_command": self.before_command,
            "after_command": self.after_command,
            "command_error": self.command_error,
        }
        self.middlewares = {"command": self.time_command}

    async def destroy(self) -> None:
        self.log("command_stats.summary", usage=dict(self.completed))

    def before_command(self, invocation: Any) -> None:
        self.started[invocation.command_name] += 1

    def after_command(self, invocation: Any, result: Any) -> None:
        self.completed[invocation.command_name] += 1

    def command_error(self, invocation: Any, exc: Exception) -> None:
        self.failed[invocation.command_name] += 1

    async def time_command(self, invocation: Any, call_next: Callable[[], Awaitable[Any]]) -> Any:
        start = time.perf_counter()
        try:
            return await call_next()
        finally:
            self.total_duration_ms[invocation.command_name] += (time.perf_counter() - start) * 1000

    def average_duration_ms(self, command_name: str) -> float:
        runs = self.completed[command_name] + self.failed[command_name]
        if runs == 0:
            return 0.0
        return self.total_duration_ms[command_name] / runs

    def most_used(self, limit: int = 5) -> list[tuple[str, int]]:
        return self.completed.most_common(limit)
