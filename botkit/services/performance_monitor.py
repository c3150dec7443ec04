"""Rolling performance metrics with a naive health check and recovery loop.

Every ``health_check_interval_seconds`` the monitor samples process memory
and (when a probe is provided) gateway latency, then evaluates health.
On a critical verdict it runs garbage collection and the registered
recovery callbacks (for example a cache sweep). If the bot is still
critical afterwards it emits "restart_required"; deciding to restart is
left to the owner of the process.
"""

from __future__ import annotations

import gc
import inspect
import logging
import os
import platform
import sys
import time
import tracemalloc
from pathlib import Path
from typing import Any, Callable

from botkit.core.config import MonitoringSettings, settings
from botkit.schemas.health import (
    HealthReport,
    HealthStatus,
    LatencySample,
    MemorySample,
    MemoryTrend,
    MetricsSnapshot,
)
from botkit.utils.events import EventEmitter
from botkit.utils.scheduling import PeriodicTask

logger = logging.getLogger(__name__)

COUNTERS = ("commands_executed", "messages_processed", "errors")
TREND_WINDOW = 10
TREND_THRESHOLD_PERCENT = 10.0

MemoryProbe = Callable[[], int]
LatencyProbe = Callable[[], "float | None"]
ConnectionProbe = Callable[[], bool]
RecoveryCallback = Callable[[], Any]


def read_rss_bytes() -> int:
    """Return the current resident set size of this process in bytes.

    Uses /proc on Linux. Elsewhere falls back to the peak RSS reported by
    ``getrusage``, and to 0 where neither is available.
    """

    statm = Path("/proc/self/statm")
    if statm.is_file():
        resident_pages = int(statm.read_text().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")

    if sys.platform == "win32":
        return 0

    import resource

    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # macOS reports bytes, other Unixes kilobytes
    return peak if sys.platform == "darwin" else peak * 1024


class PerformanceMonitor(EventEmitter):
    """Collects samples, evaluates health and attempts recovery.

    Emits "metrics_collected" (MetricsSnapshot), "unhealthy"/"critical"
    (HealthStatus) and "restart_required" (HealthStatus).
    """

    def __init__(
        self,
        monitoring_settings: MonitoringSettings | None = None,
        *,
        memory_probe: MemoryProbe = read_rss_bytes,
        latency_probe: LatencyProbe | None = None,
        connection_probe: ConnectionProbe | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.settings = monitoring_settings or settings.monitoring
        self._memory_probe = memory_probe
        self._latency_probe = latency_probe
        self._connection_probe = connection_probe
        self._clock = clock

        self.start_time = clock()
        self.counters: dict[str, int] = {name: 0 for name in COUNTERS}
        self.memory_samples: list[MemorySample] = []
        self.latency_samples: list[LatencySample] = []
        self._recovery_callbacks: list[RecoveryCallback] = []

        self._monitor_task = PeriodicTask(
            "performance-monitor",
            self.settings.health_check_interval_seconds,
            self._tick,
        )
        self._cleanup_task = PeriodicTask(
            "performance-metrics-cleanup",
            self.settings.metrics_cleanup_interval_seconds,
            self.cleanup_old_metrics,
        )

    @property
    def memory_budget_bytes(self) -> int:
        return self.settings.memory_budget_mb * 1024 * 1024

    def start(self) -> bool:
        """Start the sampling and retention loops on the running event loop."""

        started = self._monitor_task.start()
        self._cleanup_task.start()
        if started:
            logger.info(
                "monitor.started",
                extra={"interval_s": self.settings.health_check_interval_seconds},
            )
        return started

    def destroy(self) -> None:
        self._monitor_task.stop()
        self._cleanup_task.stop()

    def add_recovery_callback(self, callback: RecoveryCallback) -> None:
        """Register a callable (sync or async) run during recovery attempts."""

        self._recovery_callbacks.append(callback)

    def increment_counter(self, metric: str, amount: int = 1) -> None:
        if metric not in self.counters:
            logger.debug("monitor.unknown_counter", extra={"metric": metric})
            return
        self.counters[metric] += amount

    def collect_metrics(self) -> MetricsSnapshot | None:
        """Take one memory sample and, if possible, one latency sample."""

        now = self._clock()
        try:
            traced = tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else 0
            self.memory_samples.append(
                MemorySample(timestamp=now, rss_bytes=self._memory_probe(), traced_bytes=traced)
            )

            if self._latency_probe is not None:
                latency = self._latency_probe()
                if latency is not None:
                    self.latency_samples.append(
                        LatencySample(timestamp=now, latency_ms=max(0.0, float(latency)))
                    )
        except Exception:
            logger.exception("monitor.collect_failed")
            return None

        snapshot = self.get_latest_metrics()
        self.emit("metrics_collected", snapshot)
        return snapshot

    def get_health_status(self) -> HealthStatus:
        issues: list[str] = []
        status = "healthy"

        if self.memory_samples:
            ratio = self.memory_samples[-1].rss_bytes / self.memory_budget_bytes
            if ratio > self.settings.critical_memory_threshold:
                issues.append("High memory usage")
                status = "critical"
            elif ratio > self.settings.unhealthy_memory_threshold:
                issues.append("Elevated memory usage")
                status = "unhealthy"

        if self.latency_samples:
            if self.latency_samples[-1].latency_ms > self.settings.critical_latency_ms:
                issues.append("High gateway latency")
                if status != "critical":
                    status = "unhealthy"

        if self._connection_probe is not None and not self._connection_probe():
            issues.append("Connection issues")
            status = "critical"

        return HealthStatus(status=status, issues=issues)

    async def check_health(self) -> HealthStatus:
        """Evaluate health, emit events and attempt recovery when critical."""

        health = self.get_health_status()

        if health.status == "unhealthy":
            logger.warning("monitor.unhealthy", extra={"issues": health.issues})
            self.emit("unhealthy", health)
        elif health.status == "critical":
            logger.error("monitor.critical", extra={"issues": health.issues})
            self.emit("critical", health)
            if self.settings.auto_recovery:
                health = await self.attempt_recovery()

        return health

    async def attempt_recovery(self) -> HealthStatus:
        """Free what can be freed, then re-check health.

        Returns:
            Health status measured after the recovery attempt.
        """
        logger.info("monitor.recovery_started", extra={"callbacks": len(self._recovery_callbacks)})

        collected = gc.collect()
        logger.info("monitor.gc_collected", extra={"objects": collected})

        for callback in list(self._recovery_callbacks):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "monitor.recovery_callback_failed",
                    extra={"callback": getattr(callback, "__qualname__", repr(callback))},
                )

        self.collect_metrics()
        health = self.get_health_status()
        if health.status == "critical":
            logger.warning("monitor.recovery_failed", extra={"issues": health.issues})
            self.emit("restart_required", health)
        else:
            logger.info("monitor.recovered", extra={"status": health.status})
        return health

    def get_average_latency(self) -> float:
        recent = self.latency_samples[-TREND_WINDOW:]
        if not recent:
            return 0.0
        return sum(sample.latency_ms for sample in recent) / len(recent)

    def get_memory_trend(self) -> MemoryTrend:
        recent = self.memory_samples[-TREND_WINDOW:]
        if len(recent) < 2 or recent[0].rss_bytes == 0:
            return "stable"

        first = recent[0].rss_bytes
        change = ((recent[-1].rss_bytes - first) / first) * 100
        if change > TREND_THRESHOLD_PERCENT:
            return "increasing"
        if change < -TREND_THRESHOLD_PERCENT:
            return "decreasing"
        return "stable"

    def cleanup_old_metrics(self) -> int:
        """Drop samples older than the retention window. Returns how many."""

        cutoff = self._clock() - self.settings.metrics_retention_seconds
        before = len(self.memory_samples) + len(self.latency_samples)
        self.memory_samples = [s for s in self.memory_samples if s.timestamp >= cutoff]
        self.latency_samples = [s for s in self.latency_samples if s.timestamp >= cutoff]
        return before - len(self.memory_samples) - len(self.latency_samples)

    def get_latest_metrics(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            uptime_seconds=self._clock() - self.start_time,
            commands_executed=self.counters["commands_executed"],
            messages_processed=self.counters["messages_processed"],
            errors=self.counters["errors"],
            latest_memory=self.memory_samples[-1] if self.memory_samples else None,
            latest_latency=self.latency_samples[-1] if self.latency_samples else None,
            average_latency_ms=self.get_average_latency(),
            memory_trend=self.get_memory_trend(),
        )

    def get_report(self) -> HealthReport:
        return HealthReport(
            **self.get_latest_metrics().model_dump(),
            health=self.get_health_status(),
            system_info={
                "platform": platform.system(),
                "arch": platform.machine(),
                "python_version": platform.python_version(),
                "cpu_count": os.cpu_count(),
                "pid": os.getpid(),
                "memory_budget_bytes": self.memory_budget_bytes,
            },
        )

    async def _tick(self) -> None:
        self.collect_metrics()
        await self.check_health()
