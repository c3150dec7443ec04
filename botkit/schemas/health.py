"""Pydantic schemas for performance samples and health reports."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

HealthState = Literal["healthy", "unhealthy", "critical"]
MemoryTrend = Literal["increasing", "decreasing", "stable"]


class MemorySample(BaseModel):
    """Process memory at one point in time."""

    timestamp: float = Field(..., description="Epoch seconds of the sample.")
    rss_bytes: int = Field(..., ge=0, description="Resident set size in bytes.")
    traced_bytes: int = Field(
        0,
        ge=0,
        description="Bytes currently traced by tracemalloc (0 when tracing is off).",
    )


class LatencySample(BaseModel):
    """Gateway round-trip latency at one point in time."""

    timestamp: float = Field(..., description="Epoch seconds of the sample.")
    latency_ms: float = Field(..., ge=0, description="Round-trip latency in milliseconds.")


class HealthStatus(BaseModel):
    """Overall health verdict with the issues that caused it."""

    status: HealthState = "healthy"
    issues: list[str] = Field(default_factory=list)


class MetricsSnapshot(BaseModel):
    """Latest counters and samples, as returned by ``get_latest_metrics``."""

    uptime_seconds: float
    commands_executed: int
    messages_processed: int
    errors: int
    latest_memory: MemorySample | None = None
    latest_latency: LatencySample | None = None
    average_latency_ms: float = 0.0
    memory_trend: MemoryTrend = "stable"


class HealthReport(MetricsSnapshot):
    """Metrics snapshot plus health verdict and host information."""

    health: HealthStatus
    system_info: dict[str, Any] = Field(default_factory=dict)
