"""Link health tracking."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum


class HealthStatus(Enum):
    """Health status enum."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class LinkHealth:
    """Rolling statistics over request/response exchanges with the peripheral."""

    successful: int = 0
    failed: int = 0
    last_success_at: float | None = None
    last_failure_at: float | None = None
    latency_window: int = 10
    _latencies: deque[float] = field(default_factory=deque, repr=False)

    @property
    def success_rate(self) -> float:
        total = self.successful + self.failed
        return self.successful / total if total else 0.0

    @property
    def average_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    def record_success(self, latency_ms: float) -> None:
        self.successful += 1
        self.last_success_at = time.time()
        self._latencies.append(latency_ms)
        while len(self._latencies) > self.latency_window:
            self._latencies.popleft()

    def record_failure(self) -> None:
        self.failed += 1
        self.last_failure_at = time.time()

    @property
    def status(self) -> HealthStatus:
        """Coarse status: UNKNOWN before any exchange, then by success rate."""
        if self.successful + self.failed == 0:
            return HealthStatus.UNKNOWN
        rate = self.success_rate
        if rate >= 0.9:
            return HealthStatus.HEALTHY
        if rate >= 0.5:
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": round(self.success_rate, 3),
            "average_latency_ms": round(self.average_latency_ms, 1),
        }
