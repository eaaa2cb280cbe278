"""
DeviceLink Metrics — in-process counters and gauges.

Counts lifecycle events (challenges issued, opens, disconnects by kind,
reconnect attempts, credential writes) so `devicelink status` and the
shutdown log line can report what a run did.

Usage:
    from devicelink.core.metrics import metrics

    metrics.inc("connection.disconnects", labels={"kind": "logged_out"})
    metrics.gauge_set("connection.attempt", 2)
    snapshot = metrics.snapshot()
"""

from __future__ import annotations

import time
from collections import defaultdict


class MetricsCollector:
    """In-process metrics collector."""

    _instance: "MetricsCollector | None" = None

    @classmethod
    def get(cls) -> "MetricsCollector":
        """Return the process-wide singleton."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = defaultdict(float)
        self._started_at: float = time.time()

    def inc(self, name: str, value: int = 1, labels: dict | None = None) -> None:
        """Increment a counter."""
        self._counters[self._key(name, labels)] += value

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        """Set a gauge to an absolute value."""
        self._gauges[self._key(name, labels)] = value

    def counter(self, name: str, labels: dict | None = None) -> int:
        """Current value of a counter (0 if never incremented)."""
        return self._counters.get(self._key(name, labels), 0)

    def snapshot(self) -> dict:
        return {
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
        }

    def reset(self) -> None:
        """Drop all recorded values. Used by tests."""
        self._counters.clear()
        self._gauges.clear()
        self._started_at = time.time()

    def _key(self, name: str, labels: dict | None) -> str:
        """Build a metric key with optional label suffix.

        Example: "connection.disconnects{kind=logged_out}"
        """
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Process-wide singleton, import this directly
metrics = MetricsCollector.get()
