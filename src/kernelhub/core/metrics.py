"""
kernelhub Metrics — in-process metrics collector.

No external dependencies. Read back through KernelManager.health_check().

Features:
- Counters (kernels created per source, pool hits/misses, refill failures)
- Gauges (live kernels, busy kernels)
- Histograms (rolling window of execution / startup durations)
- Label support (key=value pairs appended to metric name)

Usage:
    from kernelhub.core.metrics import metrics

    metrics.inc("kernel.created", labels={"mode": "in-process", "source": "pool"})
    metrics.observe("kernel.execution.duration_ms", 12.5)
    metrics.gauge_set("kernel.live", 3)

    snapshot = metrics.snapshot()
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class MetricsCollector:
    """Counters, gauges and rolling histograms keyed by name + labels."""

    # Rolling window size for histograms
    HISTOGRAM_MAX_SAMPLES = 1000

    _instance: "MetricsCollector | None" = None

    @classmethod
    def get(cls) -> "MetricsCollector":
        """Return the process-wide collector."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=self.HISTOGRAM_MAX_SAMPLES)
        )
        self._gauges: dict[str, float] = defaultdict(float)
        self._started_at: float = time.time()
        # Pool refill and worker callbacks may record from other threads
        self._lock = threading.Lock()

    # ── Counters ──────────────────────────────────────────────────

    def inc(self, name: str, value: int = 1, labels: dict | None = None) -> None:
        with self._lock:
            self._counters[self._key(name, labels)] += value

    def counter(self, name: str, labels: dict | None = None) -> int:
        """Current value of a counter (0 if never incremented)."""
        return self._counters.get(self._key(name, labels), 0)

    # ── Histograms ────────────────────────────────────────────────

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        """Record one observation; the oldest falls out once the window is full."""
        key = self._key(name, labels)
        with self._lock:
            self._histograms[key].append(value)

    # ── Gauges ────────────────────────────────────────────────────

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        with self._lock:
            self._gauges[self._key(name, labels)] = value

    def gauge_add(self, name: str, delta: float, labels: dict | None = None) -> float:
        """Adjust a gauge by delta and return the new value."""
        key = self._key(name, labels)
        with self._lock:
            self._gauges[key] += delta
            return self._gauges[key]

    def gauge(self, name: str, labels: dict | None = None) -> float:
        return self._gauges.get(self._key(name, labels), 0.0)

    # ── Snapshot ──────────────────────────────────────────────────

    def snapshot(self) -> dict:
        """Counters, gauges and histogram summaries (count/min/max/p50/p95)."""
        with self._lock:
            histograms: dict[str, dict] = {}
            for key, samples in self._histograms.items():
                if not samples:
                    continue
                ordered = sorted(samples)
                n = len(ordered)
                histograms[key] = {
                    "count": n,
                    "min": ordered[0],
                    "max": ordered[-1],
                    "p50": ordered[n // 2],
                    "p95": ordered[min(int(n * 0.95), n - 1)],
                }
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": histograms,
            }

    def reset(self) -> None:
        """Forget everything recorded so far."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._gauges.clear()
            self._started_at = time.time()

    # ── Internal ──────────────────────────────────────────────────

    def _key(self, name: str, labels: dict | None) -> str:
        """Build a key such as "kernel.created{mode=in-process,source=pool}"."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Process-wide collector, import this directly
metrics = MetricsCollector.get()
