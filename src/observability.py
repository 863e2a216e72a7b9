"""Observability: task metrics and worker pass summaries."""

import threading
import time
from contextlib import contextmanager
from typing import Any

import structlog

logger = structlog.get_logger().bind(source="observability")


class Metrics:
    """Counters and timers shared by worker threads and scheduler jobs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._timers: dict[str, list[float]] = {}

    def counter(self, name: str, value: int = 1):
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def observe(self, name: str, seconds: float):
        """Record one duration sample."""
        with self._lock:
            self._timers.setdefault(name, []).append(seconds)

    @contextmanager
    def timer(self, name: str):
        """Time the enclosed block and record it under name."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - start)

    def summary(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            timers = {name: list(samples) for name, samples in self._timers.items()}

        timer_summary = {}
        for name, durations in timers.items():
            if durations:
                timer_summary[name] = {
                    "count": len(durations),
                    "total": round(sum(durations), 4),
                    "avg": round(sum(durations) / len(durations), 4),
                    "max": round(max(durations), 4),
                }
            else:
                timer_summary[name] = {"count": 0}
        return {"counters": counters, "timers": timer_summary}

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._timers.clear()


# Module-level singleton
metrics = Metrics()


def log_run_summary(**extra):
    """Log the current metrics summary via structlog."""
    logger.info("worker.run_summary", **extra, **metrics.summary())
