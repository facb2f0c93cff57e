# pushcast/infra/metrics.py
"""
In-process dispatch metrics, served by ``/metrics``.

- ``pusher_dispatch_total{event,outcome}``  one per dispatch (``sent`` or a skip reason)
- ``pusher_chunks_total{event}``            chunk messages sent for oversized payloads
- ``pusher_trigger_seconds{event}``         transport call latency

Latency keeps running totals plus a bounded window of recent samples, so
a long-lived process does not grow memory per request.
"""
from __future__ import annotations

import time
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

LATENCY_WINDOW = 1024


def metric_key(name: str, labels: dict) -> str:
    """Render ``name{k=v,...}`` with labels sorted by key."""
    if not labels:
        return name
    label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


@dataclass
class LatencyWindow:
    count: int = 0
    total: float = 0.0
    recent: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        self.recent.append(seconds)

    def snapshot(self) -> dict:
        if not self.count:
            return {"count": 0, "sum": 0.0, "avg": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}
        ordered = sorted(self.recent)
        last = len(ordered) - 1
        return {
            "count": self.count,
            "sum": self.total,
            "avg": self.total / self.count,
            "p50": ordered[int(last * 0.5)],
            "p95": ordered[int(last * 0.95)],
            "max": ordered[-1],
        }


class MetricsCollector:
    """Thread-safe counters and latency windows keyed by rendered metric name."""

    def __init__(self):
        self._counters: Counter[str] = Counter()
        self._latency: dict[str, LatencyWindow] = {}
        self._lock = Lock()

    def inc(self, name: str, amount: int = 1, **labels) -> None:
        key = metric_key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe(self, name: str, seconds: float, **labels) -> None:
        key = metric_key(name, labels)
        with self._lock:
            self._latency.setdefault(key, LatencyWindow()).observe(seconds)

    def get_counter(self, name: str, **labels) -> int:
        with self._lock:
            return self._counters.get(metric_key(name, labels), 0)

    def get_metrics(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "latency": {k: w.snapshot() for k, w in self._latency.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._latency.clear()


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


class DispatchMetrics:
    """Dispatch pipeline metrics"""

    @staticmethod
    def outcome(event: str, outcome: str) -> None:
        _metrics.inc("pusher_dispatch_total", event=event, outcome=outcome)

    @staticmethod
    def chunks_sent(event: str, count: int) -> None:
        _metrics.inc("pusher_chunks_total", count, event=event)

    @staticmethod
    @contextmanager
    def track_trigger_time(event: str) -> Iterator[None]:
        """Record the duration of the enclosed transport call, failed calls included."""
        started = time.perf_counter()
        try:
            yield
        finally:
            _metrics.observe("pusher_trigger_seconds", time.perf_counter() - started, event=event)
