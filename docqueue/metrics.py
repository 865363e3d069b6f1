"""In-process queue counters for status and health reporting."""

from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Tuple

from docqueue.utils.clock import Clock, utcnow

COUNTERS = ("enqueued", "processed", "succeeded", "failed", "retried", "deferred", "rate_limited", "poisoned")


class QueueMetrics:
    """Lifetime counters plus a rolling window of recent events."""

    def __init__(self, window: timedelta = timedelta(hours=1), clock: Clock = utcnow):
        self.window = window
        self.clock = clock
        self.totals: Dict[str, int] = {name: 0 for name in COUNTERS}
        self._events: Deque[Tuple[datetime, str]] = deque()
        self._latency_total = 0.0
        self._latency_count = 0

    def record(self, event: str) -> None:
        if event not in self.totals:
            raise ValueError(f"Unknown metric: {event}")
        self.totals[event] += 1
        self._events.append((self.clock(), event))
        self._trim()

    def record_latency(self, seconds: float) -> None:
        self._latency_total += seconds
        self._latency_count += 1

    @property
    def average_latency(self) -> float:
        if not self._latency_count:
            return 0.0
        return self._latency_total / self._latency_count

    def recent(self) -> Dict[str, int]:
        self._trim()
        counts = {name: 0 for name in COUNTERS}
        for _, event in self._events:
            counts[event] += 1
        return counts

    def _trim(self) -> None:
        cutoff = self.clock() - self.window
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()

    def snapshot(self) -> dict:
        return {
            "totals": dict(self.totals),
            "recent": self.recent(),
            "average_latency_seconds": round(self.average_latency, 3),
        }
