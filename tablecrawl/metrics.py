from __future__ import annotations

import time
from collections import deque
from typing import Deque, List

from .models import FetchResult, MetricsSnapshot


class MetricsCollector:
    """Collector for fetch outcomes.

    Records FetchResult events and produces aggregated MetricsSnapshot
    objects over configurable sliding time windows. All access happens on
    the event loop thread, so no lock is needed."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._events: Deque[tuple[float, FetchResult]] = deque(maxlen=maxlen)

    def record_result(self, result: FetchResult) -> None:
        """Record a fetch result with the current timestamp."""
        self._events.append((time.time(), result))

    def snapshot(self, window_secs: int) -> MetricsSnapshot:
        """Return aggregated metrics for events within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs
        events: List[FetchResult] = [e for ts, e in self._events if ts >= cutoff]
        total = len(events)
        avg_latency_ms = (sum(e.latency_ms for e in events) / total) if total else 0.0

        return MetricsSnapshot(
            window_secs=window_secs,
            total_requests=total,
            success_count=sum(1 for e in events if e.success),
            transport_error_count=sum(1 for e in events if e.error_type == "TransportError"),
            render_error_count=sum(1 for e in events if e.error_type == "RenderEngineError"),
            http_429_count=sum(1 for e in events if e.status_code == 429),
            http_403_count=sum(1 for e in events if e.status_code == 403),
            not_ready_count=sum(1 for e in events if e.success and e.ready is False),
            avg_latency_ms=avg_latency_ms,
            timestamp=now,
        )

