"""Tests for the MetricsCollector class."""

import unittest

from tablecrawl.metrics import MetricsCollector
from tablecrawl.models import FetchMode, FetchResult


def _make_result(**overrides) -> FetchResult:
    """Helper to build a FetchResult with sensible defaults."""
    defaults = dict(
        url="https://example.com",
        success=True,
        mode=FetchMode.DIRECT,
        status_code=200,
        latency_ms=100,
    )
    defaults.update(overrides)
    return FetchResult(**defaults)


class TestMetricsCollector(unittest.TestCase):
    """Verify metrics recording and snapshot aggregation."""

    def test_empty_snapshot(self):
        """Snapshot with no events should have all zeros."""
        snap = MetricsCollector().snapshot(window_secs=30)
        self.assertEqual(snap.total_requests, 0)
        self.assertEqual(snap.success_count, 0)
        self.assertEqual(snap.avg_latency_ms, 0.0)

    def test_records_success(self):
        metrics = MetricsCollector()
        metrics.record_result(_make_result())
        metrics.record_result(_make_result())
        snap = metrics.snapshot(window_secs=30)
        self.assertEqual(snap.total_requests, 2)
        self.assertEqual(snap.success_count, 2)

    def test_records_errors_by_cause(self):
        metrics = MetricsCollector()
        metrics.record_result(_make_result(success=False, status_code=429, error_type="HTTPStatusError"))
        metrics.record_result(_make_result(success=False, status_code=403, error_type="HTTPStatusError"))
        metrics.record_result(_make_result(success=False, status_code=None, error_type="TransportError"))
        metrics.record_result(_make_result(
            success=False, status_code=None, mode=FetchMode.RENDERED, error_type="RenderEngineError"
        ))
        snap = metrics.snapshot(window_secs=30)
        self.assertEqual(snap.total_requests, 4)
        self.assertEqual(snap.http_429_count, 1)
        self.assertEqual(snap.http_403_count, 1)
        self.assertEqual(snap.transport_error_count, 1)
        self.assertEqual(snap.render_error_count, 1)

    def test_not_ready_successes_are_counted(self):
        metrics = MetricsCollector()
        metrics.record_result(_make_result(mode=FetchMode.RENDERED, ready=False))
        metrics.record_result(_make_result(mode=FetchMode.RENDERED, ready=True))
        self.assertEqual(metrics.snapshot(window_secs=30).not_ready_count, 1)

    def test_average_latency(self):
        metrics = MetricsCollector()
        metrics.record_result(_make_result(latency_ms=100))
        metrics.record_result(_make_result(latency_ms=300))
        self.assertAlmostEqual(metrics.snapshot(window_secs=30).avg_latency_ms, 200.0)

    def test_maxlen_bounds_history(self):
        metrics = MetricsCollector(maxlen=3)
        for _ in range(10):
            metrics.record_result(_make_result())
        self.assertEqual(metrics.snapshot(window_secs=30).total_requests, 3)


if __name__ == "__main__":
    unittest.main()
