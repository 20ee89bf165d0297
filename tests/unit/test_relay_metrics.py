"""Unit tests for relay metrics collection and Prometheus export.

Tests cover:
- Metric primitives (counters, gauges, histograms)
- Prometheus format export
- Summary statistics
- Thread safety
"""

import threading

from src.relay.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsCollector,
    get_metrics_collector,
    reset_metrics_collector,
)


class TestHistogram:
    """Test histogram metric for fan-out distributions."""

    def test_histogram_observe(self) -> None:
        hist = Histogram(name="fanout", help="Recipients per broadcast")

        hist.observe(1)
        hist.observe(3)
        hist.observe(10)

        assert hist.count == 3
        assert hist.sum == 14

        # Buckets are cumulative
        assert next(b for b in hist.buckets if b.le == 1.0).count == 1
        assert next(b for b in hist.buckets if b.le == 4.0).count == 2
        assert next(b for b in hist.buckets if b.le == 16.0).count == 3
        assert hist.buckets[-1].count == 3

    def test_histogram_quantile_empty(self) -> None:
        hist = Histogram(name="fanout", help="Recipients per broadcast")
        assert hist.quantile(0.95) is None

    def test_histogram_quantile_within_range(self) -> None:
        hist = Histogram(name="fanout", help="Recipients per broadcast")
        for value in range(1, 9):
            hist.observe(value)

        p50 = hist.quantile(0.5)
        assert p50 is not None
        assert 2.0 <= p50 <= 4.0


class TestPrimitives:
    """Test counters and gauges."""

    def test_counter_increments(self) -> None:
        counter = Counter(name="c_total", help="c")
        counter.inc()
        counter.inc(2)
        assert counter.value == 3

    def test_gauge_moves_both_ways(self) -> None:
        gauge = Gauge(name="g", help="g")
        gauge.inc()
        gauge.inc()
        gauge.dec()
        assert gauge.value == 1
        gauge.set(7)
        assert gauge.value == 7


class TestMetricsCollector:
    """Test the relay collector."""

    def test_routing_counters(self) -> None:
        collector = MetricsCollector()

        collector.record_envelope_received()
        collector.record_envelope_received()
        collector.record_envelope_forwarded()
        collector.record_routing_miss()
        collector.record_protocol_error()
        collector.record_chat()
        collector.record_send_overflow()

        summary = collector.get_summary()
        assert summary["envelopes_received"] == 2
        assert summary["envelopes_forwarded"] == 1
        assert summary["routing_misses"] == 1
        assert summary["protocol_errors"] == 1
        assert summary["chat_messages"] == 1
        assert summary["send_overflows"] == 1

    def test_occupancy_gauges(self) -> None:
        collector = MetricsCollector()

        collector.record_connection_open()
        collector.record_connection_open()
        collector.record_connection_closed()
        collector.set_roster_occupancy(participants=5, rooms=2)

        summary = collector.get_summary()
        assert summary["connections_active"] == 1
        assert summary["participants_active"] == 5
        assert summary["rooms_active"] == 2

    def test_broadcast_fanout_summary(self) -> None:
        collector = MetricsCollector()
        assert collector.get_summary()["broadcast_fanout_p95"] is None

        for recipients in (2, 2, 3):
            collector.record_broadcast(recipients)

        assert collector.get_summary()["broadcast_fanout_p95"] is not None

    def test_export_prometheus_format(self) -> None:
        collector = MetricsCollector()
        collector.record_routing_miss()
        collector.record_broadcast(2)

        output = collector.export_prometheus()

        assert "# TYPE routing_misses_total counter" in output
        assert "routing_misses_total 1.0" in output
        assert "# TYPE rooms_active gauge" in output
        assert "# TYPE broadcast_fanout histogram" in output
        assert 'broadcast_fanout_bucket{le="+Inf"} 1' in output
        assert "broadcast_fanout_count 1" in output
        assert output.endswith("\n")

    def test_concurrent_updates(self) -> None:
        """Concurrent increments are not lost."""
        collector = MetricsCollector()

        def worker() -> None:
            for _ in range(1000):
                collector.record_envelope_received()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert collector.get_summary()["envelopes_received"] == 8000


def test_global_collector_singleton() -> None:
    first = get_metrics_collector()
    assert get_metrics_collector() is first

    reset_metrics_collector()

    assert get_metrics_collector() is not first
