"""Prometheus-compatible metrics for relay observability.

This module provides metrics collection for monitoring:
- Connection and roster occupancy (connections, participants, rooms)
- Envelope routing (received, forwarded, dropped on routing miss)
- Protocol hygiene (malformed / unknown / oversized envelopes)
- Backpressure (participants disconnected on send buffer overflow)
- Broadcast fan-out size distribution

Metrics are collected in-memory and exposed via the /metrics endpoint in
Prometheus exposition format.

Architecture:
    RelayEngine / Transport → MetricsCollector → /metrics endpoint
                                    ↓
                     In-memory storage (thread-safe)
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class HistogramBucket:
    """Histogram bucket for value distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Number of observations <= le


def _default_buckets() -> list[HistogramBucket]:
    return [
        HistogramBucket(le=1.0),
        HistogramBucket(le=2.0),
        HistogramBucket(le=4.0),
        HistogramBucket(le=8.0),
        HistogramBucket(le=16.0),
        HistogramBucket(le=32.0),
        HistogramBucket(le=64.0),
        HistogramBucket(le=float("inf")),
    ]


@dataclass
class Histogram:
    """Histogram metric for tracking distributions.

    Uses fixed bucket boundaries for a constant memory footprint. Bucket
    counts are cumulative.
    """

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    buckets: list[HistogramBucket] = field(default_factory=_default_buckets)

    sum: float = 0.0  # Sum of all observed values
    count: int = 0  # Total number of observations

    def observe(self, value: float) -> None:
        """Record an observation.

        Args:
            value: Observed value
        """
        self.sum += value
        self.count += 1

        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Calculate approximate quantile (e.g., 0.95 for p95).

        Uses linear interpolation inside the bucket holding the target rank.

        Args:
            q: Quantile to calculate (0.0 to 1.0)

        Returns:
            Approximate quantile value, or None if no data
        """
        if self.count == 0:
            return None

        target_rank = int(q * self.count)

        prev_count = 0
        for i, bucket in enumerate(self.buckets):
            if bucket.count >= target_rank:
                if i == 0:
                    return bucket.le / 2.0

                prev_bucket = self.buckets[i - 1]
                bucket_count = bucket.count - prev_count
                if bucket_count == 0 or bucket.le == float("inf"):
                    return prev_bucket.le if bucket.le == float("inf") else bucket.le

                rank_in_bucket = target_rank - prev_count
                bucket_width = bucket.le - prev_bucket.le
                return prev_bucket.le + (rank_in_bucket / bucket_count) * bucket_width

            prev_count = bucket.count

        return self.buckets[-1].le


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        """Increment counter.

        Args:
            amount: Amount to increment by (default: 1.0)
        """
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        """Set gauge value."""
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        """Increment gauge."""
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        """Decrement gauge."""
        self.value -= amount


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output.

    Thread-safety: All public methods are thread-safe via mutex.
    """

    def __init__(self) -> None:
        """Initialize metrics collector."""
        self._lock = threading.RLock()

        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        self._init_connection_metrics()
        self._init_routing_metrics()

        logger.info("MetricsCollector initialized")

    def _init_connection_metrics(self) -> None:
        """Initialize connection and occupancy metrics."""
        self._gauges["connections_active"] = Gauge(
            name="connections_active",
            help="Number of open participant connections",
        )
        self._gauges["participants_active"] = Gauge(
            name="participants_active",
            help="Number of participants currently in a room",
        )
        self._gauges["rooms_active"] = Gauge(
            name="rooms_active",
            help="Number of occupied rooms",
        )
        self._counters["send_overflows_total"] = Counter(
            name="send_overflows_total",
            help="Participants disconnected because their send buffer overflowed",
        )

    def _init_routing_metrics(self) -> None:
        """Initialize envelope routing metrics."""
        self._counters["envelopes_received_total"] = Counter(
            name="envelopes_received_total",
            help="Total number of decoded envelopes received from participants",
        )
        self._counters["envelopes_forwarded_total"] = Counter(
            name="envelopes_forwarded_total",
            help="Total number of signaling envelopes forwarded to a target",
        )
        self._counters["routing_misses_total"] = Counter(
            name="routing_misses_total",
            help="Signaling envelopes dropped because the target was not in the room",
        )
        self._counters["protocol_errors_total"] = Counter(
            name="protocol_errors_total",
            help="Malformed, unknown or oversized envelopes rejected",
        )
        self._counters["chat_messages_total"] = Counter(
            name="chat_messages_total",
            help="Total number of chat messages relayed",
        )
        self._histograms["broadcast_fanout"] = Histogram(
            name="broadcast_fanout",
            help="Number of recipients per room broadcast",
        )

    # === Connection metrics ===

    def record_connection_open(self) -> None:
        """Record a new participant connection."""
        with self._lock:
            self._gauges["connections_active"].inc()

    def record_connection_closed(self) -> None:
        """Record a participant connection ending."""
        with self._lock:
            self._gauges["connections_active"].dec()

    def record_send_overflow(self) -> None:
        """Record a participant dropped for send buffer overflow."""
        with self._lock:
            self._counters["send_overflows_total"].inc()

    def set_roster_occupancy(self, participants: int, rooms: int) -> None:
        """Update roster occupancy gauges.

        Args:
            participants: Participants currently rostered
            rooms: Rooms currently occupied
        """
        with self._lock:
            self._gauges["participants_active"].set(float(participants))
            self._gauges["rooms_active"].set(float(rooms))

    # === Routing metrics ===

    def record_envelope_received(self) -> None:
        """Record a successfully decoded envelope."""
        with self._lock:
            self._counters["envelopes_received_total"].inc()

    def record_envelope_forwarded(self) -> None:
        """Record a signaling envelope delivered to its target."""
        with self._lock:
            self._counters["envelopes_forwarded_total"].inc()

    def record_routing_miss(self) -> None:
        """Record a signaling envelope dropped for a missing target."""
        with self._lock:
            self._counters["routing_misses_total"].inc()

    def record_protocol_error(self) -> None:
        """Record a rejected envelope."""
        with self._lock:
            self._counters["protocol_errors_total"].inc()

    def record_chat(self) -> None:
        """Record a relayed chat message."""
        with self._lock:
            self._counters["chat_messages_total"].inc()

    def record_broadcast(self, recipients: int) -> None:
        """Record a room broadcast.

        Args:
            recipients: Number of participants the broadcast was sent to
        """
        with self._lock:
            self._histograms["broadcast_fanout"].observe(float(recipients))

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []

            for counter in self._counters.values():
                lines.append(f"# HELP {counter.name} {counter.help}")
                lines.append(f"# TYPE {counter.name} counter")
                labels_str = self._format_labels(counter.labels)
                lines.append(f"{counter.name}{labels_str} {counter.value}")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.help}")
                lines.append(f"# TYPE {gauge.name} gauge")
                labels_str = self._format_labels(gauge.labels)
                lines.append(f"{gauge.name}{labels_str} {gauge.value}")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.help}")
                lines.append(f"# TYPE {histogram.name} histogram")

                labels_str = self._format_labels(histogram.labels)

                for bucket in histogram.buckets:
                    le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                    bucket_labels = {**histogram.labels, "le": le}
                    bucket_labels_str = self._format_labels(bucket_labels)
                    lines.append(f"{histogram.name}_bucket{bucket_labels_str} {bucket.count}")

                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        """Format labels for Prometheus output.

        Returns:
            Formatted label string (e.g., '{label1="value1",label2="value2"}')
        """
        if not labels:
            return ""

        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def get_summary(self) -> dict[str, float | None]:
        """Get key metrics for dashboards and debugging."""
        with self._lock:
            fanout = self._histograms["broadcast_fanout"]
            return {
                "connections_active": self._gauges["connections_active"].value,
                "participants_active": self._gauges["participants_active"].value,
                "rooms_active": self._gauges["rooms_active"].value,
                "envelopes_received": self._counters["envelopes_received_total"].value,
                "envelopes_forwarded": self._counters["envelopes_forwarded_total"].value,
                "routing_misses": self._counters["routing_misses_total"].value,
                "protocol_errors": self._counters["protocol_errors_total"].value,
                "chat_messages": self._counters["chat_messages_total"].value,
                "send_overflows": self._counters["send_overflows_total"].value,
                "broadcast_fanout_p95": fanout.quantile(0.95),
            }


# Global metrics collector singleton
_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton.

    Returns:
        Global MetricsCollector instance

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector


def reset_metrics_collector() -> None:
    """Discard the global collector (used between tests)."""
    global _metrics_collector

    with _collector_lock:
        _metrics_collector = None
