"""
Prometheus metrics for observability.

Exposes metrics on /metrics endpoint for Prometheus scraping.

Metrics Categories:
- Admission: published, rejected by reason
- Pipeline: queue depth, batch size, persist latency
- Outcomes: committed, retried, dead-lettered
"""

import time
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

from telemetry_bus.infrastructure.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Admission Metrics
# =============================================================================

EVENTS_PUBLISHED = Counter(
    "telemetry_events_published_total",
    "Events admitted into a queue",
    ["event_type", "priority"],
)

EVENTS_REJECTED = Counter(
    "telemetry_events_rejected_total",
    "Events rejected at admission",
    ["event_type", "reason"],
)

# =============================================================================
# Pipeline Metrics
# =============================================================================

QUEUE_DEPTH = Gauge(
    "telemetry_queue_depth",
    "Events waiting in the per-type queue",
    ["event_type"],
)

BATCH_SIZE = Histogram(
    "telemetry_batch_size",
    "Events per dispatched batch",
    ["event_type"],
    buckets=[1, 5, 10, 25, 50, 100],
)

PERSIST_LATENCY = Histogram(
    "telemetry_persist_latency_seconds",
    "Handler persist call latency",
    ["event_type"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# =============================================================================
# Outcome Metrics
# =============================================================================

EVENTS_COMMITTED = Counter(
    "telemetry_events_committed_total",
    "Events persisted by a handler",
    ["event_type"],
)

EVENTS_RETRIED = Counter(
    "telemetry_events_retried_total",
    "Events scheduled for another persist attempt",
    ["event_type"],
)

EVENTS_DEAD_LETTERED = Counter(
    "telemetry_events_dead_lettered_total",
    "Events that exhausted their retries",
    ["event_type"],
)

# =============================================================================
# System Metrics
# =============================================================================

BUS_INFO = Info(
    "telemetry_bus",
    "Event bus information",
)

UPTIME_SECONDS = Gauge(
    "telemetry_bus_uptime_seconds",
    "Bus uptime in seconds",
)


class MetricsCollector:
    """
    Collects and exposes Prometheus metrics.

    Usage:
        collector = MetricsCollector()
        collector.start_server(port=9090)

        collector.record_published("heatmap_interaction", "low")
        collector.record_rejected("heatmap_interaction", "duplicate")
    """

    def __init__(self):
        self._start_time = time.time()

    def start_server(self, port: int = 9090) -> None:
        """Start the Prometheus metrics HTTP server."""
        try:
            start_http_server(port)
            logger.info("Metrics server started", port=port)
        except OSError as e:
            logger.error("Failed to start metrics server", port=port, error=str(e))

    def record_published(self, event_type: str, priority: str) -> None:
        EVENTS_PUBLISHED.labels(event_type=event_type, priority=priority).inc()

    def record_rejected(self, event_type: str, reason: str) -> None:
        EVENTS_REJECTED.labels(event_type=event_type, reason=reason).inc()

    def update_queue_depth(self, event_type: str, depth: int) -> None:
        QUEUE_DEPTH.labels(event_type=event_type).set(depth)

    def record_batch(self, event_type: str, size: int) -> None:
        BATCH_SIZE.labels(event_type=event_type).observe(size)

    def record_persist_latency(self, event_type: str, latency_seconds: float) -> None:
        PERSIST_LATENCY.labels(event_type=event_type).observe(latency_seconds)

    def record_committed(self, event_type: str, count: int = 1) -> None:
        EVENTS_COMMITTED.labels(event_type=event_type).inc(count)

    def record_retried(self, event_type: str, count: int = 1) -> None:
        EVENTS_RETRIED.labels(event_type=event_type).inc(count)

    def record_dead_lettered(self, event_type: str, count: int = 1) -> None:
        EVENTS_DEAD_LETTERED.labels(event_type=event_type).inc(count)

    def set_bus_info(self, version: str, environment: str) -> None:
        """Set bus info labels."""
        BUS_INFO.info({
            "version": version,
            "environment": environment,
        })

    def update_uptime(self) -> None:
        UPTIME_SECONDS.set(time.time() - self._start_time)


# Pre-instantiated collector
metrics = MetricsCollector()
