"""Tests for Prometheus metric recording."""

from prometheus_client import REGISTRY

from conftest import RecordingHandler
from telemetry_bus.core.bus import EventBus
from telemetry_bus.infrastructure.metrics import MetricsCollector


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestMetricsCollector:

    def test_counters_by_label(self):
        collector = MetricsCollector()
        before = sample("telemetry_events_rejected_total", event_type="ab_conversion", reason="duplicate")

        collector.record_rejected("ab_conversion", "duplicate")
        collector.record_rejected("ab_conversion", "duplicate")

        after = sample("telemetry_events_rejected_total", event_type="ab_conversion", reason="duplicate")
        assert after - before == 2

    def test_queue_depth_gauge(self):
        collector = MetricsCollector()
        collector.update_queue_depth("customer_activity", 7)
        assert sample("telemetry_queue_depth", event_type="customer_activity") == 7

    def test_bus_info(self):
        collector = MetricsCollector()
        collector.set_bus_info("1.0.0", "test")
        assert sample("telemetry_bus_info", version="1.0.0", environment="test") == 1


def test_bus_publish_records_metrics(fast_config, heatmap_payload):
    bus = EventBus([RecordingHandler()], fast_config)
    before = sample("telemetry_events_published_total", event_type="heatmap_interaction", priority="low")

    bus.publish("heatmap_interaction", heatmap_payload(999))

    after = sample("telemetry_events_published_total", event_type="heatmap_interaction", priority="low")
    assert after - before == 1
