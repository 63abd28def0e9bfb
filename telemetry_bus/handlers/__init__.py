"""
Persistence handlers, one per telemetry family.

Contains:
- storage: aiosqlite-backed TelemetryStore
- customer_activity, heatmap, ab_test: concrete handlers
"""

from telemetry_bus.core.handler import EventHandler, HandlerRegistry
from telemetry_bus.handlers.storage import TelemetryStore
from telemetry_bus.handlers.customer_activity import CustomerActivityHandler
from telemetry_bus.handlers.heatmap import HeatmapHandler
from telemetry_bus.handlers.ab_test import ABTestHandler


def default_handlers(store: TelemetryStore) -> HandlerRegistry:
    """Registry with the three storefront handlers sharing one store."""
    return HandlerRegistry([
        CustomerActivityHandler(store),
        HeatmapHandler(store),
        ABTestHandler(store),
    ])


__all__ = [
    "EventHandler",
    "HandlerRegistry",
    "TelemetryStore",
    "CustomerActivityHandler",
    "HeatmapHandler",
    "ABTestHandler",
    "default_handlers",
]
