"""Heatmap sample persistence (clicks, hovers, scroll depth)."""

from typing import List

import aiosqlite

from telemetry_bus.core.models import Event, EventType, ItemResult
from telemetry_bus.core.handler import EventHandler
from telemetry_bus.handlers.storage import TelemetryStore, encode_json


INSERT_INTERACTION = """
    INSERT INTO heatmap_interactions (
        event_id, correlation_id, store_id, session_id, user_id,
        page_url, interaction_type, x_coordinate, y_coordinate,
        viewport_width, viewport_height, scroll_position, scroll_depth_percent,
        time_on_element, element_selector, element_tag, element_id,
        element_class, element_text, device_type, user_agent, metadata,
        received_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT DO NOTHING
"""


class HeatmapHandler(EventHandler):
    """
    Writes heatmap interaction samples.

    Samples arrive in large bursts (mouse moves, scrolls), so batches are
    written in a single transaction whenever possible.
    """

    name = "heatmap"
    event_types = (EventType.HEATMAP_INTERACTION,)

    def __init__(self, store: TelemetryStore):
        self.store = store

    async def persist(self, events: List[Event]) -> List[ItemResult]:
        return await self.store.write_batch(events, self._write)

    async def _write(self, conn: aiosqlite.Connection, event: Event) -> None:
        p = event.payload
        await conn.execute(INSERT_INTERACTION, (
            event.id,
            event.correlation_id,
            event.store_id,
            event.session_id,
            event.user_id,
            p["page_url"],
            p["interaction_type"],
            p.get("x_coordinate"),
            p.get("y_coordinate"),
            p.get("viewport_width"),
            p.get("viewport_height"),
            p.get("scroll_position"),
            p.get("scroll_depth_percent"),
            p.get("time_on_element"),
            p.get("element_selector"),
            p.get("element_tag"),
            p.get("element_id"),
            p.get("element_class"),
            p.get("element_text"),
            p.get("device_type"),
            p.get("user_agent"),
            encode_json(p.get("metadata")),
            event.received_at,
        ))
