"""Customer activity persistence (page views, cart actions, searches)."""

from typing import List

import aiosqlite

from telemetry_bus.core.models import Event, EventType, ItemResult
from telemetry_bus.core.handler import EventHandler
from telemetry_bus.handlers.storage import TelemetryStore, encode_json


INSERT_ACTIVITY = """
    INSERT INTO customer_activities (
        event_id, correlation_id, store_id, session_id, user_id,
        activity_type, page_url, referrer, product_id, search_query,
        user_agent, ip_address, language, country, city, region,
        metadata, received_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT DO NOTHING
"""


class CustomerActivityHandler(EventHandler):
    name = "customer_activity"
    event_types = (EventType.CUSTOMER_ACTIVITY,)

    def __init__(self, store: TelemetryStore):
        self.store = store

    async def persist(self, events: List[Event]) -> List[ItemResult]:
        return await self.store.write_batch(events, self._write)

    async def _write(self, conn: aiosqlite.Connection, event: Event) -> None:
        p = event.payload
        await conn.execute(INSERT_ACTIVITY, (
            event.id,
            event.correlation_id,
            event.store_id,
            event.session_id,
            event.user_id,
            p["activity_type"],
            p.get("page_url"),
            p.get("referrer"),
            p.get("product_id"),
            p.get("search_query"),
            p.get("user_agent"),
            p.get("ip_address"),
            p.get("language"),
            p.get("country"),
            p.get("city"),
            p.get("region"),
            encode_json(p.get("metadata")),
            event.received_at,
        ))
