"""A/B test exposure and conversion persistence."""

from typing import List

import aiosqlite

from telemetry_bus.core.models import Event, EventType, ItemResult
from telemetry_bus.core.handler import EventHandler
from telemetry_bus.handlers.storage import TelemetryStore


INSERT_ASSIGNMENT = """
    INSERT INTO ab_test_assignments (
        event_id, test_id, variant_id, store_id, session_id, user_id,
        correlation_id, assigned_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT DO NOTHING
"""

INSERT_CONVERSION = """
    INSERT INTO ab_test_conversions (
        event_id, test_id, variant_id, store_id, session_id, user_id,
        correlation_id, goal, conversion_value, converted_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT DO NOTHING
"""

MARK_CONVERTED = """
    UPDATE ab_test_assignments
    SET converted = 1,
        converted_at = COALESCE(converted_at, ?),
        conversion_value = COALESCE(?, conversion_value)
    WHERE test_id = ? AND session_id = ?
"""


class ABTestHandler(EventHandler):
    """
    Records variant exposures and conversions.

    An assignment row is unique per (test, session); repeated exposures of
    the same session are ignored. A conversion is stored on its own and also
    flags the session's assignment as converted when one exists.
    """

    name = "ab_test"
    event_types = (EventType.AB_ASSIGNMENT, EventType.AB_CONVERSION)

    def __init__(self, store: TelemetryStore):
        self.store = store

    async def persist(self, events: List[Event]) -> List[ItemResult]:
        return await self.store.write_batch(events, self._write)

    async def _write(self, conn: aiosqlite.Connection, event: Event) -> None:
        p = event.payload
        if event.type == EventType.AB_ASSIGNMENT:
            await conn.execute(INSERT_ASSIGNMENT, (
                event.id,
                p["test_id"],
                p["variant_id"],
                event.store_id,
                event.session_id,
                event.user_id,
                event.correlation_id,
                event.received_at,
            ))
            return

        await conn.execute(INSERT_CONVERSION, (
            event.id,
            p["test_id"],
            p["variant_id"],
            event.store_id,
            event.session_id,
            event.user_id,
            event.correlation_id,
            p.get("goal"),
            p.get("conversion_value"),
            event.received_at,
        ))
        await conn.execute(MARK_CONVERTED, (
            event.received_at,
            p.get("conversion_value"),
            p["test_id"],
            event.session_id,
        ))
