"""SQLite storage for persisted telemetry."""

import json
from pathlib import Path
from typing import Any, Awaitable, Callable, List

import aiosqlite

from telemetry_bus.core.models import Event, ItemResult
from telemetry_bus.infrastructure.logging import get_logger

logger = get_logger(__name__)


RowWriter = Callable[[aiosqlite.Connection, Event], Awaitable[None]]


SCHEMA = """
CREATE TABLE IF NOT EXISTS customer_activities (
    event_id TEXT PRIMARY KEY,
    correlation_id TEXT,
    store_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    user_id TEXT,
    activity_type TEXT NOT NULL,
    page_url TEXT,
    referrer TEXT,
    product_id TEXT,
    search_query TEXT,
    user_agent TEXT,
    ip_address TEXT,
    language TEXT,
    country TEXT,
    city TEXT,
    region TEXT,
    metadata TEXT,
    received_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_activities_store_session
    ON customer_activities (store_id, session_id);

CREATE TABLE IF NOT EXISTS heatmap_interactions (
    event_id TEXT PRIMARY KEY,
    correlation_id TEXT,
    store_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    user_id TEXT,
    page_url TEXT NOT NULL,
    interaction_type TEXT NOT NULL,
    x_coordinate INTEGER,
    y_coordinate INTEGER,
    viewport_width INTEGER,
    viewport_height INTEGER,
    scroll_position REAL,
    scroll_depth_percent REAL,
    time_on_element INTEGER,
    element_selector TEXT,
    element_tag TEXT,
    element_id TEXT,
    element_class TEXT,
    element_text TEXT,
    device_type TEXT,
    user_agent TEXT,
    metadata TEXT,
    received_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_heatmap_store_page
    ON heatmap_interactions (store_id, page_url);

CREATE TABLE IF NOT EXISTS ab_test_assignments (
    event_id TEXT PRIMARY KEY,
    test_id TEXT NOT NULL,
    variant_id TEXT NOT NULL,
    store_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    user_id TEXT,
    correlation_id TEXT,
    assigned_at REAL NOT NULL,
    converted INTEGER NOT NULL DEFAULT 0,
    converted_at REAL,
    conversion_value REAL,
    UNIQUE (test_id, session_id)
);

CREATE TABLE IF NOT EXISTS ab_test_conversions (
    event_id TEXT PRIMARY KEY,
    test_id TEXT NOT NULL,
    variant_id TEXT NOT NULL,
    store_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    user_id TEXT,
    correlation_id TEXT,
    goal TEXT,
    conversion_value REAL,
    converted_at REAL NOT NULL
);
"""

TABLES = (
    "customer_activities",
    "heatmap_interactions",
    "ab_test_assignments",
    "ab_test_conversions",
)


def encode_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


class TelemetryStore:
    """
    SQLite database behind the telemetry handlers.

    Rows are keyed by event id and inserted with ON CONFLICT DO NOTHING, so
    re-persisting an event that was already written (e.g. after a timeout)
    is a no-op. Every call opens its own connection, which keeps concurrent
    persists for the same table independent.

    Usage:
        store = TelemetryStore("data/telemetry.db")
        await store.initialize()
        results = await store.write_batch(events, writer)
    """

    def __init__(self, db_path: str | Path = "data/telemetry.db", busy_timeout_seconds: float = 5.0):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout_seconds

    def connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout)

    async def initialize(self) -> None:
        """Create the database file and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self.connect() as conn:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.executescript(SCHEMA)
            await conn.commit()
        logger.info("Telemetry store initialized", db_path=str(self.db_path))

    async def write_batch(self, events: List[Event], writer: RowWriter) -> List[ItemResult]:
        """
        Write events in one transaction, falling back to one transaction per
        event when the batch fails so that per-item outcomes can be reported.
        """
        if not events:
            return []

        try:
            async with self.connect() as conn:
                for event in events:
                    await writer(conn, event)
                await conn.commit()
            return [ItemResult.success(e.id) for e in events]
        except aiosqlite.Error as e:
            logger.warning(
                "Batch write failed, retrying row by row",
                size=len(events),
                error=str(e),
            )

        results = []
        async with self.connect() as conn:
            for event in events:
                try:
                    await writer(conn, event)
                    await conn.commit()
                    results.append(ItemResult.success(event.id))
                except aiosqlite.Error as e:
                    await conn.rollback()
                    results.append(ItemResult.failure(event.id, f"{type(e).__name__}: {e}"))
        return results

    async def count(self, table: str) -> int:
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        async with self.connect() as conn:
            async with conn.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def fetch_all(self, table: str) -> List[dict]:
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        async with self.connect() as conn:
            conn.row_factory = aiosqlite.Row
            async with conn.execute(f"SELECT * FROM {table}") as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]
