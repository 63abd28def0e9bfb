"""
Integration tests for the full telemetry pipeline.

Covers publish -> queue -> batch -> persist -> commit/retry/dead-letter with
scaled-down timings, including shutdown draining and SQLite persistence.
"""

import asyncio
import time

import pytest

from conftest import RecordingHandler, wait_until
from telemetry_bus.core.bus import EventBus
from telemetry_bus.core.errors import BackpressureError, DuplicateError
from telemetry_bus.core.models import EventState, EventType
from telemetry_bus.handlers import TelemetryStore, default_handlers
from telemetry_bus.infrastructure.config import AppConfig, BusConfig, RetryConfig, StorageConfig


class TestDelivery:

    @pytest.mark.asyncio
    async def test_51_events_make_two_batches(self, fast_config, heatmap_payload):
        handler = RecordingHandler()
        bus = EventBus([handler], fast_config)
        await bus.start()

        for i in range(51):
            bus.publish("heatmap_interaction", heatmap_payload(i))

        assert await wait_until(lambda: len(handler.persisted) == 51)
        await bus.stop()

        assert handler.batch_sizes == [50, 1]
        stats = bus.get_stats()
        assert stats["committed"] == 51
        assert stats["by_type"]["heatmap_interaction"]["committed"] == 51
        assert stats["dead_lettered"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_persisted_once(self, fast_config, heatmap_payload):
        handler = RecordingHandler()
        bus = EventBus([handler], fast_config)
        await bus.start()

        first = bus.publish("heatmap_interaction", heatmap_payload())
        with pytest.raises(DuplicateError):
            bus.publish("heatmap_interaction", heatmap_payload())

        await wait_until(lambda: len(handler.persisted) == 1)
        # Still a duplicate after commit
        duplicate = bus.offer("heatmap_interaction", heatmap_payload())
        await bus.stop()

        assert [e.id for e in handler.persisted] == [first.event_id]
        assert duplicate.duplicate
        assert duplicate.event_id == first.event_id
        assert bus.get_stats()["idempotency"]["committed"] == 1

    @pytest.mark.asyncio
    async def test_high_priority_dequeued_first(self, fast_config, heatmap_payload):
        handler = RecordingHandler()
        bus = EventBus([handler], fast_config)

        low = bus.publish("heatmap_interaction", heatmap_payload(0))
        high = bus.publish("heatmap_interaction", heatmap_payload(1), priority="high")
        normal = bus.publish("heatmap_interaction", heatmap_payload(2), priority="normal")

        await bus.start()
        await wait_until(lambda: len(handler.persisted) == 3)
        await bus.stop()

        assert [e.id for e in handler.persisted] == [high.event_id, normal.event_id, low.event_id]

    @pytest.mark.asyncio
    async def test_types_are_isolated(self, fast_config, heatmap_payload, activity_payload):
        slow = RecordingHandler(event_types=[EventType.HEATMAP_INTERACTION], delay=0.5)
        fast = RecordingHandler(event_types=[EventType.CUSTOMER_ACTIVITY])
        bus = EventBus([slow, fast], fast_config)
        await bus.start()

        bus.publish("heatmap_interaction", heatmap_payload())
        started = time.monotonic()
        bus.publish("customer_activity", activity_payload())

        await wait_until(lambda: len(fast.persisted) == 1)
        fast_elapsed = time.monotonic() - started
        await bus.stop()

        assert fast_elapsed < 0.5
        assert len(slow.persisted) == 1

    @pytest.mark.asyncio
    async def test_publish_from_another_thread(self, fast_config, heatmap_payload):
        handler = RecordingHandler()
        bus = EventBus([handler], fast_config)
        await bus.start()

        result = await asyncio.to_thread(bus.publish, "heatmap_interaction", heatmap_payload())

        assert await wait_until(lambda: len(handler.persisted) == 1)
        await bus.stop()
        assert handler.persisted[0].id == result.event_id


class TestFailures:

    @pytest.mark.asyncio
    async def test_always_failing_handler_dead_letters(self, fast_config, heatmap_payload):
        handler = RecordingHandler(fail=lambda e: "connection refused")
        bus = EventBus([handler], fast_config)
        await bus.start()

        bus.publish("heatmap_interaction", heatmap_payload())
        assert await wait_until(lambda: len(bus.dead_letters) == 1)

        [entry] = bus.dead_letters.entries()
        assert entry.retry_count == 3
        assert entry.error == "connection refused"
        assert entry.event.state == EventState.DEAD_LETTERED
        assert len(handler.calls) == 4

        # The dropped occurrence is still recognised as a duplicate
        with pytest.raises(DuplicateError):
            bus.publish("heatmap_interaction", heatmap_payload())

        await bus.stop()
        stats = bus.get_stats()
        assert stats["retried"] == 3
        assert stats["dead_lettered"] == 1
        assert stats["committed"] == 0

    @pytest.mark.asyncio
    async def test_partial_batch_failure(self, fast_config, heatmap_payload):
        attempts = {}

        def fail_third_once(event):
            attempts[event.id] = attempts.get(event.id, 0) + 1
            if event.payload["x_coordinate"] == 102 and attempts[event.id] == 1:
                return "constraint violation"
            return None

        handler = RecordingHandler(fail=fail_third_once)
        bus = EventBus([handler], fast_config)
        await bus.start()

        for i in range(5):
            bus.publish("heatmap_interaction", heatmap_payload(i))

        assert await wait_until(lambda: len(handler.persisted) == 5)
        await bus.stop()

        assert handler.batch_sizes == [5, 1]
        stats = bus.get_stats()
        assert stats["committed"] == 5
        assert stats["retried"] == 1
        assert len(bus.dead_letters) == 0

    @pytest.mark.asyncio
    async def test_replay_dead_letters(self, fast_config, heatmap_payload):
        state = {"down": True}
        handler = RecordingHandler(fail=lambda e: "down" if state["down"] else None)
        bus = EventBus([handler], fast_config)
        await bus.start()

        bus.publish("heatmap_interaction", heatmap_payload())
        assert await wait_until(lambda: len(bus.dead_letters) == 1)

        state["down"] = False
        assert bus.replay_dead_letters("heatmap_interaction") == 1
        assert await wait_until(lambda: len(handler.persisted) == 1)
        await bus.stop()

        assert handler.persisted[0].retry_count == 0
        assert len(bus.dead_letters) == 0
        assert bus.get_stats()["idempotency"]["committed"] == 1

    @pytest.mark.asyncio
    async def test_worker_survives_handler_crash(self, fast_config, heatmap_payload):
        calls = {"n": 0}

        def crash_first_batch(event):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("driver crashed")
            return None

        handler = RecordingHandler(fail=crash_first_batch)
        bus = EventBus([handler], fast_config)
        await bus.start()

        bus.publish("heatmap_interaction", heatmap_payload(0))
        assert await wait_until(lambda: len(handler.persisted) == 1)
        bus.publish("heatmap_interaction", heatmap_payload(1))
        assert await wait_until(lambda: len(handler.persisted) == 2)
        await bus.stop()

        assert bus.get_stats()["retried"] == 1


class TestShutdown:

    @pytest.mark.asyncio
    async def test_stop_flushes_partial_batch(self, heatmap_payload):
        config = AppConfig(
            bus=BusConfig(batch_timeout_seconds=30.0, shutdown_grace_seconds=2.0),
        )
        handler = RecordingHandler()
        bus = EventBus([handler], config)
        await bus.start()

        for i in range(3):
            bus.publish("heatmap_interaction", heatmap_payload(i))
        await asyncio.sleep(0.05)

        started = time.monotonic()
        await bus.stop()

        assert time.monotonic() - started < 2.0
        assert len(handler.persisted) == 3
        assert not bus.is_running

    @pytest.mark.asyncio
    async def test_stop_fires_pending_retries(self, heatmap_payload):
        config = AppConfig(
            bus=BusConfig(batch_timeout_seconds=0.05, shutdown_grace_seconds=2.0),
            retry=RetryConfig(base_delay_seconds=30.0, jitter=0.0),
        )
        attempts = []

        def fail_first(event):
            attempts.append(event.id)
            return "flaky" if len(attempts) == 1 else None

        handler = RecordingHandler(fail=fail_first)
        bus = EventBus([handler], config)
        await bus.start()

        bus.publish("heatmap_interaction", heatmap_payload())
        assert await wait_until(lambda: bus.controller.scheduled_retries == 1)

        started = time.monotonic()
        await bus.stop()

        assert time.monotonic() - started < 2.0
        assert len(handler.persisted) == 1

    @pytest.mark.asyncio
    async def test_stop_with_hung_handler_accounts_for_every_event(self, heatmap_payload):
        config = AppConfig(
            bus=BusConfig(
                batch_size=2,
                batch_timeout_seconds=0.05,
                max_in_flight_batches=1,
                persist_timeout_seconds=30.0,
                shutdown_grace_seconds=0.3,
            ),
            retry=RetryConfig(base_delay_seconds=0.01, jitter=0.0),
        )
        handler = RecordingHandler(delay=10)
        bus = EventBus([handler], config)
        await bus.start()

        for i in range(10):
            bus.publish("heatmap_interaction", heatmap_payload(i))
        assert await wait_until(lambda: len(handler.calls) == 1)

        await bus.stop()

        stats = bus.get_stats()
        assert stats["published"] == 10
        assert stats["committed"] == 0
        assert stats["dead_lettered"] == 10
        assert stats["queues"]["heatmap_interaction"]["depth"] == 0
        assert len(bus.dead_letters) == 10
        assert {e.event.state for e in bus.dead_letters.entries()} == {EventState.DEAD_LETTERED}

    @pytest.mark.asyncio
    async def test_publish_after_stop_is_backpressure(self, fast_config, heatmap_payload):
        bus = EventBus([RecordingHandler()], fast_config)
        await bus.start()
        await bus.stop()

        with pytest.raises(BackpressureError):
            bus.publish("heatmap_interaction", heatmap_payload())

        with pytest.raises(RuntimeError):
            await bus.start()


class TestSqlitePipeline:

    @pytest.mark.asyncio
    async def test_end_to_end_storage(self, tmp_path, activity_payload, heatmap_payload):
        config = AppConfig(
            bus=BusConfig(batch_timeout_seconds=0.05),
            storage=StorageConfig(db_path=str(tmp_path / "telemetry.db")),
        )
        store = TelemetryStore(config.storage.db_path)
        await store.initialize()
        bus = EventBus(default_handlers(store), config)
        await bus.start()

        bus.publish("customer_activity", activity_payload(), consent=["necessary"])
        bus.publish(
            "customer_activity",
            activity_payload(activity_type="search", search_query="linen shirt"),
            consent=["analytics"],
        )
        for i in range(3):
            bus.publish("heatmap_interaction", heatmap_payload(i))
        bus.publish(
            "ab_assignment",
            {"store_id": "store-1", "session_id": "sess-abc", "test_id": "hero", "variant_id": "B"},
        )

        assert await wait_until(lambda: bus.get_stats()["committed"] == 6)
        await bus.stop()

        activities = {r["activity_type"]: r for r in await store.fetch_all("customer_activities")}
        assert activities["page_view"]["user_id"] is None
        assert activities["page_view"]["ip_address"] is None
        assert activities["page_view"]["user_agent"] == "redacted"
        assert activities["search"]["user_id"] == "u-42"
        assert activities["search"]["search_query"] == "linen shirt"
        assert await store.count("heatmap_interactions") == 3
        assert await store.count("ab_test_assignments") == 1

        correlation_ids = {r["correlation_id"] for r in activities.values()}
        assert len(correlation_ids) == 1
