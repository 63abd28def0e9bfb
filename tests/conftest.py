"""Shared fixtures for telemetry bus tests."""

import asyncio
from typing import Callable, List, Optional

import pytest

from telemetry_bus.core.handler import EventHandler
from telemetry_bus.core.models import Event, EventType, ItemResult
from telemetry_bus.infrastructure.config import (
    AppConfig,
    BusConfig,
    RetryConfig,
)


class RecordingHandler(EventHandler):
    """
    In-memory handler that records every persist call.

    `fail` decides per event whether the write fails (returns an error
    message) or succeeds (returns None).
    """

    name = "recording"

    def __init__(
        self,
        event_types=tuple(EventType),
        fail: Optional[Callable[[Event], Optional[str]]] = None,
        delay: float = 0.0,
    ):
        self.event_types = tuple(event_types)
        self.fail = fail
        self.delay = delay
        self.calls: List[List[Event]] = []
        self.persisted: List[Event] = []

    async def persist(self, events: List[Event]) -> List[ItemResult]:
        self.calls.append(list(events))
        if self.delay:
            await asyncio.sleep(self.delay)

        results = []
        for event in events:
            error = self.fail(event) if self.fail else None
            if error:
                results.append(ItemResult.failure(event.id, error))
            else:
                self.persisted.append(event)
                results.append(ItemResult.success(event.id))
        return results

    @property
    def batch_sizes(self) -> List[int]:
        return [len(c) for c in self.calls]


@pytest.fixture
def fast_config():
    """Config with timings scaled down for tests."""
    return AppConfig(
        environment="test",
        bus=BusConfig(
            batch_size=50,
            batch_timeout_seconds=0.2,
            max_queue_size=1000,
            persist_timeout_seconds=1.0,
            shutdown_grace_seconds=2.0,
        ),
        retry=RetryConfig(max_retries=3, base_delay_seconds=0.01, jitter=0.0),
    )


@pytest.fixture
def heatmap_payload():
    """Factory for valid heatmap payloads."""

    def make(i: int = 0, **overrides):
        payload = {
            "store_id": "store-1",
            "session_id": "sess-abc",
            "page_url": "https://shop.example.com/products/1",
            "interaction_type": "click",
            "x_coordinate": 100 + i,
            "y_coordinate": 200,
        }
        payload.update(overrides)
        return payload

    return make


@pytest.fixture
def activity_payload():
    """Factory for valid customer activity payloads."""

    def make(**overrides):
        payload = {
            "store_id": "store-1",
            "session_id": "sess-abc",
            "activity_type": "page_view",
            "page_url": "/collections/summer",
            "user_id": "u-42",
            "ip_address": "203.0.113.7",
            "user_agent": "Mozilla/5.0",
        }
        payload.update(overrides)
        return payload

    return make


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll a condition on the running loop."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
