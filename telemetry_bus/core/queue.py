"""
Per-type priority queue and batch accumulator.

Ordering:
- high before normal before low
- strict FIFO by admission order within a priority tier

Features:
- Bounded capacity with a BackpressureError instead of blocking or dropping
- Backpressure detection (queue depth monitoring)
- Thread-safe enqueue; a single asyncio consumer per queue
- Size/time-bounded batching with no timer while the queue is idle
"""

from __future__ import annotations
import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from threading import Lock

from telemetry_bus.core.errors import BackpressureError
from telemetry_bus.core.models import Batch, Event, EventState, EventType, Priority
from telemetry_bus.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass(order=True)
class PrioritizedEvent:
    """Heap entry: (priority rank, admission sequence)."""
    rank: int
    sequence: int
    event: Event = field(compare=False)


class BackpressureState:
    """Tracks backpressure conditions for one queue."""

    def __init__(
        self,
        event_type: str,
        warning_threshold: int,
        critical_threshold: int,
    ):
        self.event_type = event_type
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.current_depth = 0
        self.total_enqueued = 0
        self.total_rejected = 0
        self.last_warning_time = 0.0

    @property
    def is_warning(self) -> bool:
        return self.current_depth >= self.warning_threshold

    @property
    def is_critical(self) -> bool:
        return self.current_depth >= self.critical_threshold

    def update_depth(self, depth: int):
        self.current_depth = depth
        now = time.time()

        if self.is_critical and now - self.last_warning_time > 5.0:
            logger.warning(
                "CRITICAL backpressure",
                event_type=self.event_type,
                depth=depth,
                rejected=self.total_rejected,
            )
            self.last_warning_time = now
        elif self.is_warning and now - self.last_warning_time > 10.0:
            logger.info(
                "Backpressure warning",
                event_type=self.event_type,
                depth=depth,
            )
            self.last_warning_time = now


class EventQueue:
    """
    Bounded priority queue for one event type.

    Producers call put_nowait from any thread; the type's worker is the only
    consumer. When bound to an event loop, off-loop producers wake the
    consumer through call_soon_threadsafe.
    """

    def __init__(
        self,
        event_type: EventType,
        capacity: int = 10000,
        warning_pct: float = 0.5,
        critical_pct: float = 0.9,
    ):
        self.event_type = event_type
        self.capacity = capacity
        self._heap: List[PrioritizedEvent] = []
        self._sequence = itertools.count()
        self._lock = Lock()
        self._ready = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

        self.backpressure = BackpressureState(
            event_type.value,
            warning_threshold=max(1, int(capacity * warning_pct)),
            critical_threshold=max(1, int(capacity * critical_pct)),
        )

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the loop the consumer runs on."""
        self._loop = loop

    @property
    def closed(self) -> bool:
        return self._closed

    def put_nowait(self, event: Event) -> None:
        """
        Enqueue without blocking.

        Raises:
            BackpressureError: queue at capacity or closed for shutdown
        """
        with self._lock:
            depth = len(self._heap)
            if self._closed or depth >= self.capacity:
                self.backpressure.total_rejected += 1
                raise BackpressureError(self.event_type.value, depth, self.capacity)

            event.state = EventState.QUEUED
            heapq.heappush(
                self._heap,
                PrioritizedEvent(event.priority.rank, next(self._sequence), event),
            )
            self.backpressure.total_enqueued += 1
            self.backpressure.update_depth(depth + 1)

        self._notify()

    def pop_many(self, max_items: int) -> List[Event]:
        """Dequeue up to max_items in priority order."""
        with self._lock:
            count = min(max_items, len(self._heap))
            events = [heapq.heappop(self._heap).event for _ in range(count)]
            self.backpressure.current_depth = len(self._heap)
        return events

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the queue holds items, it is closed, or the timeout elapses.

        Returns:
            True if items are available
        """
        with self._lock:
            if self._heap or self._closed:
                return bool(self._heap)
            self._ready.clear()

        try:
            if timeout is None:
                await self._ready.wait()
            else:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

        with self._lock:
            return bool(self._heap)

    def close(self) -> None:
        """Refuse new events and wake the consumer so it can drain."""
        with self._lock:
            self._closed = True
        self._notify()

    def _notify(self) -> None:
        loop = self._loop
        if loop is None:
            self._ready.set()
            return
        if loop.is_closed():
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._ready.set()
        else:
            loop.call_soon_threadsafe(self._ready.set)

    def depth_by_priority(self) -> Dict[str, int]:
        counts = {p.value: 0 for p in Priority}
        with self._lock:
            for entry in self._heap:
                counts[entry.event.priority.value] += 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)

    def get_stats(self) -> Dict[str, object]:
        return {
            "depth": len(self),
            "capacity": self.capacity,
            "by_priority": self.depth_by_priority(),
            "total_enqueued": self.backpressure.total_enqueued,
            "total_rejected": self.backpressure.total_rejected,
            "is_warning": self.backpressure.is_warning,
            "is_critical": self.backpressure.is_critical,
        }


class BatchAccumulator:
    """
    Drains one EventQueue into batches.

    A batch is flushed when it reaches batch_size or when batch_timeout has
    elapsed since its first item was pulled, whichever comes first. An idle
    queue is awaited without any timer.
    """

    def __init__(
        self,
        queue: EventQueue,
        batch_size: int = 50,
        batch_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self._clock = clock
        self.batches_flushed = 0

    async def next_batch(self) -> Optional[Batch]:
        """
        Wait for and return the next batch.

        Returns:
            Batch, or None once the queue is closed and empty
        """
        while not await self.queue.wait():
            if self.queue.closed:
                return None

        batch_start = self._clock()
        events = self.queue.pop_many(self.batch_size)

        while len(events) < self.batch_size:
            remaining = self.batch_timeout - (self._clock() - batch_start)
            if remaining <= 0:
                break
            if not await self.queue.wait(timeout=remaining):
                # Timed out, or closed for shutdown: flush what we have
                break
            events.extend(self.queue.pop_many(self.batch_size - len(events)))

        if not events:
            return None if self.queue.closed else await self.next_batch()

        batch = Batch(event_type=self.queue.event_type, events=events)
        for event in events:
            event.state = EventState.BATCHED
            event.batch_id = batch.batch_id
        self.batches_flushed += 1
        return batch

    def drain_all(self) -> List[Batch]:
        """Everything still queued, chunked by batch_size."""
        batches = []
        while True:
            events = self.queue.pop_many(self.batch_size)
            if not events:
                return batches
            batch = Batch(event_type=self.queue.event_type, events=events)
            for event in events:
                event.state = EventState.BATCHED
                event.batch_id = batch.batch_id
            batches.append(batch)
