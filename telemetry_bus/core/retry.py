"""
Retry controller and dead-letter queue.

Dispatches batches to handlers and resolves every outcome inside the
pipeline:
- per-item results: successes commit immediately, independent of siblings
- failures regroup into a retry batch, delayed base * 2**retry_count
- after max_retries failed retries an event is dead-lettered
- a handler exception or timeout fails every item of its batch

Retries wait on the event loop's monotonic timer (RetryScheduler), never in
a sleeping worker.
"""

from __future__ import annotations
import asyncio
import random
import time
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple
from threading import Lock

from telemetry_bus.core.errors import HandlerError, HandlerTimeoutError
from telemetry_bus.core.models import (
    Batch,
    DeadLetterEntry,
    Event,
    EventState,
    EventType,
    ItemResult,
)
from telemetry_bus.infrastructure.logging import get_logger
from telemetry_bus.infrastructure.metrics import MetricsCollector

logger = get_logger(__name__)


class DeadLetterQueue:
    """
    Bounded store of events that exhausted their retries.

    Oldest entries are evicted first once max_entries is reached; evictions
    are counted so nothing disappears unnoticed.
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._entries: Deque[DeadLetterEntry] = deque()
        self._lock = Lock()
        self.total_dead_lettered = 0
        self.total_evicted = 0

    def add(self, entry: DeadLetterEntry) -> None:
        with self._lock:
            if len(self._entries) >= self.max_entries:
                evicted = self._entries.popleft()
                self.total_evicted += 1
                logger.warning(
                    "Dead-letter queue full, evicting oldest entry",
                    event_id=evicted.event.id,
                    event_type=evicted.event.type.value,
                )
            self._entries.append(entry)
            self.total_dead_lettered += 1

    def entries(self, event_type: Optional[EventType] = None) -> List[DeadLetterEntry]:
        """Snapshot for inspection, oldest first."""
        with self._lock:
            return [
                e for e in self._entries
                if event_type is None or e.event.type == event_type
            ]

    def pop_all(self, event_type: Optional[EventType] = None) -> List[DeadLetterEntry]:
        """Remove and return entries (all, or those of one type)."""
        with self._lock:
            taken = [e for e in self._entries if event_type is None or e.event.type == event_type]
            self._entries = deque(
                e for e in self._entries
                if not (event_type is None or e.event.type == event_type)
            )
            return taken

    def restore(self, entries: Iterable[DeadLetterEntry]) -> None:
        """Put entries back without counting them as new dead letters."""
        with self._lock:
            self._entries.extend(entries)

    def counts_by_type(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(e.event.type.value for e in self._entries))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backlog": len(self),
            "by_type": self.counts_by_type(),
            "total_dead_lettered": self.total_dead_lettered,
            "total_evicted": self.total_evicted,
        }


class RetryScheduler:
    """Delayed callbacks on the running loop's monotonic clock."""

    def __init__(self):
        self._pending: Dict[str, Tuple[asyncio.TimerHandle, Callable[[], None]]] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(0.0, delay), self._fire, key)
        self._pending[key] = (handle, callback)

    def _fire(self, key: str) -> None:
        entry = self._pending.pop(key, None)
        if entry is not None:
            entry[1]()

    def fire_all_now(self) -> int:
        """Run every pending callback immediately (shutdown)."""
        pending = list(self._pending.items())
        self._pending.clear()
        for _, (handle, callback) in pending:
            handle.cancel()
            callback()
        return len(pending)

    def cancel_all(self) -> None:
        for handle, _ in self._pending.values():
            handle.cancel()
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)


CommitCallback = Callable[[Event], None]
DeadLetterCallback = Callable[[DeadLetterEntry], None]
RetryCallback = Callable[[Event, float], None]


class RetryController:
    """
    Runs handler.persist for batches and owns them until a terminal outcome.

    Usage:
        controller = RetryController(on_commit=bus_commit)
        await controller.dispatch(batch, handler)   # returns once launched
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        jitter: float = 0.1,
        persist_timeout_seconds: float = 10.0,
        max_in_flight: int = 4,
        dead_letters: Optional[DeadLetterQueue] = None,
        on_commit: Optional[CommitCallback] = None,
        on_dead_letter: Optional[DeadLetterCallback] = None,
        on_retry: Optional[RetryCallback] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        rng: Callable[[float, float], float] = random.uniform,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay_seconds
        self.jitter = jitter
        self.persist_timeout = persist_timeout_seconds
        self.max_in_flight = max_in_flight
        self.dead_letters = dead_letters or DeadLetterQueue()
        self.on_commit = on_commit
        self.on_dead_letter = on_dead_letter
        self.on_retry = on_retry
        self.metrics = metrics_collector
        self._rng = rng

        self._slots: Dict[EventType, asyncio.Semaphore] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._scheduler = RetryScheduler()
        self._draining = False

    def backoff_delay(self, retry_count: int) -> float:
        """base * 2**retry_count, spread by +/- jitter."""
        delay = self.base_delay * (2 ** retry_count)
        if self.jitter > 0:
            delay *= 1 + self._rng(-self.jitter, self.jitter)
        return max(0.0, delay)

    def _slot(self, event_type: EventType) -> asyncio.Semaphore:
        if event_type not in self._slots:
            self._slots[event_type] = asyncio.Semaphore(self.max_in_flight)
        return self._slots[event_type]

    async def dispatch(self, batch: Batch, handler: Any) -> None:
        """
        Hand a batch to its handler.

        Waits only for a free in-flight slot of the batch's type, then
        returns; the outcome is observed through commit/dead-letter callbacks.
        """
        slot = self._slot(batch.event_type)
        await slot.acquire()

        task = asyncio.create_task(self._run(batch, handler, slot))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, batch: Batch, handler: Any, slot: asyncio.Semaphore) -> None:
        try:
            await self._attempt(batch, handler)
        except asyncio.CancelledError:
            self.dead_letter_batch(batch, "cancelled during shutdown")
            raise
        finally:
            slot.release()

    async def _attempt(self, batch: Batch, handler: Any) -> None:
        handler_name = getattr(handler, "name", type(handler).__name__)
        for event in batch.events:
            event.state = EventState.DISPATCHING
            event.batch_id = batch.batch_id

        started = time.monotonic()
        try:
            results = await asyncio.wait_for(
                handler.persist(list(batch.events)),
                timeout=self.persist_timeout,
            )
            failures = self._match_results(batch, results)
        except asyncio.TimeoutError:
            error = HandlerTimeoutError(handler_name, self.persist_timeout)
            logger.error(
                "Handler timed out",
                handler=handler_name,
                event_type=batch.event_type.value,
                batch_id=batch.batch_id,
                size=len(batch),
            )
            failures = {e.id: str(error) for e in batch.events}
        except HandlerError as e:
            logger.error(
                "Handler error",
                handler=handler_name,
                event_type=batch.event_type.value,
                batch_id=batch.batch_id,
                error=str(e),
            )
            failures = {ev.id: str(e) for ev in batch.events}
        except Exception as e:
            logger.error(
                "Handler raised",
                handler=handler_name,
                event_type=batch.event_type.value,
                batch_id=batch.batch_id,
                error=f"{type(e).__name__}: {e}",
            )
            failures = {ev.id: f"{type(e).__name__}: {e}" for ev in batch.events}
        finally:
            if self.metrics:
                self.metrics.record_persist_latency(
                    batch.event_type.value, time.monotonic() - started
                )

        failed: List[Event] = []
        for event in batch.events:
            if event.id in failures:
                event.last_error = failures[event.id]
                failed.append(event)
            else:
                self._commit(event)

        if failed:
            self._handle_failures(batch, failed, handler)

    def _match_results(self, batch: Batch, results: Any) -> Dict[str, str]:
        """Map handler results onto the batch; missing results count as failures."""
        if results is None:
            return {e.id: "handler returned no results" for e in batch.events}

        by_id = {r.event_id: r for r in results}
        failures = {}
        for event in batch.events:
            result: Optional[ItemResult] = by_id.get(event.id)
            if result is None:
                failures[event.id] = "no result returned by handler"
            elif not result.ok:
                failures[event.id] = result.error or "persist failed"

        unknown = set(by_id) - {e.id for e in batch.events}
        if unknown:
            logger.warning(
                "Handler returned results for unknown events",
                event_type=batch.event_type.value,
                batch_id=batch.batch_id,
                count=len(unknown),
            )
        return failures

    def _handle_failures(self, batch: Batch, failed: List[Event], handler: Any) -> None:
        retryable: Dict[int, List[Event]] = {}
        for event in failed:
            if self._draining or event.retry_count >= self.max_retries:
                self._dead_letter(event, batch.batch_id)
            else:
                retryable.setdefault(event.retry_count, []).append(event)

        for retry_count, events in retryable.items():
            delay = self.backoff_delay(retry_count)
            for event in events:
                event.retry_count += 1
                event.state = EventState.RETRY_SCHEDULED
                self._notify(self.on_retry, event, delay)

            retry_batch = Batch(
                event_type=batch.event_type,
                events=events,
                attempt=retry_count + 1,
            )
            logger.info(
                "Retry scheduled",
                event_type=batch.event_type.value,
                batch_id=retry_batch.batch_id,
                failed_batch_id=batch.batch_id,
                size=len(events),
                attempt=retry_batch.attempt,
                delay_seconds=round(delay, 3),
            )
            self._scheduler.schedule(
                retry_batch.batch_id,
                delay,
                lambda b=retry_batch: self._launch_retry(b, handler),
            )

    def _launch_retry(self, batch: Batch, handler: Any) -> None:
        task = asyncio.create_task(self._dispatch_retry(batch, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_retry(self, batch: Batch, handler: Any) -> None:
        try:
            await self.dispatch(batch, handler)
        except asyncio.CancelledError:
            # Still waiting for a slot when shutdown cancelled us
            self.dead_letter_batch(batch, "cancelled during shutdown")
            raise

    def _commit(self, event: Event) -> None:
        event.state = EventState.COMMITTED
        self._notify(self.on_commit, event)

    def _dead_letter(self, event: Event, batch_id: Optional[str]) -> None:
        event.state = EventState.DEAD_LETTERED
        entry = DeadLetterEntry(
            event=event,
            error=event.last_error or "unknown error",
            retry_count=event.retry_count,
            batch_id=batch_id,
        )
        self.dead_letters.add(entry)
        logger.warning(
            "Event dead-lettered",
            event_id=event.id,
            event_type=event.type.value,
            retry_count=event.retry_count,
            error=entry.error,
        )
        self._notify(self.on_dead_letter, entry)

    def dead_letter_batch(self, batch: Batch, error: str) -> None:
        """Dead-letter every event of a batch that has not reached a terminal state."""
        for event in batch.events:
            if not event.state.is_terminal:
                event.last_error = event.last_error or error
                self._dead_letter(event, batch.batch_id)

    def _notify(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("Retry controller callback error", error=str(e))

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def scheduled_retries(self) -> int:
        return len(self._scheduler)

    async def drain(self, timeout: float) -> bool:
        """
        Fire pending retries now and wait for in-flight persists.

        Failures from here on are dead-lettered rather than rescheduled.
        Tasks still running at the deadline are cancelled.

        Returns:
            True if everything finished within the timeout
        """
        self._draining = True
        fired = self._scheduler.fire_all_now()
        if fired:
            logger.info("Fired pending retries for shutdown", count=fired)

        deadline = time.monotonic() + timeout
        while self._tasks:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

        leftover = list(self._tasks)
        for task in leftover:
            task.cancel()
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)
            logger.warning("Cancelled in-flight dispatches at shutdown", count=len(leftover))
        return not leftover
