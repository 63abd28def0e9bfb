"""
Event Bus for storefront telemetry.

Admission path (synchronous, non-blocking):
    validate -> sanitize (consent) -> dedup -> correlate -> enqueue

Delivery path (one asyncio worker per event type):
    queue -> batch accumulator -> retry controller -> handler.persist

Admission failures surface to the publisher as exceptions. Everything after
admission is resolved inside the bus (commit, retry, dead-letter) and is only
visible through stats, metrics and the dead-letter queue.

Usage:
    bus = EventBus(default_handlers(store), config)
    await bus.start()
    bus.publish("heatmap_interaction", payload, consent={"necessary"})
    ...
    await bus.stop()
"""

from __future__ import annotations
import asyncio
import time
from collections import Counter, deque
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional
from threading import Lock

from telemetry_bus.core.consent import ConsentSanitizer, normalize_categories
from telemetry_bus.core.correlation import CorrelationRegistry
from telemetry_bus.core.errors import (
    BackpressureError,
    DuplicateError,
    EventBusError,
    FieldError,
    ValidationError,
)
from telemetry_bus.core.handler import EventHandler, HandlerRegistry
from telemetry_bus.core.idempotency import IdempotencyStore, derive_idempotency_key
from telemetry_bus.core.models import (
    DeadLetterEntry,
    Event,
    EventState,
    EventType,
    Priority,
    PublishResult,
    generate_event_id,
)
from telemetry_bus.core.queue import BatchAccumulator, EventQueue
from telemetry_bus.core.retry import DeadLetterQueue, RetryController
from telemetry_bus.core.validation import SchemaValidator
from telemetry_bus.infrastructure.config import AppConfig
from telemetry_bus.infrastructure.logging import LogContext, bind_context, get_logger
from telemetry_bus.infrastructure.metrics import MetricsCollector, metrics as default_metrics

logger = get_logger(__name__)

COMMIT_RATE_WINDOW_SECONDS = 60.0


class EventBus:
    """
    In-process telemetry bus with per-type priority queues.

    Stores (idempotency, correlation) and collaborators are injected; the
    defaults are built from the config.
    """

    def __init__(
        self,
        handlers: HandlerRegistry | Iterable[EventHandler],
        config: Optional[AppConfig] = None,
        *,
        validator: Optional[SchemaValidator] = None,
        sanitizer: Optional[ConsentSanitizer] = None,
        idempotency: Optional[IdempotencyStore] = None,
        correlation: Optional[CorrelationRegistry] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self.config = config or AppConfig()
        cfg = self.config

        self.handlers = handlers if isinstance(handlers, HandlerRegistry) else HandlerRegistry(handlers)
        self.validator = validator or SchemaValidator()
        self.sanitizer = sanitizer or ConsentSanitizer(
            analytics_category=cfg.consent.analytics_category,
            redacted_user_agent=cfg.consent.redacted_user_agent,
        )
        self.idempotency = idempotency or IdempotencyStore(
            ttl_seconds=cfg.idempotency.ttl_seconds,
            shards=cfg.idempotency.shards,
        )
        self.correlation = correlation or CorrelationRegistry(
            ttl_seconds=cfg.correlation.ttl_seconds,
            shards=cfg.correlation.shards,
        )
        self.metrics = metrics_collector or default_metrics

        self._queues: Dict[EventType, EventQueue] = {}
        self._accumulators: Dict[EventType, BatchAccumulator] = {}
        for event_type in self.handlers.event_types:
            queue = EventQueue(
                event_type,
                capacity=cfg.bus.max_queue_size,
                warning_pct=cfg.bus.backpressure_warning_pct,
                critical_pct=cfg.bus.backpressure_critical_pct,
            )
            self._queues[event_type] = queue
            self._accumulators[event_type] = BatchAccumulator(
                queue,
                batch_size=cfg.bus.batch_size,
                batch_timeout=cfg.bus.batch_timeout_seconds,
            )

        self.controller = RetryController(
            max_retries=cfg.retry.max_retries,
            base_delay_seconds=cfg.retry.base_delay_seconds,
            jitter=cfg.retry.jitter,
            persist_timeout_seconds=cfg.bus.persist_timeout_seconds,
            max_in_flight=cfg.bus.max_in_flight_batches,
            dead_letters=dead_letters or DeadLetterQueue(cfg.dead_letter.max_entries),
            on_commit=self._on_commit,
            on_dead_letter=self._on_dead_letter,
            on_retry=self._on_retry,
            metrics_collector=self.metrics,
        )

        self._default_priorities = {
            EventType.parse(t): Priority.parse(p)
            for t, p in cfg.bus.default_priorities.items()
            if t in {e.value for e in EventType}
        }

        self._counters: Counter = Counter()
        self._counter_lock = Lock()
        self._commit_times: Deque[float] = deque()

        self._workers: Dict[EventType, asyncio.Task] = {}
        self._sweepers: List[asyncio.Task] = []
        self._running = False
        self._stopping = False

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def publish(
        self,
        event_type: EventType | str,
        payload: Mapping[str, Any],
        consent: Optional[Iterable[str]] = None,
        idempotency_key: Optional[str] = None,
        priority: Optional[Priority | str] = None,
        source: Optional[str] = None,
    ) -> PublishResult:
        """
        Admit one event.

        Args:
            event_type: One of the EventType values
            payload: Raw payload (not modified)
            consent: Consent categories of the visitor
            idempotency_key: Caller key; derived from the payload when absent
            priority: Overrides the type's default priority
            source: Free-form origin label for debugging

        Returns:
            PublishResult(accepted=True, ...) once the event is queued

        Raises:
            ValidationError: bad type, priority or payload
            DuplicateError: the occurrence was already admitted
            BackpressureError: the type's queue is full or the bus is stopping
        """
        type_label = EventType.parse(event_type).value if event_type in self.handlers else "unknown"
        try:
            return self._admit(event_type, payload, consent, idempotency_key, priority, source)
        except EventBusError as e:
            self._count(f"rejected.{e.reason}")
            self.metrics.record_rejected(type_label, e.reason)
            raise

    def offer(
        self,
        event_type: EventType | str,
        payload: Mapping[str, Any],
        consent: Optional[Iterable[str]] = None,
        idempotency_key: Optional[str] = None,
        priority: Optional[Priority | str] = None,
        source: Optional[str] = None,
    ) -> PublishResult:
        """
        Like publish, but reports rejections in the result instead of raising.

        Duplicates come back accepted: the occurrence already happened.
        """
        try:
            return self.publish(event_type, payload, consent, idempotency_key, priority, source)
        except DuplicateError as e:
            return PublishResult(accepted=True, event_id=e.event_id, duplicate=True, reason=e.reason)
        except ValidationError as e:
            return PublishResult(
                accepted=False,
                reason=e.reason,
                errors=tuple(err.to_dict() for err in e.errors),
            )
        except EventBusError as e:
            return PublishResult(accepted=False, reason=e.reason)

    def _admit(
        self,
        event_type: EventType | str,
        payload: Mapping[str, Any],
        consent: Optional[Iterable[str]],
        idempotency_key: Optional[str],
        priority: Optional[Priority | str],
        source: Optional[str],
    ) -> PublishResult:
        # RECEIVED -> VALIDATED
        self.handlers.get(event_type)
        etype = EventType.parse(event_type)

        result = self.validator.validate(etype, payload)
        if not result.ok:
            raise ValidationError(result.errors, etype.value)

        if priority is None:
            prio = self._default_priorities.get(etype, Priority.NORMAL)
        else:
            try:
                prio = Priority.parse(priority)
            except ValueError:
                raise ValidationError(
                    [FieldError("priority", f"unknown priority '{priority}'")], etype.value
                ) from None

        # VALIDATED -> SANITIZED
        categories = normalize_categories(consent)
        sanitized = self.sanitizer.sanitize(payload, categories)

        # SANITIZED -> DEDUP_CHECKED
        key = idempotency_key or derive_idempotency_key(etype.value, sanitized)
        event_id = generate_event_id()
        reservation = self.idempotency.check_and_reserve(key, event_id)
        if reservation.is_duplicate:
            raise DuplicateError(key, reservation.record.event_id, reservation.record.result)

        # DEDUP_CHECKED -> QUEUED
        event = Event(
            id=event_id,
            type=etype,
            store_id=sanitized["store_id"],
            session_id=sanitized["session_id"],
            user_id=sanitized.get("user_id"),
            payload=sanitized,
            priority=prio,
            idempotency_key=key,
            correlation_id=self.correlation.resolve(sanitized["session_id"]),
            consent=categories,
            source=source or "unknown",
            state=EventState.DEDUP_CHECKED,
            reservation=reservation.token,
        )

        queue = self._queues[etype]
        try:
            queue.put_nowait(event)
        except BackpressureError:
            self.idempotency.release(reservation.token)
            raise

        self._count("published", etype)
        self.metrics.record_published(etype.value, prio.value)
        self.metrics.update_queue_depth(etype.value, len(queue))

        logger.debug(
            "Event admitted",
            event_id=event.id,
            event_type=etype.value,
            priority=prio.value,
            correlation_id=event.correlation_id,
        )
        return PublishResult(
            accepted=True,
            event_id=event.id,
            correlation_id=event.correlation_id,
        )

    # ------------------------------------------------------------------
    # Pipeline callbacks
    # ------------------------------------------------------------------

    def _on_commit(self, event: Event) -> None:
        if event.reservation is not None:
            self.idempotency.commit(
                event.reservation,
                {"event_id": event.id, "status": EventState.COMMITTED.value},
            )
            event.reservation = None
        self._count("committed", event.type)
        now = time.monotonic()
        with self._counter_lock:
            self._commit_times.append(now)
            self._trim_commit_times(now)
        self.metrics.record_committed(event.type.value)

    def _on_retry(self, event: Event, delay: float) -> None:
        self._count("retried", event.type)
        self.metrics.record_retried(event.type.value)

    def _on_dead_letter(self, entry: DeadLetterEntry) -> None:
        # The reservation stays pending until its TTL runs out, so client
        # resends of a dropped event are still rejected as duplicates.
        self._count("dead_lettered", entry.event.type)
        self.metrics.record_dead_lettered(entry.event.type.value)

    def _count(self, name: str, event_type: Optional[EventType] = None, n: int = 1) -> None:
        with self._counter_lock:
            self._counters[name] += n
            if event_type is not None:
                self._counters[f"{name}.{event_type.value}"] += n

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _run_worker(self, event_type: EventType) -> None:
        accumulator = self._accumulators[event_type]
        handler = self.handlers.get(event_type)
        queue = self._queues[event_type]
        # Dispatch tasks inherit this context, so handler logs carry the worker
        bind_context(worker=f"telemetry-worker-{event_type.value}")

        while True:
            batch = await accumulator.next_batch()
            if batch is None:
                break

            self.metrics.record_batch(event_type.value, len(batch))
            self.metrics.update_queue_depth(event_type.value, len(queue))
            with LogContext(batch_id=batch.batch_id):
                logger.debug("Batch flushed", event_type=event_type.value, size=len(batch))
                try:
                    await self.controller.dispatch(batch, handler)
                except asyncio.CancelledError:
                    # Cancelled while waiting for an in-flight slot
                    self.controller.dead_letter_batch(batch, "cancelled during shutdown")
                    raise
                except Exception as e:
                    logger.error("Dispatch failed", event_type=event_type.value, error=str(e))

        logger.info("Worker drained", event_type=event_type.value)

    async def start(self) -> None:
        """Start one worker per event type plus the TTL sweepers."""
        if self._running:
            return
        if any(q.closed for q in self._queues.values()):
            raise RuntimeError("EventBus cannot be restarted after stop()")

        loop = asyncio.get_running_loop()
        for event_type, queue in self._queues.items():
            queue.bind(loop)
            self._workers[event_type] = asyncio.create_task(
                self._run_worker(event_type), name=f"telemetry-worker-{event_type.value}"
            )

        self._sweepers = [
            asyncio.create_task(
                self.idempotency.run_sweeper(self.config.idempotency.sweep_interval_seconds)
            ),
            asyncio.create_task(
                self.correlation.run_sweeper(self.config.correlation.sweep_interval_seconds)
            ),
        ]
        self._running = True
        logger.info(
            "Event bus started",
            event_types=[t.value for t in self._queues],
            batch_size=self.config.bus.batch_size,
            batch_timeout_seconds=self.config.bus.batch_timeout_seconds,
        )

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """
        Drain and stop.

        New publishes are refused with BackpressureError. Queued events and
        partial batches are flushed immediately, pending retries fire now,
        and in-flight persists get the grace period before being cancelled.
        Whatever is still queued or waiting for a slot at the deadline is
        dead-lettered, so every published event ends committed or
        dead-lettered.
        """
        if not self._running or self._stopping:
            return

        self._stopping = True
        grace = self.config.bus.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        deadline = time.monotonic() + grace
        logger.info("Stopping event bus", grace_seconds=grace)

        for queue in self._queues.values():
            queue.close()

        workers = list(self._workers.values())
        if workers:
            done, pending = await asyncio.wait(workers, timeout=max(0.0, grace))
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # Workers cut off by the grace period leave events queued
        for event_type, accumulator in self._accumulators.items():
            leftover = accumulator.drain_all()
            for batch in leftover:
                self.controller.dead_letter_batch(batch, "not dispatched before shutdown")
            if leftover:
                logger.warning(
                    "Dead-lettered queued events at shutdown",
                    event_type=event_type.value,
                    count=sum(len(b) for b in leftover),
                )

        await self.controller.drain(max(0.0, deadline - time.monotonic()))

        for task in self._sweepers:
            task.cancel()
        await asyncio.gather(*self._sweepers, return_exceptions=True)

        self._workers.clear()
        self._sweepers = []
        self._running = False
        self._stopping = False

        stats = self.get_stats()
        logger.info(
            "Event bus stopped",
            published=stats["published"],
            committed=stats["committed"],
            dead_lettered=stats["dead_lettered"],
            left_in_queues=sum(q["depth"] for q in stats["queues"].values()),
        )

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    @property
    def dead_letters(self) -> DeadLetterQueue:
        return self.controller.dead_letters

    def replay_dead_letters(self, event_type: Optional[EventType | str] = None) -> int:
        """
        Operator action: move dead-lettered events back into their queues.

        Replayed events start over with retry_count=0. Entries that do not
        fit (backpressure) stay in the dead-letter queue.

        Returns:
            Number of events re-queued
        """
        etype = EventType.parse(event_type) if event_type is not None else None
        entries = self.dead_letters.pop_all(etype)

        replayed = 0
        for i, entry in enumerate(entries):
            event = entry.event
            event.retry_count = 0
            event.last_error = None
            event.batch_id = None
            try:
                self._queues[event.type].put_nowait(event)
            except BackpressureError:
                event.state = EventState.DEAD_LETTERED
                event.retry_count = entry.retry_count
                event.last_error = entry.error
                self.dead_letters.restore(entries[i:])
                break
            replayed += 1

        if replayed:
            logger.info("Replayed dead letters", count=replayed, event_type=etype.value if etype else "all")
        return replayed

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def commit_rate(self) -> float:
        """Commits per second over the last minute."""
        with self._counter_lock:
            self._trim_commit_times(time.monotonic())
            return len(self._commit_times) / COMMIT_RATE_WINDOW_SECONDS

    def _trim_commit_times(self, now: float) -> None:
        # Caller holds _counter_lock
        cutoff = now - COMMIT_RATE_WINDOW_SECONDS
        while self._commit_times and self._commit_times[0] < cutoff:
            self._commit_times.popleft()

    def queue_depth(self, event_type: EventType | str) -> int:
        return len(self._queues[EventType.parse(event_type)])

    def get_stats(self) -> Dict[str, Any]:
        """Read-only counters for dashboards and scrapers."""
        with self._counter_lock:
            counters = dict(self._counters)

        rejected = {
            name.split(".", 1)[1]: value
            for name, value in counters.items()
            if name.startswith("rejected.")
        }
        return {
            "running": self._running,
            "queues": {t.value: q.get_stats() for t, q in self._queues.items()},
            "published": counters.get("published", 0),
            "rejected": rejected,
            "committed": counters.get("committed", 0),
            "retried": counters.get("retried", 0),
            "dead_lettered": counters.get("dead_lettered", 0),
            "by_type": {
                t.value: {
                    "published": counters.get(f"published.{t.value}", 0),
                    "committed": counters.get(f"committed.{t.value}", 0),
                    "retried": counters.get(f"retried.{t.value}", 0),
                    "dead_lettered": counters.get(f"dead_lettered.{t.value}", 0),
                }
                for t in self._queues
            },
            "commit_rate_per_second": round(self.commit_rate(), 3),
            "in_flight_dispatches": self.controller.in_flight,
            "scheduled_retries": self.controller.scheduled_retries,
            "dead_letter": self.dead_letters.get_stats(),
            "idempotency": self.idempotency.stats(),
            "correlation": self.correlation.stats(),
        }
