"""
Core modules of the telemetry bus.

Contains:
- bus: EventBus facade (admission and per-type workers)
- validation, consent: payload schema checks and privacy sanitization
- idempotency, correlation: sharded TTL stores
- queue: priority queues and batch accumulation
- retry: retry controller and dead-letter queue
- variants: deterministic A/B variant assignment
"""

from telemetry_bus.core.bus import EventBus
from telemetry_bus.core.consent import ConsentSanitizer
from telemetry_bus.core.correlation import CorrelationRegistry
from telemetry_bus.core.errors import (
    BackpressureError,
    DuplicateError,
    EventBusError,
    FieldError,
    HandlerError,
    HandlerTimeoutError,
    UnknownEventTypeError,
    ValidationError,
)
from telemetry_bus.core.handler import EventHandler, HandlerRegistry
from telemetry_bus.core.idempotency import IdempotencyStore, derive_idempotency_key
from telemetry_bus.core.models import (
    Batch,
    DeadLetterEntry,
    Event,
    EventState,
    EventType,
    ItemResult,
    Priority,
    PublishResult,
)
from telemetry_bus.core.queue import BatchAccumulator, EventQueue
from telemetry_bus.core.retry import DeadLetterQueue, RetryController
from telemetry_bus.core.validation import SchemaValidator
from telemetry_bus.core.variants import assign_variant

__all__ = [
    # Bus
    "EventBus",
    "EventHandler",
    "HandlerRegistry",
    # Models
    "Batch",
    "DeadLetterEntry",
    "Event",
    "EventState",
    "EventType",
    "ItemResult",
    "Priority",
    "PublishResult",
    # Errors
    "BackpressureError",
    "DuplicateError",
    "EventBusError",
    "FieldError",
    "HandlerError",
    "HandlerTimeoutError",
    "UnknownEventTypeError",
    "ValidationError",
    # Pipeline stages
    "SchemaValidator",
    "ConsentSanitizer",
    "IdempotencyStore",
    "derive_idempotency_key",
    "CorrelationRegistry",
    "EventQueue",
    "BatchAccumulator",
    "RetryController",
    "DeadLetterQueue",
    "assign_variant",
]
