"""
Error taxonomy.

Admission errors (ValidationError, DuplicateError, BackpressureError) are
raised synchronously to the publisher. HandlerError and HandlerTimeoutError
never leave the pipeline: they drive retries and dead-lettering.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence


@dataclass(frozen=True)
class FieldError:
    """One schema violation."""
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class EventBusError(Exception):
    """Base class for bus errors."""
    reason = "error"


class ValidationError(EventBusError):
    """Malformed or missing fields. Never retried."""
    reason = "validation_failed"

    def __init__(self, errors: Sequence[FieldError], event_type: str = ""):
        self.errors: List[FieldError] = list(errors)
        self.event_type = event_type
        summary = "; ".join(f"{e.field}: {e.message}" for e in self.errors[:5])
        super().__init__(f"Validation failed for {event_type or 'event'}: {summary}")


class UnknownEventTypeError(ValidationError):
    """Event type with no schema or no registered handler."""

    def __init__(self, event_type: str):
        super().__init__(
            [FieldError("type", f"unsupported event type '{event_type}'")],
            event_type=event_type,
        )


class DuplicateError(EventBusError):
    """
    Idempotency hit.

    Not a failure from the publisher's point of view: the occurrence was
    already accepted. `outcome` is the cached result of the first admission.
    """
    reason = "duplicate"

    def __init__(self, idempotency_key: str, event_id: Optional[str] = None, outcome: Any = None):
        self.idempotency_key = idempotency_key
        self.event_id = event_id
        self.outcome = outcome
        super().__init__(f"Duplicate event for idempotency key {idempotency_key}")


class BackpressureError(EventBusError):
    """Per-type queue at capacity; the caller should retry later."""
    reason = "backpressure"

    def __init__(self, event_type: str, depth: int, capacity: int):
        self.event_type = event_type
        self.depth = depth
        self.capacity = capacity
        super().__init__(
            f"Queue for {event_type} is full ({depth}/{capacity})"
        )


class HandlerError(EventBusError):
    """Persistence failure inside a handler."""
    reason = "handler_failed"


class HandlerTimeoutError(HandlerError):
    """Handler exceeded its persist budget."""
    reason = "handler_timeout"

    def __init__(self, handler_name: str, timeout_seconds: float):
        self.handler_name = handler_name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{handler_name} timed out after {timeout_seconds}s")
