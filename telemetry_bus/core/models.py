"""
Data model for admitted telemetry.

An Event is created at admission, mutated only by the retry controller
(retry_count, last_error) and leaves active memory when it is committed or
dead-lettered.
"""

from __future__ import annotations
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class EventType(str, Enum):
    """Telemetry event types, one pipeline each."""
    CUSTOMER_ACTIVITY = "customer_activity"
    HEATMAP_INTERACTION = "heatmap_interaction"
    AB_ASSIGNMENT = "ab_assignment"
    AB_CONVERSION = "ab_conversion"

    @classmethod
    def parse(cls, value: "EventType | str") -> "EventType":
        if isinstance(value, cls):
            return value
        return cls(str(value))


class Priority(str, Enum):
    """Queue priority tiers (dequeued high -> normal -> low)."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: "Priority | str") -> "Priority":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class EventState(str, Enum):
    """Lifecycle of an event inside the bus."""
    RECEIVED = "received"
    VALIDATED = "validated"
    SANITIZED = "sanitized"
    DEDUP_CHECKED = "dedup_checked"
    QUEUED = "queued"
    BATCHED = "batched"
    DISPATCHING = "dispatching"
    RETRY_SCHEDULED = "retry_scheduled"
    COMMITTED = "committed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in (EventState.COMMITTED, EventState.DEAD_LETTERED)


def generate_event_id() -> str:
    """evt_<epoch ms>_<16 hex>"""
    return f"evt_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def generate_correlation_id() -> str:
    """corr_<epoch ms>_<12 hex>"""
    return f"corr_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def generate_batch_id() -> str:
    return f"bat_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class Event:
    """One admitted telemetry item."""
    type: EventType
    store_id: str
    session_id: str
    payload: Dict[str, Any]
    priority: Priority
    idempotency_key: str
    correlation_id: str = ""
    user_id: Optional[str] = None
    id: str = field(default_factory=generate_event_id)
    received_at: float = field(default_factory=time.time)
    consent: FrozenSet[str] = frozenset()
    source: str = "unknown"
    retry_count: int = 0
    last_error: Optional[str] = None
    state: EventState = EventState.RECEIVED
    batch_id: Optional[str] = None
    # Idempotency reservation held until commit
    reservation: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view, used for dead-letter inspection."""
        return {
            "id": self.id,
            "type": self.type.value,
            "store_id": self.store_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "payload": dict(self.payload),
            "priority": self.priority.value,
            "idempotency_key": self.idempotency_key,
            "correlation_id": self.correlation_id,
            "received_at": self.received_at,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class ItemResult:
    """Per-event outcome reported by a handler."""
    event_id: str
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls, event_id: str) -> "ItemResult":
        return cls(event_id=event_id, ok=True)

    @classmethod
    def failure(cls, event_id: str, error: str) -> "ItemResult":
        return cls(event_id=event_id, ok=False, error=error)


@dataclass
class Batch:
    """Ordered events of one type handed to a handler together."""
    event_type: EventType
    events: List[Event]
    batch_id: str = field(default_factory=generate_batch_id)
    created_at: float = field(default_factory=time.monotonic)
    attempt: int = 0  # 0 = first dispatch, n = n-th retry

    def __len__(self) -> int:
        return len(self.events)

    @property
    def event_ids(self) -> List[str]:
        return [e.id for e in self.events]


@dataclass
class DeadLetterEntry:
    """An event that exhausted its retries, kept for operator inspection."""
    event: Event
    error: str
    retry_count: int
    batch_id: Optional[str] = None
    dead_lettered_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "error": self.error,
            "retry_count": self.retry_count,
            "batch_id": self.batch_id,
            "dead_lettered_at": self.dead_lettered_at,
        }


@dataclass(frozen=True)
class PublishResult:
    """Admission outcome returned to the publisher."""
    accepted: bool
    event_id: Optional[str] = None
    correlation_id: Optional[str] = None
    duplicate: bool = False
    reason: Optional[str] = None
    errors: tuple = ()
