"""
Idempotency Store for the telemetry bus.

Detects repeated occurrences of the same logical event through:
- Caller-supplied or payload-derived idempotency keys
- Reserve-then-commit records with a TTL window
- Key-sharded locks (unrelated keys never contend on one lock)
- Passive eviction on access plus a periodic sweep

Usage:
    store = IdempotencyStore(ttl_seconds=600)
    reservation = store.check_and_reserve(key, event_id)
    if reservation.is_duplicate:
        return reservation.record.event_id
    ...
    store.commit(reservation.token, result)   # or store.release(reservation.token)
"""

from __future__ import annotations
import asyncio
import hashlib
import json
import secrets
import time
import zlib
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional
from threading import Lock

from telemetry_bus.infrastructure.logging import get_logger

logger = get_logger(__name__)


def derive_idempotency_key(event_type: str, payload: Mapping[str, Any]) -> str:
    """SHA-256 over the event type and the canonical JSON of the payload."""
    digest = hashlib.sha256()
    digest.update(str(event_type).encode())
    digest.update(
        json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode()
    )
    return digest.hexdigest()


class RecordStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"


@dataclass(frozen=True)
class ReservationToken:
    """Proof of ownership of a pending record."""
    key: str
    nonce: str


@dataclass
class IdempotencyRecord:
    """State of one idempotency key."""
    key: str
    token: ReservationToken
    status: RecordStatus
    created_at: float
    expires_at: float
    event_id: Optional[str] = None
    result: Any = None


@dataclass(frozen=True)
class Reservation:
    """
    Outcome of check_and_reserve.

    For a duplicate, `token` is None and `record` is a snapshot of the
    existing record (cached outcome).
    """
    is_duplicate: bool
    token: Optional[ReservationToken]
    record: IdempotencyRecord


class _Shard:
    __slots__ = ("lock", "records")

    def __init__(self):
        self.lock = Lock()
        self.records: Dict[str, IdempotencyRecord] = {}


class IdempotencyStore:
    """
    Keyed TTL store guaranteeing a single winner per idempotency key.

    Under concurrent check_and_reserve calls with the same key exactly one
    caller receives a reservation; every other caller gets is_duplicate=True
    immediately, without waiting for the winner to commit.
    """

    def __init__(
        self,
        ttl_seconds: float = 600.0,
        shards: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._shards: List[_Shard] = [_Shard() for _ in range(max(1, shards))]

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def check_and_reserve(self, key: str, event_id: Optional[str] = None) -> Reservation:
        """
        Reserve a key or report it as a duplicate.

        Args:
            key: Idempotency key
            event_id: Id of the event claiming the key

        Returns:
            Reservation (token set only for the winner)
        """
        shard = self._shard_for(key)
        now = self._clock()

        with shard.lock:
            existing = shard.records.get(key)
            if existing is not None and existing.expires_at > now:
                logger.debug("Duplicate idempotency key", key=key, status=existing.status.value)
                return Reservation(is_duplicate=True, token=None, record=replace(existing))

            token = ReservationToken(key=key, nonce=secrets.token_hex(8))
            record = IdempotencyRecord(
                key=key,
                token=token,
                status=RecordStatus.PENDING,
                created_at=now,
                expires_at=now + self.ttl_seconds,
                event_id=event_id,
            )
            shard.records[key] = record

        return Reservation(is_duplicate=False, token=token, record=replace(record))

    def commit(self, token: ReservationToken, result: Any = None) -> bool:
        """
        Mark a reserved key as committed and restart its TTL.

        Returns:
            False if the token no longer owns the key (released, expired or re-reserved)
        """
        shard = self._shard_for(token.key)
        now = self._clock()

        with shard.lock:
            record = shard.records.get(token.key)
            if record is None or record.token != token or record.expires_at <= now:
                logger.debug("Stale idempotency commit ignored", key=token.key)
                return False
            record.status = RecordStatus.COMMITTED
            record.result = result
            record.expires_at = now + self.ttl_seconds
        return True

    def release(self, token: ReservationToken) -> bool:
        """Free a reserved key so the bus may admit the occurrence again."""
        shard = self._shard_for(token.key)

        with shard.lock:
            record = shard.records.get(token.key)
            if record is None or record.token != token:
                return False
            del shard.records[token.key]
        return True

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        """Snapshot of a live record, or None."""
        shard = self._shard_for(key)
        now = self._clock()

        with shard.lock:
            record = shard.records.get(key)
            if record is None:
                return None
            if record.expires_at <= now:
                del shard.records[key]
                return None
            return replace(record)

    def sweep(self) -> int:
        """Remove expired records. Returns the number removed."""
        now = self._clock()
        removed = 0

        for shard in self._shards:
            with shard.lock:
                expired = [k for k, r in shard.records.items() if r.expires_at <= now]
                for k in expired:
                    del shard.records[k]
            removed += len(expired)

        if removed:
            logger.debug("Swept idempotency records", removed=removed)
        return removed

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodic active eviction. Runs until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def __len__(self) -> int:
        return sum(len(s.records) for s in self._shards)

    def stats(self) -> Dict[str, int]:
        """Get store statistics."""
        pending = committed = 0
        for shard in self._shards:
            with shard.lock:
                for record in shard.records.values():
                    if record.status == RecordStatus.PENDING:
                        pending += 1
                    else:
                        committed += 1
        return {
            "records": pending + committed,
            "pending": pending,
            "committed": committed,
        }
