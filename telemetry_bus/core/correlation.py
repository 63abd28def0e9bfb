"""
Session correlation registry.

Maps session_id -> correlation_id with sliding expiration so every event of
one visitor session, across event types, carries the same correlation id.
"""

from __future__ import annotations
import asyncio
import time
import zlib
from dataclasses import dataclass
from typing import Callable, Dict, List
from threading import Lock

from telemetry_bus.core.models import generate_correlation_id
from telemetry_bus.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CorrelationEntry:
    correlation_id: str
    expires_at: float


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = Lock()
        self.entries: Dict[str, CorrelationEntry] = {}


class CorrelationRegistry:
    """
    Lazily creates one correlation id per session.

    Concurrent resolves of a never-seen session produce a single id: creation
    happens under the session's shard lock, so the first writer wins and later
    callers read its entry.
    """

    def __init__(
        self,
        ttl_seconds: float = 1800.0,
        shards: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._shards: List[_Shard] = [_Shard() for _ in range(max(1, shards))]

    def _shard_for(self, session_id: str) -> _Shard:
        return self._shards[zlib.crc32(session_id.encode()) % len(self._shards)]

    def resolve(self, session_id: str) -> str:
        """
        Return the session's correlation id, creating it on first use.

        Each call extends the session's expiry by the full TTL. A blank
        session id gets a fresh id that is not cached.
        """
        if not session_id:
            return generate_correlation_id()

        shard = self._shard_for(session_id)
        now = self._clock()

        with shard.lock:
            entry = shard.entries.get(session_id)
            if entry is None or entry.expires_at <= now:
                entry = CorrelationEntry(
                    correlation_id=generate_correlation_id(),
                    expires_at=now + self.ttl_seconds,
                )
                shard.entries[session_id] = entry
            else:
                entry.expires_at = now + self.ttl_seconds
            return entry.correlation_id

    def peek(self, session_id: str) -> str | None:
        """Current id without extending expiry."""
        shard = self._shard_for(session_id)
        with shard.lock:
            entry = shard.entries.get(session_id)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.correlation_id

    def sweep(self) -> int:
        """Drop sessions idle longer than the TTL."""
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [s for s, e in shard.entries.items() if e.expires_at <= now]
                for s in expired:
                    del shard.entries[s]
            removed += len(expired)
        if removed:
            logger.debug("Swept idle sessions", removed=removed)
        return removed

    async def run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def __len__(self) -> int:
        return sum(len(s.entries) for s in self._shards)

    def stats(self) -> Dict[str, int]:
        return {"sessions": len(self)}
