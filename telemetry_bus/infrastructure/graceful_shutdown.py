"""
Shutdown coordination for the telemetry service.

On SIGINT/SIGTERM (or an explicit request) registered cleanups run once, in
priority order, each bounded by its own timeout and all of them by an
overall deadline. The bus drain is registered first so queued events and
pending retries reach storage before anything else is torn down.

Usage:
    shutdown = GracefulShutdown(shutdown_timeout_seconds=15)
    shutdown.register_cleanup("event_bus", bus.stop, priority=10)
    shutdown.install_signal_handlers()
    await shutdown.wait_for_shutdown()
"""

from __future__ import annotations
import asyncio
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from telemetry_bus.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ShutdownPhase(Enum):
    RUNNING = "running"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


class CleanupOutcome(Enum):
    PENDING = "pending"
    DONE = "done"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SKIPPED = "skipped"  # overall deadline already passed


@dataclass
class CleanupTask:
    """A registered cleanup step."""
    name: str
    handler: Callable[[], Awaitable[Any]]
    priority: int  # Lower runs first
    timeout_seconds: float
    outcome: CleanupOutcome = CleanupOutcome.PENDING
    error: Optional[str] = None
    elapsed_seconds: float = field(default=0.0, repr=False)


class GracefulShutdown:
    """
    Runs cleanups once when the process is asked to stop.

    A failing or hanging cleanup is logged and does not prevent the
    following ones from running.
    """

    def __init__(self, shutdown_timeout_seconds: float = 30.0):
        self.shutdown_timeout = shutdown_timeout_seconds

        self._phase = ShutdownPhase.RUNNING
        self._tasks: List[CleanupTask] = []
        self._done = asyncio.Event()
        self._started_at = 0.0
        self._reason = ""
        self._signals_installed = False

    @property
    def phase(self) -> ShutdownPhase:
        return self._phase

    @property
    def is_shutting_down(self) -> bool:
        return self._phase != ShutdownPhase.RUNNING

    def register_cleanup(
        self,
        name: str,
        handler: Callable[[], Awaitable[Any]],
        priority: int = 50,
        timeout_seconds: float = 10.0,
    ) -> None:
        """
        Register an async cleanup.

        Tasks with equal priority run in registration order.
        """
        self._tasks.append(CleanupTask(name, handler, priority, timeout_seconds))
        logger.debug("Cleanup registered", task=name, priority=priority)

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to initiate_shutdown on the running loop."""
        if self._signals_installed:
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Event loops without add_signal_handler (Windows)
                signal.signal(
                    sig,
                    lambda signum, frame, s=sig: loop.call_soon_threadsafe(self._on_signal, s),
                )

        self._signals_installed = True
        logger.info("Signal handlers installed")

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.warning("Received signal", signal=sig.name)
        asyncio.ensure_future(self.initiate_shutdown(f"signal_{sig.name}"))

    async def initiate_shutdown(self, reason: str = "requested") -> None:
        """Run every cleanup once. Later calls are ignored."""
        if self._phase != ShutdownPhase.RUNNING:
            logger.info("Shutdown already in progress", reason=reason)
            return

        self._phase = ShutdownPhase.CLEANUP
        self._started_at = time.monotonic()
        self._reason = reason
        logger.warning("Initiating graceful shutdown", reason=reason)

        try:
            await self._run_cleanup()
        finally:
            self._phase = ShutdownPhase.COMPLETE
            self._done.set()

        logger.info(
            "Shutdown complete",
            elapsed_seconds=round(time.monotonic() - self._started_at, 2),
            outcomes={t.name: t.outcome.value for t in self._tasks},
        )

    async def _run_cleanup(self) -> None:
        deadline = self._started_at + self.shutdown_timeout

        for task in sorted(self._tasks, key=lambda t: t.priority):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                task.outcome = CleanupOutcome.SKIPPED
                logger.error("Cleanup skipped, shutdown deadline passed", task=task.name)
                continue

            started = time.monotonic()
            try:
                await asyncio.wait_for(task.handler(), timeout=min(task.timeout_seconds, remaining))
                task.outcome = CleanupOutcome.DONE
            except asyncio.TimeoutError:
                task.outcome = CleanupOutcome.TIMED_OUT
                logger.error("Cleanup timed out", task=task.name, timeout_seconds=task.timeout_seconds)
            except Exception as e:
                task.outcome = CleanupOutcome.FAILED
                task.error = str(e)
                logger.error("Cleanup failed", task=task.name, error=str(e))
            task.elapsed_seconds = time.monotonic() - started

    async def wait_for_shutdown(self) -> None:
        await self._done.wait()

    def get_status(self) -> Dict[str, Any]:
        return {
            "phase": self._phase.value,
            "reason": self._reason,
            "tasks": {
                t.name: {"outcome": t.outcome.value, "error": t.error}
                for t in sorted(self._tasks, key=lambda t: t.priority)
            },
            "elapsed_seconds": (
                round(time.monotonic() - self._started_at, 2) if self._started_at else 0.0
            ),
        }
