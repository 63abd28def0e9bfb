"""Tests for the graceful shutdown manager."""

import asyncio
import time

import pytest

from telemetry_bus.infrastructure.graceful_shutdown import (
    CleanupOutcome,
    GracefulShutdown,
    ShutdownPhase,
)


class TestGracefulShutdown:

    @pytest.mark.asyncio
    async def test_cleanup_runs_in_priority_order(self):
        shutdown = GracefulShutdown()
        order = []

        async def record(name):
            order.append(name)

        shutdown.register_cleanup("storage", lambda: record("storage"), priority=50)
        shutdown.register_cleanup("event_bus", lambda: record("event_bus"), priority=10)

        await shutdown.initiate_shutdown("test")

        assert order == ["event_bus", "storage"]
        assert shutdown.phase == ShutdownPhase.COMPLETE
        assert shutdown.get_status()["reason"] == "test"

    @pytest.mark.asyncio
    async def test_failing_and_slow_tasks_do_not_block_others(self):
        shutdown = GracefulShutdown()
        ran = []

        async def hang():
            await asyncio.sleep(10)

        async def boom():
            raise RuntimeError("close failed")

        async def last():
            ran.append("last")

        shutdown.register_cleanup("hang", hang, priority=1, timeout_seconds=0.05)
        shutdown.register_cleanup("boom", boom, priority=2)
        shutdown.register_cleanup("last", last, priority=3)

        await shutdown.initiate_shutdown()

        assert ran == ["last"]
        tasks = shutdown.get_status()["tasks"]
        assert tasks["hang"]["outcome"] == CleanupOutcome.TIMED_OUT.value
        assert tasks["boom"] == {"outcome": "failed", "error": "close failed"}
        assert tasks["last"]["outcome"] == "done"

    @pytest.mark.asyncio
    async def test_wait_for_shutdown_and_second_call_ignored(self):
        shutdown = GracefulShutdown()
        calls = []

        async def cleanup():
            calls.append(1)

        shutdown.register_cleanup("once", cleanup)
        waiter = asyncio.create_task(shutdown.wait_for_shutdown())

        await shutdown.initiate_shutdown("first")
        await shutdown.initiate_shutdown("second")
        await asyncio.wait_for(waiter, timeout=1.0)

        assert calls == [1]
        assert shutdown.is_shutting_down

    @pytest.mark.asyncio
    async def test_overall_deadline_skips_remaining(self):
        shutdown = GracefulShutdown(shutdown_timeout_seconds=0.05)

        async def slow():
            time.sleep(0.06)

        async def never():
            raise AssertionError("should be skipped")

        shutdown.register_cleanup("slow", slow, priority=1, timeout_seconds=5.0)
        shutdown.register_cleanup("after", never, priority=2)

        await shutdown.initiate_shutdown()

        tasks = shutdown.get_status()["tasks"]
        assert tasks["slow"]["outcome"] == "done"
        assert tasks["after"]["outcome"] == "skipped"
