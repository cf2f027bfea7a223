"""Unit tests for workqueue.py - Deduplicating keyed work queue."""

import asyncio

import pytest

from workqueue import QueueShutDown, WorkQueue


@pytest.mark.asyncio
class TestWorkQueue:
    """Tests for WorkQueue."""

    async def test_add_and_get(self):
        queue = WorkQueue()
        queue.add("Widget/default/a")

        key = await queue.get()

        assert key == "Widget/default/a"
        assert queue.is_processing(key)
        assert len(queue) == 0

    async def test_duplicate_adds_coalesce(self):
        queue = WorkQueue()
        queue.add("k")
        queue.add("k")
        queue.add("k")

        assert len(queue) == 1
        assert await queue.get() == "k"
        queue.done("k")

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.get(), timeout=0.05)

    async def test_fifo_order(self):
        queue = WorkQueue()
        for key in ("a", "b", "c"):
            queue.add(key)

        assert [await queue.get() for _ in range(3)] == ["a", "b", "c"]

    async def test_add_while_processing_is_deferred(self):
        queue = WorkQueue()
        queue.add("k")
        key = await queue.get()

        queue.add("k")
        # Not handed out a second time while processing
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.get(), timeout=0.05)

        queue.done(key)
        assert await asyncio.wait_for(queue.get(), timeout=1.0) == "k"

    async def test_done_without_readd(self):
        queue = WorkQueue()
        queue.add("k")
        key = await queue.get()
        queue.done(key)

        assert not queue.is_processing("k")
        assert queue.processing_count() == 0
        assert len(queue) == 0

    async def test_add_after_delays(self):
        queue = WorkQueue()
        queue.add_after("k", 0.05)

        assert len(queue) == 0
        assert queue.pending_timers() == 1
        assert await asyncio.wait_for(queue.get(), timeout=1.0) == "k"
        assert queue.pending_timers() == 0

    async def test_add_after_zero_is_immediate(self):
        queue = WorkQueue()
        queue.add_after("k", 0)

        assert len(queue) == 1
        assert queue.pending_timers() == 0

    async def test_add_after_keeps_earliest(self):
        queue = WorkQueue()
        queue.add_after("k", 0.05)
        queue.add_after("k", 60)

        assert queue.pending_timers() == 1
        assert await asyncio.wait_for(queue.get(), timeout=1.0) == "k"

    async def test_add_after_earlier_replaces_later(self):
        queue = WorkQueue()
        queue.add_after("k", 60)
        queue.add_after("k", 0.05)

        assert queue.pending_timers() == 1
        assert await asyncio.wait_for(queue.get(), timeout=1.0) == "k"

    async def test_shutdown_wakes_all_getters(self):
        queue = WorkQueue()
        getters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0)

        queue.shutdown()
        results = await asyncio.gather(*getters, return_exceptions=True)

        assert all(isinstance(r, QueueShutDown) for r in results)

    async def test_shutdown_cancels_timers_and_ignores_adds(self):
        queue = WorkQueue()
        queue.add_after("k", 60)
        queue.shutdown()

        assert queue.shutting_down
        assert queue.pending_timers() == 0

        queue.add("other")
        assert len(queue) == 0
        with pytest.raises(QueueShutDown):
            await queue.get()

    async def test_shutdown_is_idempotent(self):
        queue = WorkQueue()
        queue.shutdown()
        queue.shutdown()
        with pytest.raises(QueueShutDown):
            await queue.get()
