"""Tests for WorkQueue: per-key FIFO, cross-key concurrency, lane cleanup."""

from __future__ import annotations

import asyncio

import pytest

from aperture.core.queue import WorkQueue


class TestWorkQueue:

    async def test_same_key_runs_in_enqueue_order_without_overlap(self):
        queue = WorkQueue()
        log: list[str] = []
        active = 0
        max_active = 0

        def make(name: str, delay: float):
            async def work() -> str:
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                log.append(f"start {name}")
                await asyncio.sleep(delay)
                log.append(f"end {name}")
                active -= 1
                return name

            return work

        results = await asyncio.gather(
            queue.enqueue("s1", make("a", 0.03)),
            queue.enqueue("s1", make("b", 0.0)),
            queue.enqueue("s1", make("c", 0.01)),
        )

        assert results == ["a", "b", "c"]
        assert max_active == 1
        assert log == ["start a", "end a", "start b", "end b", "start c", "end c"]

    async def test_different_keys_run_concurrently(self):
        queue = WorkQueue()
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocker() -> None:
            started.set()
            await release.wait()

        async def quick() -> str:
            return "done"

        blocked = asyncio.create_task(queue.enqueue("s1", blocker))
        await started.wait()

        # s2 completes while s1 is still holding its lane
        assert await asyncio.wait_for(queue.enqueue("s2", quick), timeout=1) == "done"

        release.set()
        await blocked

    async def test_failure_reaches_caller_and_does_not_block_lane(self):
        queue = WorkQueue()

        async def boom() -> None:
            raise RuntimeError("boom")

        async def fine() -> str:
            return "fine"

        first = asyncio.create_task(queue.enqueue("s1", boom))
        second = asyncio.create_task(queue.enqueue("s1", fine))

        with pytest.raises(RuntimeError, match="boom"):
            await first
        assert await second == "fine"

    async def test_pending_counts_and_lane_removed_when_drained(self):
        queue = WorkQueue()
        release = asyncio.Event()

        async def wait() -> None:
            await release.wait()

        tasks = [asyncio.create_task(queue.enqueue("s1", wait)) for _ in range(3)]
        await asyncio.sleep(0)

        assert queue.pending("s1") == 3
        assert queue.active_keys == ["s1"]

        release.set()
        await asyncio.gather(*tasks)

        assert queue.pending("s1") == 0
        assert queue.active_keys == []

    async def test_pending_unknown_key_is_zero(self):
        assert WorkQueue().pending("nope") == 0
