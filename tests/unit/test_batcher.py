"""Unit tests for count/time bounded batching."""

from __future__ import annotations

import asyncio

import pytest

from oplog_connector.pipeline.batcher import Batcher


def _queue(*items: int) -> asyncio.Queue[int]:
    q: asyncio.Queue[int] = asyncio.Queue()
    for item in items:
        q.put_nowait(item)
    return q


class TestBatcherConfig:
    def test_defaults(self):
        batcher: Batcher[int] = Batcher()
        assert batcher.max_count == 300
        assert batcher.max_delay == 0.5

    def test_zero_count_rejected(self):
        with pytest.raises(ValueError, match="at least 1"):
            Batcher(max_count=0)


@pytest.mark.asyncio
class TestNextBatch:
    async def test_flushes_at_count(self):
        q = _queue(*range(7))
        batcher: Batcher[int] = Batcher(max_count=3, max_delay=0.05)
        assert await batcher.next_batch(q) == [0, 1, 2]
        assert await batcher.next_batch(q) == [3, 4, 5]
        assert await batcher.next_batch(q) == [6]

    async def test_flushes_at_deadline(self):
        q = _queue(1, 2)
        batcher: Batcher[int] = Batcher(max_count=100, max_delay=0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await batcher.next_batch(q) == [1, 2]
        assert loop.time() - started < 1.0

    async def test_waits_for_first_item(self):
        q: asyncio.Queue[int] = asyncio.Queue()
        batcher: Batcher[int] = Batcher(max_count=10, max_delay=0.02)
        task = asyncio.create_task(batcher.next_batch(q))
        await asyncio.sleep(0.1)
        assert not task.done()
        q.put_nowait(9)
        assert await asyncio.wait_for(task, 1.0) == [9]

    async def test_late_item_joins_open_window(self):
        q = _queue(1)
        batcher: Batcher[int] = Batcher(max_count=10, max_delay=0.3)

        async def late() -> None:
            await asyncio.sleep(0.05)
            q.put_nowait(2)

        producer = asyncio.create_task(late())
        assert await batcher.next_batch(q) == [1, 2]
        await producer

    async def test_rejected_items_do_not_count(self):
        q = _queue(1, 2, 3, 4, 5, 6)
        batcher: Batcher[int] = Batcher(max_count=2, max_delay=0.05)

        async def even(item: int) -> bool:
            return item % 2 == 0

        assert await batcher.next_batch(q, even) == [2, 4]
        assert await batcher.next_batch(q, even) == [6]

    async def test_order_preserved(self):
        q = _queue(5, 3, 9, 1)
        batcher: Batcher[int] = Batcher(max_count=4, max_delay=10)
        assert await batcher.next_batch(q) == [5, 3, 9, 1]

    async def test_count_flush_is_immediate_and_lone_entry_waits_window(self):
        batcher: Batcher[int] = Batcher(max_count=3, max_delay=0.5)
        loop = asyncio.get_running_loop()

        started = loop.time()
        assert await batcher.next_batch(_queue(1, 2, 3)) == [1, 2, 3]
        assert loop.time() - started < 0.1

        started = loop.time()
        assert await batcher.next_batch(_queue(4)) == [4]
        assert 0.45 <= loop.time() - started < 1.0
