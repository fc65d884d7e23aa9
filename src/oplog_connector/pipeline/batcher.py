"""Count/time bounded batching of admitted oplog entries."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")

Admit = Callable[[T], Awaitable[bool]]


async def _admit_all(item: object) -> bool:
    return True


class Batcher(Generic[T]):
    """Groups items into batches of at most ``max_count``.

    A batch is flushed when it reaches ``max_count`` items or when
    ``max_delay`` seconds have passed since its first admitted item,
    whichever comes first.  Empty windows never produce a batch.
    """

    def __init__(self, max_count: int = 300, max_delay: float = 0.5) -> None:
        if max_count < 1:
            msg = "max_count must be at least 1"
            raise ValueError(msg)
        self.max_count = max_count
        self.max_delay = max_delay

    async def next_batch(
        self,
        queue: asyncio.Queue[T],
        admit: Admit[T] | None = None,
    ) -> list[T]:
        """Wait for and return the next non-empty batch from *queue*.

        Only the queue wait is bounded by the time window; *admit* always
        runs to completion, so an item taken off the queue is never lost.
        """
        check = admit or _admit_all
        loop = asyncio.get_running_loop()
        batch: list[T] = []

        while not batch:
            item = await queue.get()
            if await check(item):
                batch.append(item)
        deadline = loop.time() + self.max_delay

        while len(batch) < self.max_count:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                item = await asyncio.wait_for(queue.get(), timeout=remaining)
            except TimeoutError:
                break
            if await check(item):
                batch.append(item)
        return batch
