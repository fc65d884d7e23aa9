"""Log reader: pushes tailing-cursor entries into a bounded queue."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import structlog
from pymongo.errors import CursorNotFound

from oplog_connector.sources.mongo.entry import RawLogEntry

logger = structlog.get_logger()

_IDLE_INTERVAL = 0.1


class TerminalCondition(StrEnum):
    """Why a cursor stopped producing entries."""

    ERROR = "error"
    CLOSE = "close"
    EXIT = "exit"


TerminateCallback = Callable[[str, BaseException | None], None]


class LogReader:
    """Reads one tailing oplog cursor until it terminates.

    An alive cursor with no new data is normal and is simply polled again.
    ``queue.put`` suspends the reader whenever the queue is full, so nothing
    is pulled from the cursor until downstream frees capacity.
    """

    def __init__(
        self,
        cursor: Any,
        queue: asyncio.Queue[RawLogEntry],
        *,
        on_terminate: TerminateCallback | None = None,
        idle_interval: float = _IDLE_INTERVAL,
    ) -> None:
        self._cursor = cursor
        self._queue = queue
        self._on_terminate = on_terminate
        self._idle_interval = idle_interval
        self.pulled = 0

    async def run(self) -> TerminalCondition:
        """Pull until the cursor dies; report the terminal condition once."""
        condition = TerminalCondition.CLOSE
        error: BaseException | None = None
        logger.info("log_reader.started")
        try:
            while self._cursor.alive:
                async for doc in self._cursor:
                    self.pulled += 1
                    await self._queue.put(RawLogEntry.from_oplog(doc))
                if self._cursor.alive:
                    await asyncio.sleep(self._idle_interval)
        except CursorNotFound as exc:
            condition, error = TerminalCondition.EXIT, exc
        except Exception as exc:
            condition, error = TerminalCondition.ERROR, exc

        logger.warning(
            "log_reader.terminated",
            condition=condition.value,
            pulled=self.pulled,
            error=str(error) if error is not None else None,
        )
        if self._on_terminate is not None:
            self._on_terminate(condition.value, error)
        return condition
