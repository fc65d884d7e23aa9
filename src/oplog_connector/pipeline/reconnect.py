"""Reconnection controller: owns connection state, timers and shutdown.

States::

    IDLE → CONNECTING → TAILING → FAULTED → RECONNECT_SCHEDULED → CONNECTING …
    (any) → DESTROYED

All timer scheduling and cancellation goes through this object, which is the
single owner of the reconnect timer and the in-flight connect task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum

import structlog

logger = structlog.get_logger()

FaultCallback = Callable[[str, BaseException | None], None]


class ConnectorState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    TAILING = "tailing"
    FAULTED = "faulted"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    DESTROYED = "destroyed"


class ReconnectionController:
    """Drives connect → tail → fault → delayed reconnect cycles.

    *connect* is awaited in its own task; raising from it counts as a fault.
    The connect coroutine reports success by calling :meth:`connected`.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        *,
        delay: float = 2.0,
        on_fault: FaultCallback | None = None,
    ) -> None:
        self._connect = connect
        self._delay = delay
        self._on_fault = on_fault
        self._state = ConnectorState.IDLE
        self._timer: asyncio.TimerHandle | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self.attempts = 0
        self.last_fault: str | None = None

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def destroyed(self) -> bool:
        return self._state == ConnectorState.DESTROYED

    @property
    def delay(self) -> float:
        """Seconds between a fault and the next connection attempt."""
        return self._delay

    @delay.setter
    def delay(self, value: float) -> None:
        self._delay = value

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None

    @property
    def connect_task(self) -> asyncio.Task[None] | None:
        return self._connect_task

    def start(self) -> None:
        """Begin connecting unless a connect attempt is already in flight."""
        if self.destroyed:
            return
        if self._connect_task is not None and not self._connect_task.done():
            self._cancel_timer()
            return
        self._begin()

    def restart(self) -> None:
        """Connect again immediately, abandoning any attempt in flight."""
        if self.destroyed:
            return
        self._begin()

    def connected(self) -> None:
        if self._state != ConnectorState.CONNECTING:
            return
        self._state = ConnectorState.TAILING
        self.attempts = 0
        logger.info("reconnect.tailing")

    def fault(self, reason: str, exc: BaseException | None = None) -> None:
        """Record a fault and schedule a reconnect after the configured delay."""
        if self.destroyed:
            return
        self._state = ConnectorState.FAULTED
        self.attempts += 1
        self.last_fault = reason
        logger.warning(
            "reconnect.fault",
            reason=reason,
            attempt=self.attempts,
            error=str(exc) if exc is not None else None,
        )
        if self._on_fault is not None:
            self._on_fault(reason, exc)
        self.schedule()

    def schedule(self, delay: float | None = None) -> None:
        if self.destroyed:
            return
        self._cancel_timer()
        wait = self._delay if delay is None else delay
        loop = asyncio.get_running_loop()
        self._state = ConnectorState.RECONNECT_SCHEDULED
        self._timer = loop.call_later(wait, self._fire)
        logger.info("reconnect.scheduled", delay_seconds=wait, attempt=self.attempts)

    def destroy(self) -> None:
        """Stop for good; idempotent."""
        if self.destroyed:
            return
        self._state = ConnectorState.DESTROYED
        self._cancel_timer()
        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.info("reconnect.destroyed")

    def _fire(self) -> None:
        self._timer = None
        if not self.destroyed:
            self._begin()

    def _begin(self) -> None:
        self._cancel_timer()
        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._state = ConnectorState.CONNECTING
        loop = asyncio.get_running_loop()
        self._connect_task = loop.create_task(self._run_connect())

    async def _run_connect(self) -> None:
        try:
            await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.fault("connect_error", exc)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
