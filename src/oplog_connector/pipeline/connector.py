"""Oplog connector pipeline: tail, filter, batch, correlate, handle, emit.

The connector is an async iterator of :class:`OutputEnvelope`.  Two bounded
queues carry the flow: the inbox between the log reader and the pipeline
task, and the outbox between the pipeline task and the consumer.  A slow
consumer fills the outbox, which stalls the pipeline task, which fills the
inbox, which suspends the log reader. Nothing is dropped while the
connector runs and memory stays bounded.

Every new session starts a new epoch. A batch pinned to an older epoch, open
or in flight, is discarded rather than mixed with the new session.

Delivery is at-least-once: after a reconnect the cursor resumes from the
configured checkpoint, so entries already emitted may be emitted again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import structlog
from bson import Timestamp
from pymongo.errors import ConnectionFailure

from oplog_connector.config.loader import build_connector_config
from oplog_connector.config.models import ConnectorConfig
from oplog_connector.errors import CheckpointError, ConnectorError
from oplog_connector.pipeline.batcher import Admit, Batcher
from oplog_connector.pipeline.correlator import Correlator
from oplog_connector.pipeline.events import OutputEnvelope
from oplog_connector.pipeline.filter import FilterStage
from oplog_connector.pipeline.invoker import HandlerInvoker
from oplog_connector.pipeline.reconnect import ConnectorState, ReconnectionController
from oplog_connector.sources.mongo.checkpoint import (
    checkpoint_to_string,
    resolve_checkpoint,
)
from oplog_connector.sources.mongo.entry import RawLogEntry
from oplog_connector.sources.mongo.reader import LogReader
from oplog_connector.sources.mongo.session import ClientFactory, SessionManager
from oplog_connector.transform.compiler import (
    HandlerContext,
    TransformUnit,
    compile_transform,
)

logger = structlog.get_logger()

Compiler = Callable[[str | None], TransformUnit]


@dataclass(slots=True)
class _StreamEnd:
    error: BaseException | None = None


@dataclass(slots=True)
class _BatchScope:
    """Collaborators a batch pins when its first entry is admitted."""

    stage: FilterStage
    correlator: Correlator
    invoker: HandlerInvoker
    epoch: int


class OplogConnector:
    """Change stream for one collection, resumable from a checkpoint.

    Usage::

        async with OplogConnector(config) as connector:
            async for envelope in connector:
                ...

    Transient connection faults are retried forever after
    ``reconnect_delay``; fatal faults (handler errors, failed bulk reads)
    end iteration by raising the corresponding :class:`ConnectorError`.
    """

    def __init__(
        self,
        config: ConnectorConfig | Mapping[str, Any],
        *,
        client_factory: ClientFactory | None = None,
        compiler: Compiler = compile_transform,
    ) -> None:
        if not isinstance(config, ConnectorConfig):
            config = build_connector_config(dict(config))
        self._config = config
        self._compiler = compiler
        # Compile errors propagate to the caller.
        self._transform = compiler(config.script)

        self._inbox: asyncio.Queue[RawLogEntry] = asyncio.Queue(
            maxsize=config.max_buffered_messages
        )
        self._outbox: asyncio.Queue[OutputEnvelope | _StreamEnd] = asyncio.Queue(
            maxsize=config.max_buffered_messages
        )
        self._controller = ReconnectionController(
            self._open_session,
            delay=config.reconnect_delay / 1000,
            on_fault=self._on_fault,
        )
        self._session = SessionManager(
            config,
            on_fault=self._controller.fault,
            client_factory=client_factory,
        )
        self._apply_limits(config)

        self._reader: LogReader | None = None
        self._reader_task: asyncio.Task[Any] | None = None
        self._pipeline_task: asyncio.Task[None] | None = None
        self._batch_wait: asyncio.Task[list[RawLogEntry]] | None = None
        self._epoch = 0
        self._processing = False
        self._emitting = False
        self._destroy_called = False
        self._closed = False
        self._pending_end: _StreamEnd | None = None
        self._end_queued = False
        self._checkpoint: Timestamp | None = None
        self.delivered = 0
        self.batches = 0

    # -- properties -----------------------------------------------------------

    @property
    def config(self) -> ConnectorConfig:
        return self._config

    @property
    def transform(self) -> TransformUnit:
        return self._transform

    @property
    def state(self) -> ConnectorState:
        return self._controller.state

    @property
    def checkpoint(self) -> Timestamp | None:
        """Position the current cursor was opened after."""
        return self._checkpoint

    @property
    def collection(self) -> Any | None:
        return self._session.collection

    @property
    def database(self) -> Any | None:
        return self._session.database

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Start the pipeline task and the first connection attempt."""
        if self._destroy_called or self._pipeline_task is not None:
            return
        self._pipeline_task = asyncio.get_running_loop().create_task(
            self._run_pipeline()
        )
        logger.info(
            "connector.starting",
            server=self._config.server,
            namespace=self._config.namespace,
            source=self._config.source,
        )
        self._controller.start()

    async def __aenter__(self) -> OplogConnector:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.destroy()

    def __aiter__(self) -> OplogConnector:
        self.start()
        return self

    async def __anext__(self) -> OutputEnvelope:
        if self._closed:
            raise StopAsyncIteration
        item: OutputEnvelope | _StreamEnd
        if self._pending_end is not None and self._outbox.empty():
            item, self._pending_end = self._pending_end, None
        else:
            item = await self._outbox.get()
        if isinstance(item, _StreamEnd):
            self._closed = True
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        return item

    async def destroy(self) -> None:
        """Stop tailing and release every resource; idempotent.

        The cursor and both clients are closed before this returns.  A batch
        already being processed may finish into the free outbox capacity;
        envelopes that would wait on a full outbox are dropped, and no new
        batch is started.
        """
        if self._destroy_called:
            return
        self._destroy_called = True
        logger.info("connector.destroying", namespace=self._config.namespace)
        self._controller.destroy()
        await self._teardown()

        pipeline = self._pipeline_task
        if pipeline is None:
            self._finish(None)
        elif pipeline.done() or pipeline is asyncio.current_task():
            return
        elif not self._processing or self._emitting:
            # Idle, or stuck behind a consumer that stopped reading.
            pipeline.cancel()
            with suppress(asyncio.CancelledError):
                await pipeline

    async def update(
        self, changes: ConnectorConfig | Mapping[str, Any]
    ) -> tuple[bool, bool]:
        """Merge *changes* into the active configuration.

        Recompiles the transform when the script text changed and reconnects
        with a freshly resolved checkpoint when the server, database or
        collection changed.  Returns ``(restart, recompile)``.

        Raises:
            TransformCompileError: the new script does not compile; the
                previous configuration and transform stay active.
        """
        if isinstance(changes, ConnectorConfig):
            changes = changes.model_dump(exclude_unset=True)
        new_config = build_connector_config(dict(changes), base=self._config)
        restart = self._config.requires_restart(new_config)
        recompile = self._config.requires_recompile(new_config)

        unit = self._transform
        if recompile:
            logger.info("connector.recompiling", namespace=new_config.namespace)
            unit = self._compiler(new_config.script)

        self._config = new_config
        self._transform = unit
        self._session.config = new_config
        self._apply_limits(new_config)

        if restart and self._pipeline_task is not None and not self._destroy_called:
            logger.info(
                "connector.restarting",
                server=new_config.server,
                namespace=new_config.namespace,
            )
            await self._stop_reader()
            await self._session.close()
            self._drain_inbox()
            self._abandon_open_batch()
            self._controller.restart()
        return restart, recompile

    async def health(self) -> dict[str, Any]:
        """Return connector state and buffer occupancy."""
        return {
            "state": self.state.value,
            "server": self._config.server,
            "namespace": self._config.namespace,
            "source": self._config.source,
            "attempts": self._controller.attempts,
            "last_fault": self._controller.last_fault,
            "checkpoint": (
                checkpoint_to_string(self._checkpoint)
                if self._checkpoint is not None
                else None
            ),
            "buffered_entries": self._inbox.qsize(),
            "buffered_envelopes": self._outbox.qsize(),
            "batches": self.batches,
            "delivered": self.delivered,
        }

    # -- session --------------------------------------------------------------

    def _apply_limits(self, config: ConnectorConfig) -> None:
        self._batcher: Batcher[RawLogEntry] = Batcher(
            max_count=config.max_send_count,
            max_delay=config.max_send_delay / 1000,
        )
        self._correlator = Correlator(config.id_column)
        self._invoker = HandlerInvoker(config.source)
        self._controller.delay = config.reconnect_delay / 1000

    async def _open_session(self) -> None:
        await self._stop_reader()
        await self._session.close()
        self._drain_inbox()
        self._abandon_open_batch()

        try:
            checkpoint = resolve_checkpoint(self._config)
        except CheckpointError as exc:
            logger.error("connector.checkpoint_invalid", error=str(exc))
            await self._fail(exc)
            return

        cursor = await self._session.connect(checkpoint)
        if cursor is None:
            return
        self._checkpoint = checkpoint
        self._reader = LogReader(
            cursor, self._inbox, on_terminate=self._on_reader_terminated
        )
        self._reader_task = asyncio.get_running_loop().create_task(self._reader.run())
        self._controller.connected()

    def _on_reader_terminated(self, condition: str, exc: BaseException | None) -> None:
        self._controller.fault(f"cursor_{condition}", exc)

    def _on_fault(self, reason: str, exc: BaseException | None) -> None:
        task = self._reader_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _stop_reader(self) -> None:
        task, self._reader_task = self._reader_task, None
        self._reader = None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    def _drain_inbox(self) -> None:
        dropped = 0
        while not self._inbox.empty():
            self._inbox.get_nowait()
            dropped += 1
        if dropped:
            logger.info("connector.inbox_cleared", entries=dropped)

    def _abandon_open_batch(self) -> None:
        """Start a new session epoch; batches pinned to the old one are dropped.

        Entries of an abandoned batch belong to a cursor that no longer exists.
        """
        self._epoch += 1
        wait = self._batch_wait
        if wait is not None and not wait.done():
            wait.cancel()

    async def _teardown(self) -> None:
        await self._stop_reader()
        await self._session.close()

    async def _fail(self, error: ConnectorError) -> None:
        self._finish(error)
        self._controller.destroy()
        pipeline = self._pipeline_task
        if pipeline is not None and not pipeline.done():
            if pipeline is not asyncio.current_task():
                pipeline.cancel()
        await self._teardown()

    # -- pipeline -------------------------------------------------------------

    async def _run_pipeline(self) -> None:
        error: BaseException | None = None
        try:
            while not self._controller.destroyed:
                scope: _BatchScope | None = None

                async def admit(entry: RawLogEntry) -> bool:
                    # The first entry of a batch pins its transform and session.
                    nonlocal scope
                    if scope is None:
                        scope = self._pin_batch()
                    return await scope.stage.admit(entry)

                batch = await self._next_batch(admit)
                if self._controller.destroyed:
                    break
                if batch is None:
                    if scope is not None:
                        logger.info("connector.open_batch_abandoned")
                    continue
                assert scope is not None
                self._processing = True
                try:
                    await self._process_batch(batch, scope)
                finally:
                    self._processing = False
        except Exception as exc:
            error = exc
            logger.error(
                "connector.fatal", error=str(exc), error_type=type(exc).__name__
            )
        finally:
            if error is not None or self._controller.destroyed:
                self._controller.destroy()
                await self._teardown()
            self._finish(error)

    def _pin_batch(self) -> _BatchScope:
        return _BatchScope(
            stage=FilterStage(self._transform),
            correlator=self._correlator,
            invoker=self._invoker,
            epoch=self._epoch,
        )

    async def _next_batch(
        self, admit: Admit[RawLogEntry]
    ) -> list[RawLogEntry] | None:
        """Wait for the next batch; ``None`` when a new session abandoned it."""
        wait = asyncio.get_running_loop().create_task(
            self._batcher.next_batch(self._inbox, admit)
        )
        self._batch_wait = wait
        try:
            await asyncio.wait({wait})
        finally:
            self._batch_wait = None
            wait.cancel()
        if wait.cancelled():
            return None
        return wait.result()

    def _superseded(self, scope: _BatchScope) -> bool:
        return scope.epoch != self._epoch or self._controller.destroyed

    async def _process_batch(self, batch: list[RawLogEntry], scope: _BatchScope) -> None:
        if scope.epoch != self._epoch:
            logger.info("connector.batch_abandoned", entries=len(batch))
            return
        unit = scope.stage.unit
        collection = self._session.collection
        database = self._session.database
        try:
            events = await scope.correlator.correlate(
                batch, collection, unit.projection
            )
        except ConnectionFailure as exc:
            if self._superseded(scope):
                logger.info("connector.batch_abandoned", entries=len(batch))
                return
            logger.warning(
                "connector.correlation_connection_lost",
                entries=len(batch),
                error=str(exc),
            )
            self._controller.fault("correlation_error", exc)
            return
        except ConnectorError as exc:
            if not self._superseded(scope):
                raise
            logger.info(
                "connector.batch_abandoned", entries=len(batch), error=str(exc)
            )
            return

        if scope.epoch != self._epoch:
            logger.info("connector.batch_abandoned", entries=len(batch))
            return
        self.batches += 1
        context = HandlerContext(collection=collection, database=database)
        for event in events:
            try:
                envelopes = await scope.invoker.invoke(event, unit, context)
            except ConnectorError as exc:
                if not self._superseded(scope):
                    raise
                logger.info(
                    "connector.batch_abandoned", entries=len(batch), error=str(exc)
                )
                return
            if scope.epoch != self._epoch:
                logger.info("connector.batch_abandoned", entries=len(batch))
                return
            for envelope in envelopes:
                if not await self._emit(envelope):
                    logger.warning("connector.envelopes_dropped", entries=len(batch))
                    return

    async def _emit(self, envelope: OutputEnvelope) -> bool:
        """Queue *envelope* for the consumer; ``False`` once it was dropped.

        After destroy only free outbox capacity is used.
        """
        if self._controller.destroyed:
            try:
                self._outbox.put_nowait(envelope)
            except asyncio.QueueFull:
                return False
        else:
            self._emitting = True
            try:
                await self._outbox.put(envelope)
            finally:
                self._emitting = False
        self.delivered += 1
        return True

    def _finish(self, error: BaseException | None) -> None:
        """Queue the end-of-stream marker without blocking."""
        if self._end_queued:
            return
        self._end_queued = True
        end = _StreamEnd(error)
        try:
            self._outbox.put_nowait(end)
        except asyncio.QueueFull:
            self._pending_end = end


def stream(
    settings: ConnectorConfig | Mapping[str, Any], **kwargs: Any
) -> OplogConnector:
    """Build a connector for *settings*; iterate it to start tailing."""
    return OplogConnector(settings, **kwargs)
