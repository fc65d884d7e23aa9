"""Handler invoker: runs the transform handler and wraps its output."""

from __future__ import annotations

import time
from typing import Any

import structlog

from oplog_connector.errors import HandlerError
from oplog_connector.pipeline.events import OutputEnvelope, ResolvedChangeEvent
from oplog_connector.sources.mongo.checkpoint import (
    checkpoint_to_ms,
    checkpoint_to_string,
)
from oplog_connector.transform.compiler import HandlerContext, TransformUnit

logger = structlog.get_logger()


def _now_ms() -> int:
    return int(time.time() * 1000)


class HandlerInvoker:
    """Turns one resolved change event into zero or more envelopes.

    Every envelope from one invocation shares the same correlation id and
    timestamps; only ``payload`` differs.  A handler exception is raised as
    :class:`HandlerError` so the caller can stop the batch.
    """

    def __init__(self, source: str | None) -> None:
        self._source = source

    def skeleton(self, event: ResolvedChangeEvent) -> dict[str, Any]:
        ts = event.ts
        return {
            "correlation_id": {
                "source": self._source,
                "start": checkpoint_to_string(ts) if ts is not None else None,
            },
            "event_source_timestamp": checkpoint_to_ms(ts) if ts is not None else None,
            "emit_timestamp": _now_ms(),
        }

    async def invoke(
        self,
        event: ResolvedChangeEvent,
        unit: TransformUnit,
        context: HandlerContext,
    ) -> list[OutputEnvelope]:
        wrapper = self.skeleton(event)
        try:
            response = await unit.handler(event, context)
        except Exception as exc:
            logger.error(
                "handler_invoker.handler_error",
                op=event.op,
                id=str(event.id),
                ts=str(event.ts),
                error=str(exc),
            )
            msg = f"Handler failed for {event.op} of {event.id!r}: {exc}"
            raise HandlerError(msg) from exc

        if response is None:
            return []
        payloads = response if isinstance(response, list | tuple) else [response]
        return [
            OutputEnvelope(
                correlation_id=dict(wrapper["correlation_id"]),
                event_source_timestamp=wrapper["event_source_timestamp"],
                emit_timestamp=wrapper["emit_timestamp"],
                payload=p,
            )
            for p in payloads
        ]
