"""Correlator: maps a batch of oplog entries onto current document state."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from bson import json_util
from pymongo.errors import ConnectionFailure

from oplog_connector.errors import CorrelationError
from oplog_connector.pipeline.events import ChangeHistory, ResolvedChangeEvent
from oplog_connector.sources.mongo.entry import RawLogEntry, op_name

logger = structlog.get_logger()


def _key(doc_id: Any) -> Any:
    """Hashable lookup key for a document id (ids may be sub-documents)."""
    try:
        hash(doc_id)
    except TypeError:
        return json_util.dumps(doc_id, sort_keys=True)
    return doc_id


def _order(event: ResolvedChangeEvent) -> tuple[bool, int, int]:
    if event.ts is None:
        return (True, 0, 0)
    return (False, event.ts.time, event.ts.inc)


def build_histories(batch: Sequence[RawLogEntry]) -> dict[Any, ChangeHistory]:
    """Group a batch by document id, keeping every operation in order.

    Entries without an id (commands, no-ops) are skipped.
    """
    histories: dict[Any, ChangeHistory] = {}
    for entry in batch:
        if not entry.has_id:
            continue
        key = _key(entry.id)
        history = histories.get(key)
        if history is None:
            history = ChangeHistory(id=entry.id, op=entry.op, ts=entry.ts)
            histories[key] = history
        history.record(entry.op, entry.ts, entry.payload)
    return histories


class Correlator:
    """Resolves a batch into one change event per touched document.

    Only the newest snapshot of each document is read, in a single bulk
    ``$in`` query; the per-id history keeps every operation of the batch.

    Histories are keyed by the oplog document id.  *id_field* names the
    collection field whose value equals that id, so a collection keyed by
    something other than ``_id`` can still be matched; the event keeps the
    oplog id.
    """

    def __init__(self, id_field: str = "_id") -> None:
        self._id_field = id_field

    async def correlate(
        self,
        batch: Sequence[RawLogEntry],
        collection: Any,
        projection: Sequence[str] = (),
    ) -> list[ResolvedChangeEvent]:
        histories = build_histories(batch)
        if not histories:
            return []
        if collection is None:
            msg = "No live collection handle for correlation"
            raise ConnectionFailure(msg)

        ids = [h.id for h in histories.values()]
        fields = {f: 1 for f in projection} or None
        found: set[Any] = set()
        events: list[ResolvedChangeEvent] = []
        try:
            cursor = collection.find({self._id_field: {"$in": ids}}, fields)
            async for doc in cursor:
                key = _key(doc.get(self._id_field))
                found.add(key)
                events.append(self._resolve(doc, histories.get(key)))
        except ConnectionFailure:
            raise
        except Exception as exc:
            msg = f"Bulk read of {len(ids)} document(s) failed: {exc}"
            raise CorrelationError(msg) from exc

        for key, history in histories.items():
            if key not in found:
                events.append(self._resolve(None, history))

        # Newest-operation order; documents without history go last.
        events.sort(key=_order)
        logger.debug(
            "correlator.resolved",
            entries=len(batch),
            ids=len(ids),
            found=len(found),
            events=len(events),
        )
        return events

    @staticmethod
    def _resolve(
        doc: dict[str, Any] | None, history: ChangeHistory | None
    ) -> ResolvedChangeEvent:
        if history is None:
            return ResolvedChangeEvent(
                op=None,
                snapshot=doc,
                id=doc.get("_id") if doc else None,
                ts=None,
            )
        return ResolvedChangeEvent(
            op=op_name(history.op),
            snapshot=doc,
            id=history.id,
            ts=history.ts,
            changes=list(history.changes),
        )
